import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from fiscal_invoicing.core.code_tables import InvoiceType, TaxCondition
from fiscal_invoicing.core.exceptions import InvariantViolationError, InvoiceValidationError
from fiscal_invoicing.models.invoice import Invoice, InvoiceStatus
from fiscal_invoicing.schemas.invoice import CounterpartyUpdate, InvoiceManualCreate, ManualItemCreate
from fiscal_invoicing.services.audit_service import AuditService
from fiscal_invoicing.services.credit_note_service import CreditLine

from tests.conftest import REGISTERED_CUIT


async def _authorized(services, *sale_ids):
    invoice = await services.invoices.create_from_sales(list(sale_ids), "tester")
    result = await services.state_machine.authorize(invoice.id, "tester")
    assert result.outcome.approved
    return result.invoice


async def _count_invoices(db) -> int:
    return (await db.execute(select(func.count(Invoice.id)))).scalar()


# ==================== Pending balance ====================

async def test_partial_credit_notes_never_exceed_the_original(services, authority):
    original = await _authorized(services, "S-4")
    assert original.invoice_type == InvoiceType.B.value
    assert original.grand_total == Decimal("1000.00")

    first = await services.credit_notes.issue(original.id, "tester", amount=Decimal("400"))
    assert first.outcome.approved
    assert first.invoice.invoice_type == InvoiceType.B_NC.value
    assert (await services.credit_notes.balance_summary(original.id)).pending_balance == Decimal("600.00")

    stored = await _count_invoices(services.db)
    submitted = len(authority.submissions)
    with pytest.raises(InvariantViolationError):
        await services.credit_notes.issue(original.id, "tester", amount=Decimal("700"))
    assert await _count_invoices(services.db) == stored
    assert len(authority.submissions) == submitted

    second = await services.credit_notes.issue(original.id, "tester", amount=Decimal("600"))
    assert second.outcome.approved

    summary = await services.credit_notes.balance_summary(original.id)
    assert summary.credited_total == Decimal("1000.00")
    assert summary.pending_balance == Decimal("0.00")
    assert [note.grand_total for note in summary.notes] == [Decimal("400.00"), Decimal("600.00")]

    with pytest.raises(InvariantViolationError):
        await services.credit_notes.issue(original.id, "tester", amount=Decimal("0.01"))

    original = await services.state_machine.load(original.id)
    assert original.status == InvoiceStatus.AUTHORIZED.value


async def test_note_references_the_original(services):
    original = await _authorized(services, "S-4")

    result = await services.credit_notes.issue(original.id, "tester", amount=Decimal("100"), reason="Returned goods")
    note = result.invoice

    assert note.original_invoice_id == original.id
    assert note.associated_type_code == original.type.code
    assert note.associated_point_of_sale == original.point_of_sale
    assert note.associated_number == original.sequence_number
    assert note.receiver_document_type == original.receiver_document_type
    assert note.receiver_document_number == original.receiver_document_number
    assert note.credit_reason == "Returned goods"
    assert note.document_number == "00001-00000001"


async def test_rejected_note_does_not_reduce_the_balance(services, authority):
    original = await _authorized(services, "S-4")
    authority.reject_with = [{"code": "10040", "message": "Comprobante asociado inexistente"}]

    result = await services.credit_notes.issue(original.id, "tester", amount=Decimal("300"))

    assert not result.outcome.approved
    assert result.invoice.status == InvoiceStatus.REJECTED.value
    assert (await services.credit_notes.balance_summary(original.id)).pending_balance == Decimal("1000.00")


async def test_credit_note_requires_an_authorized_invoice(services):
    draft = await services.invoices.create_from_sales(["S-4"], "tester")

    with pytest.raises(InvariantViolationError):
        await services.credit_notes.issue(draft.id, "tester", amount=Decimal("100"))


async def test_credit_note_against_a_credit_note_is_refused(services):
    original = await _authorized(services, "S-4")
    note = (await services.credit_notes.issue(original.id, "tester", amount=Decimal("100"))).invoice

    with pytest.raises(InvariantViolationError):
        await services.credit_notes.issue(note.id, "tester", amount=Decimal("10"))


async def test_amount_and_lines_are_exclusive(services):
    original = await _authorized(services, "S-1")

    with pytest.raises(InvoiceValidationError):
        await services.credit_notes.issue(
            original.id, "tester", amount=Decimal("100"), lines=[CreditLine(line_number=1, amount=Decimal("100"))]
        )


async def test_concurrent_notes_cannot_overdraw(make_services, authority):
    first, second = make_services(), make_services()
    original = await _authorized(first, "S-4")

    results = await asyncio.gather(
        first.credit_notes.issue(original.id, "alice", amount=Decimal("700")),
        second.credit_notes.issue(original.id, "bob", amount=Decimal("700")),
        return_exceptions=True,
    )

    approved = [r for r in results if not isinstance(r, Exception) and r.outcome.approved]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(approved) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], InvariantViolationError)


# ==================== Composition ====================

async def test_pro_rata_note_keeps_vat_proportions(services):
    original = await _authorized(services, "S-1")

    note = (await services.credit_notes.issue(original.id, "tester", amount=Decimal("605"))).invoice

    assert note.invoice_type == InvoiceType.A_NC.value
    assert note.net_taxed == Decimal("500.00")
    assert note.vat_total == Decimal("105.00")
    assert note.grand_total == Decimal("605.00")
    assert [(v.base_amount, v.vat_amount) for v in note.vat_lines] == [(Decimal("500.00"), Decimal("105.00"))]
    assert [item.net_amount for item in note.items] == [Decimal("300.00"), Decimal("200.00")]
    assert [item.vat_amount for item in note.items] == [Decimal("63.00"), Decimal("42.00")]
    assert all(item.quantity == Decimal("1") for item in note.items)


async def test_explicit_lines_credit_net_plus_proportional_vat(services):
    original = await _authorized(services, "S-1")

    result = await services.credit_notes.issue(
        original.id,
        "tester",
        lines=[CreditLine(line_number=1, amount=Decimal("600")), CreditLine(line_number=2, amount=Decimal("100"))],
    )
    note = result.invoice

    assert result.outcome.approved
    assert note.net_taxed == Decimal("700.00")
    assert note.vat_total == Decimal("147.00")
    assert note.grand_total == Decimal("847.00")
    assert [item.vat_amount for item in note.items] == [Decimal("126.00"), Decimal("21.00")]
    assert note.items[0].unit_price == original.items[0].unit_price
    assert note.items[1].unit_price == Decimal("100.00")
    assert (await services.credit_notes.balance_summary(original.id)).pending_balance == Decimal("363.00")


async def test_explicit_lines_are_validated(services):
    original = await _authorized(services, "S-1")

    with pytest.raises(InvoiceValidationError) as exc_info:
        await services.credit_notes.issue(
            original.id,
            "tester",
            lines=[CreditLine(line_number=3, amount=Decimal("10")), CreditLine(line_number=2, amount=Decimal("401"))],
        )
    assert len(exc_info.value.errors) == 2


async def test_credit_note_a_needs_a_registered_counterparty(services, authority):
    original = await _authorized(services, "S-1")
    original.receiver_tax_condition = TaxCondition.FINAL_CONSUMER.value
    await services.db.commit()
    stored = await _count_invoices(services.db)

    with pytest.raises(InvoiceValidationError) as exc_info:
        await services.credit_notes.issue(original.id, "tester", amount=Decimal("121"))

    assert any("registered for VAT" in e for e in exc_info.value.errors)
    assert len(authority.submissions) == 1
    assert await _count_invoices(services.db) == stored
    assert (await services.state_machine.load(original.id)).status == InvoiceStatus.AUTHORIZED.value


# ==================== Voiding ====================

async def test_void_issues_a_full_credit_note(services):
    original = await _authorized(services, "S-4")

    result = await services.credit_notes.void_invoice(original.id, "tester", "Customer cancelled the order")

    assert result.outcome.approved
    assert result.invoice.grand_total == Decimal("1000.00")
    assert result.invoice.voids_original is True

    original = await services.state_machine.load(original.id)
    assert original.status == InvoiceStatus.VOIDED.value
    assert original.void_reason == "Customer cancelled the order"
    assert original.cae is not None

    history = await services.state_machine.history(original.id)
    assert history[-1].action == "VOID"


async def test_void_after_partial_credit_covers_the_rest(services):
    original = await _authorized(services, "S-4")
    await services.credit_notes.issue(original.id, "tester", amount=Decimal("250"))

    result = await services.credit_notes.void_invoice(original.id, "tester", "Cancelled")

    assert result.invoice.grand_total == Decimal("750.00")
    assert (await services.state_machine.load(original.id)).status == InvoiceStatus.VOIDED.value


async def test_rejected_void_note_leaves_the_original_authorized(services, authority):
    original = await _authorized(services, "S-4")
    authority.reject_with = [{"code": "10040", "message": "rejected"}]

    result = await services.credit_notes.void_invoice(original.id, "tester", "Cancelled")

    assert not result.outcome.approved
    assert (await services.state_machine.load(original.id)).status == InvoiceStatus.AUTHORIZED.value


async def test_resubmitted_void_note_voids_the_original(services, authority):
    original = await _authorized(services, "S-4")
    authority.reject_with = [{"code": "10040", "message": "rejected"}]
    note = (await services.credit_notes.void_invoice(original.id, "tester", "Cancelled")).invoice

    authority.reject_with = None
    await services.state_machine.reset_to_draft(note.id, "tester")
    result = await services.credit_notes.authorize_note(note.id, "tester")

    assert result.outcome.approved
    assert (await services.state_machine.load(original.id)).status == InvoiceStatus.VOIDED.value


async def test_void_note_and_original_are_committed_together(services, worker_services, gate, session_factory):
    original = await _authorized(services, "S-4")
    worker = worker_services()

    pending = asyncio.create_task(worker.credit_notes.void_invoice(original.id, "tester", "Cancelled"))
    await gate.reached.wait()
    async with session_factory() as other:
        await other.execute(
            update(Invoice)
            .where(Invoice.original_invoice_id == original.id)
            .values(version=Invoice.version + 1, notes="Disputed")
        )
        await other.commit()
    gate.opened.set()
    result = await pending

    assert result.outcome.approved
    note = await services.state_machine.load(result.invoice.id)
    assert note.status == InvoiceStatus.AUTHORIZED.value
    assert note.notes == "Disputed"
    original = await services.state_machine.load(original.id)
    assert original.status == InvoiceStatus.VOIDED.value
    assert (await services.credit_notes.balance_summary(original.id)).pending_balance == 0
    history = await services.state_machine.history(original.id)
    assert [h.action for h in history].count("VOID") == 1


async def test_void_requires_a_reason(services):
    original = await _authorized(services, "S-4")

    with pytest.raises(InvoiceValidationError):
        await services.credit_notes.void_invoice(original.id, "tester", "")


async def test_void_without_credit_note_sends_nothing(services, authority):
    original = await _authorized(services, "S-4")
    submitted = len(authority.submissions)

    result = await services.credit_notes.void_invoice(original.id, "tester", "Bookkeeping error", with_credit_note=False)

    assert result is None
    assert len(authority.submissions) == submitted
    assert (await services.state_machine.load(original.id)).status == InvoiceStatus.VOIDED.value


# ==================== Debit notes and counterparty corrections ====================

async def test_debit_note_mirrors_the_original(services):
    original = await _authorized(services, "S-1")
    data = InvoiceManualCreate(
        items=[ManualItemCreate(description="Late payment interest", quantity=Decimal("1"), unit_price=Decimal("100"))],
        original_invoice_id=original.id,
    )

    note = await services.invoices.create_manual(data, "tester")

    assert note.invoice_type == InvoiceType.A_ND.value
    assert note.original_invoice_id == original.id
    assert note.associated_number == original.sequence_number
    assert note.receiver_document_number == REGISTERED_CUIT
    assert note.grand_total == Decimal("121.00")

    result = await services.state_machine.authorize(note.id, "tester")
    assert result.outcome.approved


async def test_debit_note_requires_an_authorized_invoice(services):
    draft = await services.invoices.create_from_sales(["S-1"], "tester")
    data = InvoiceManualCreate(
        items=[ManualItemCreate(description="Interest", quantity=Decimal("1"), unit_price=Decimal("100"))],
        original_invoice_id=draft.id,
    )

    with pytest.raises(InvariantViolationError):
        await services.invoices.create_manual(data, "tester")


async def test_counterparty_correction_recomposes_sale_drafts(services):
    draft = await services.invoices.create_from_sales(["S-4"], "tester")
    assert draft.invoice_type == InvoiceType.B.value

    invoice = await services.invoices.update_counterparty(
        draft.id, CounterpartyUpdate(tax_id=REGISTERED_CUIT, document_type="CUIT", name="Gomez Ana SRL"), "clerk"
    )

    assert invoice.invoice_type == InvoiceType.A.value
    assert invoice.receiver_document_type == 80
    assert invoice.receiver_document_number == REGISTERED_CUIT
    assert invoice.receiver_name == "Gomez Ana SRL"
    assert invoice.vat_itemized is True
    assert invoice.vat_total == Decimal("173.55")
    assert invoice.grand_total == Decimal("1000.00")

    logs = await AuditService(services.db).get_entity_logs("INVOICE", invoice.id)
    assert [log.action for log in logs] == ["RESOLVE_COUNTERPARTY"]
    assert logs[0].old_values["invoice_type"] == "B"


async def test_counterparty_of_an_authorized_invoice_is_frozen(services):
    original = await _authorized(services, "S-1")

    with pytest.raises(InvariantViolationError):
        await services.invoices.update_counterparty(
            original.id, CounterpartyUpdate(tax_id="28765432", document_type="DNI", name="Lopez Marta"), "clerk"
        )
