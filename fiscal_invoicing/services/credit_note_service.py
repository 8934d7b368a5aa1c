"""
Credit Note Service

Issues full or partial credit notes against authorized invoices.

Pending balance = original total - sum of AUTHORIZED credit notes. It is
checked when the note is drafted and checked again, under the original's
lock, right before the note is submitted. Drafts, rejected and voided notes
never count.

Voiding an invoice issues a credit note for its whole pending balance;
the original becomes VOIDED only once that note is authorized.
"""

import uuid
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_invoicing.core.code_tables import InvoiceType, VoucherFamily, credit_note_type_for
from fiscal_invoicing.core.exceptions import InvariantViolationError, InvoiceValidationError
from fiscal_invoicing.core.money import ZERO, apportion, round_money
from fiscal_invoicing.models.invoice import (
    Invoice, InvoiceItem, InvoiceStatus, InvoiceStatusHistory, InvoiceTribute, InvoiceVatLine,
)
from fiscal_invoicing.services.invoice_state_machine import AuthorizationResult


logger = logging.getLogger(__name__)


CREDIT_NOTE_TYPES = [t.value for t in InvoiceType if t.family == VoucherFamily.CREDIT_NOTE]


@dataclass
class PendingBalance:
    invoice_id: uuid.UUID
    original_total: Decimal
    credited_total: Decimal
    pending_balance: Decimal
    notes: List[Invoice] = field(default_factory=list)


@dataclass
class CreditLine:
    """Explicit net amount to credit on one line of the original."""
    line_number: int
    amount: Decimal


class CreditNoteService:
    """Credit notes and voiding of authorized invoices."""

    def __init__(self, db: AsyncSession, state_machine, locks):
        self.db = db
        self.state_machine = state_machine
        self.locks = locks

    # =========================================================================
    # PENDING BALANCE
    # =========================================================================

    async def credited_total(self, invoice_id: uuid.UUID) -> Decimal:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Invoice.grand_total), 0)).where(
                Invoice.original_invoice_id == invoice_id,
                Invoice.invoice_type.in_(CREDIT_NOTE_TYPES),
                Invoice.status == InvoiceStatus.AUTHORIZED.value,
            )
        )
        return round_money(result.scalar() or 0)

    async def pending_balance(self, invoice: Invoice) -> Decimal:
        return invoice.grand_total - await self.credited_total(invoice.id)

    async def balance_summary(self, invoice_id: uuid.UUID) -> PendingBalance:
        invoice = await self.state_machine.load(invoice_id)
        result = await self.db.execute(
            select(Invoice)
            .where(
                Invoice.original_invoice_id == invoice_id,
                Invoice.invoice_type.in_(CREDIT_NOTE_TYPES),
                Invoice.status == InvoiceStatus.AUTHORIZED.value,
            )
            .order_by(Invoice.authorized_at)
        )
        notes = list(result.scalars().all())
        credited = sum((note.grand_total for note in notes), ZERO)
        return PendingBalance(
            invoice_id=invoice.id,
            original_total=invoice.grand_total,
            credited_total=credited,
            pending_balance=invoice.grand_total - credited,
            notes=notes,
        )

    # =========================================================================
    # ISSUANCE
    # =========================================================================

    async def issue(
        self,
        original_id: uuid.UUID,
        actor: str,
        amount: Optional[Decimal] = None,
        lines: Optional[Sequence[CreditLine]] = None,
        reason: Optional[str] = None,
        void_original: bool = False,
    ) -> AuthorizationResult:
        """
        Draft a credit note against an authorized invoice and submit it.

        Without `amount` or `lines` the note covers the whole pending
        balance. Amount checks fail before anything is stored or sent.
        """
        if amount is not None and lines:
            raise InvoiceValidationError(["Give either an amount or explicit lines, not both"])
        if void_original and (amount is not None or lines):
            raise InvoiceValidationError(["Voiding always credits the full pending balance"])

        async with self.locks.hold(original_id):
            original = await self.state_machine.load(original_id, for_update=True)
            self._check_original(original)

            pending = await self.pending_balance(original)
            if pending <= 0:
                raise InvariantViolationError(
                    f"Invoice {original.document_number} has no pending balance to credit",
                    details={"pending_balance": str(pending)},
                )

            if lines:
                note = self._compose_from_lines(original, lines)
            else:
                requested = pending if amount is None else round_money(amount)
                if requested <= 0:
                    raise InvoiceValidationError(["Credit amount must be greater than zero"])
                self._check_amount(original, requested, pending)
                note = self._compose_pro_rata(original, requested)

            self._check_amount(original, note.grand_total, pending)

            note.credit_reason = reason
            note.voids_original = void_original
            note.created_by = actor
            # Nothing is stored for a note the authority would refuse
            self.state_machine.assembler.assemble(note)

            self.db.add(note)
            await self.db.flush()
            self.db.add(InvoiceStatusHistory(
                invoice_id=note.id,
                from_status=None,
                to_status=InvoiceStatus.DRAFT.value,
                action="CREATE",
                actor=actor,
                reason=reason or f"Credit note against {original.document_number}",
            ))
            await self.state_machine.commit()
            logger.info(
                f"Credit note {note.id} ({note.invoice_type}) drafted for {note.grand_total} "
                f"against {original.document_number}, pending {pending}"
            )

            return await self._authorize(original, note.id, actor)

    async def authorize_note(self, note_id: uuid.UUID, actor: str) -> AuthorizationResult:
        """Submit (or resubmit) an existing credit-note draft."""
        note = await self.state_machine.load(note_id)
        if not note.is_credit_note or note.original_invoice_id is None:
            raise InvariantViolationError("Invoice is not a credit note")

        async with self.locks.hold(note.original_invoice_id):
            original = await self.state_machine.load(note.original_invoice_id, for_update=True)
            return await self._authorize(original, note_id, actor)

    async def _authorize(self, original: Invoice, note_id: uuid.UUID, actor: str) -> AuthorizationResult:
        """Caller holds the original's lock."""
        original_id = original.id

        async def recheck_balance(note: Invoice) -> None:
            current = await self.state_machine.load(original_id)
            self._check_original(current)
            self._check_amount(current, note.grand_total, await self.pending_balance(current))

        async def void_original(note: Invoice) -> None:
            # Runs in the note's approval commit
            if not note.voids_original:
                return
            current = await self.state_machine.load(original_id, for_update=True)
            if current.status != InvoiceStatus.AUTHORIZED.value:
                logger.warning(f"Invoice {current.document_number} is already {current.status}, not voided again")
                return
            reason = note.credit_reason or f"Voided by credit note {note.document_number}"
            self.state_machine.mark_voided(current, actor, reason)
            logger.info(f"Invoice {current.document_number} voided by credit note {note.document_number}")

        result = await self.state_machine.authorize(
            note_id, actor, precheck=recheck_balance, on_approved=void_original,
        )

        if not result.outcome.approved:
            logger.warning(
                f"Credit note {note_id} against {original.document_number} rejected; original left {original.status}"
            )
        return result

    def _check_original(self, original: Invoice) -> None:
        if original.status != InvoiceStatus.AUTHORIZED.value:
            raise InvariantViolationError(
                f"Credit notes can only be issued against authorized invoices, invoice is {original.status}",
                details={"status": original.status},
            )
        if original.is_credit_note:
            raise InvariantViolationError("Cannot issue a credit note against another credit note")

    def _check_amount(self, original: Invoice, amount: Decimal, pending: Decimal) -> None:
        if amount > pending:
            raise InvariantViolationError(
                f"Credit amount {amount} exceeds pending balance {pending} of {original.document_number}",
                details={"requested": str(amount), "pending_balance": str(pending)},
            )

    # =========================================================================
    # COMPOSITION
    # =========================================================================

    def _new_note(self, original: Invoice) -> Invoice:
        """Counterparty and issuer copied verbatim; the tax profile is not resolved again."""
        return Invoice(
            id=uuid.uuid4(),
            invoice_type=credit_note_type_for(original.invoice_type).value,
            status=InvoiceStatus.DRAFT.value,
            concept=original.concept,
            invoice_date=date.today(),
            service_from=original.service_from,
            service_to=original.service_to,
            payment_due_date=original.payment_due_date,
            issuer_tax_id=original.issuer_tax_id,
            issuer_name=original.issuer_name,
            issuer_address=original.issuer_address,
            issuer_tax_condition=original.issuer_tax_condition,
            point_of_sale=original.point_of_sale,
            customer_id=original.customer_id,
            receiver_document_type=original.receiver_document_type,
            receiver_document_number=original.receiver_document_number,
            receiver_tax_condition=original.receiver_tax_condition,
            receiver_tax_condition_label=original.receiver_tax_condition_label,
            receiver_name=original.receiver_name,
            receiver_address=original.receiver_address,
            vat_itemized=original.vat_itemized,
            currency_id=original.currency_id,
            currency_rate=original.currency_rate,
            original_invoice_id=original.id,
            associated_type_code=original.type.code,
            associated_point_of_sale=original.point_of_sale,
            associated_number=original.sequence_number,
            submission_attempts=0,
            sale_ids=original.sale_ids,
        )

    def _compose_pro_rata(self, original: Invoice, amount: Decimal) -> Invoice:
        """Every component, VAT line, tribute and item scaled by amount / original total."""
        note = self._new_note(original)
        net_taxed, net_untaxed, exempt, vat_total, tributes_total = apportion(amount, [
            original.net_taxed,
            original.net_untaxed,
            original.exempt,
            original.vat_total,
            original.other_tributes_total,
        ])

        vat_lines = list(original.vat_lines)
        bases = apportion(net_taxed, [v.base_amount for v in vat_lines])
        vats = apportion(vat_total, [v.vat_amount for v in vat_lines])
        note.vat_lines = [
            InvoiceVatLine(rate=v.rate, base_amount=base, vat_amount=vat)
            for v, base, vat in zip(vat_lines, bases, vats)
        ]

        items = sorted(original.items, key=lambda i: i.line_number)
        item_nets = self._item_shares(items, net_taxed, vat_lines, bases)
        vat_shares = self._item_vat(items, item_nets, note.vat_lines)
        note.items = [
            self._credit_item(item, net, vat)
            for item, net, vat in zip(items, item_nets, vat_shares)
        ]

        tributes = list(original.tributes)
        tribute_amounts = apportion(tributes_total, [t.amount for t in tributes])
        note.tributes = [
            InvoiceTribute(
                tribute_code=t.tribute_code,
                description=t.description,
                base_amount=round_money(t.base_amount * share / t.amount) if t.amount else ZERO,
                rate=t.rate,
                amount=share,
            )
            for t, share in zip(tributes, tribute_amounts)
        ]

        note.net_taxed = net_taxed
        note.net_untaxed = net_untaxed
        note.exempt = exempt
        note.vat_total = vat_total
        note.other_tributes_total = tributes_total
        note.grand_total = net_taxed + net_untaxed + exempt + vat_total + tributes_total
        return note

    def _item_shares(
        self,
        items: List[InvoiceItem],
        net_taxed: Decimal,
        vat_lines: List[InvoiceVatLine],
        bases: List[Decimal],
    ) -> List[Decimal]:
        """Split the credited net across items, per VAT rate when VAT is itemized."""
        if not vat_lines:
            return apportion(net_taxed, [item.net_amount for item in items])

        shares = [ZERO] * len(items)
        for vat_line, base in zip(vat_lines, bases):
            indexes = [i for i, item in enumerate(items) if item.vat_rate == vat_line.rate]
            for i, share in zip(indexes, apportion(base, [items[i].net_amount for i in indexes])):
                shares[i] = share
        return shares

    def _item_vat(self, items: List[InvoiceItem], nets: List[Decimal], vat_lines: List[InvoiceVatLine]) -> List[Decimal]:
        shares = [ZERO] * len(items)
        for vat_line in vat_lines:
            indexes = [i for i, item in enumerate(items) if item.vat_rate == vat_line.rate]
            for i, share in zip(indexes, apportion(vat_line.vat_amount, [nets[i] for i in indexes])):
                shares[i] = share
        return shares

    def _credit_item(self, item: InvoiceItem, net: Decimal, vat: Decimal) -> InvoiceItem:
        if net == item.net_amount:
            quantity, unit_price, gross, discount = item.quantity, item.unit_price, item.gross_amount, item.discount_amount
        else:
            quantity, unit_price, gross, discount = Decimal("1"), net, net, ZERO
        return InvoiceItem(
            line_number=item.line_number,
            code=item.code,
            description=item.description,
            quantity=quantity,
            unit_of_measure=item.unit_of_measure,
            unit_price=unit_price,
            gross_amount=gross,
            discount_amount=discount,
            net_amount=net,
            vat_rate=item.vat_rate,
            vat_amount=vat,
            line_total=net + vat,
        )

    def _compose_from_lines(self, original: Invoice, lines: Sequence[CreditLine]) -> Invoice:
        """
        Credit explicit net amounts on chosen lines. VAT for each rate keeps
        the original's VAT to base ratio; untaxed, exempt and tributes are
        not credited.
        """
        items: Dict[int, InvoiceItem] = {item.line_number: item for item in original.items}
        errors = []
        requested: Dict[int, Decimal] = {}
        for line in lines:
            amount = round_money(line.amount)
            item = items.get(line.line_number)
            if item is None:
                errors.append(f"Original has no line {line.line_number}")
            elif line.line_number in requested:
                errors.append(f"Line {line.line_number} listed twice")
            elif amount <= 0:
                errors.append(f"Credit for line {line.line_number} must be greater than zero")
            elif amount > item.net_amount:
                errors.append(f"Credit for line {line.line_number} exceeds its net amount {item.net_amount}")
            else:
                requested[line.line_number] = amount
        if errors:
            raise InvoiceValidationError(errors)

        note = self._new_note(original)
        credited_items = [items[n] for n in sorted(requested)]
        nets = [requested[item.line_number] for item in credited_items]

        vat_lines = []
        for vat_line in original.vat_lines:
            base = sum((net for item, net in zip(credited_items, nets) if item.vat_rate == vat_line.rate), ZERO)
            if base == 0:
                continue
            vat = round_money(base * vat_line.vat_amount / vat_line.base_amount) if vat_line.base_amount else ZERO
            vat_lines.append(InvoiceVatLine(rate=vat_line.rate, base_amount=base, vat_amount=vat))

        vat_shares = self._item_vat(credited_items, nets, vat_lines)
        note.items = [
            self._credit_item(item, net, vat)
            for item, net, vat in zip(credited_items, nets, vat_shares)
        ]
        note.vat_lines = vat_lines
        note.tributes = []

        note.net_taxed = sum(nets, ZERO)
        note.net_untaxed = ZERO
        note.exempt = ZERO
        note.vat_total = sum((v.vat_amount for v in vat_lines), ZERO)
        note.other_tributes_total = ZERO
        note.grand_total = note.net_taxed + note.vat_total
        return note

    # =========================================================================
    # VOIDING
    # =========================================================================

    async def void_invoice(
        self,
        invoice_id: uuid.UUID,
        actor: str,
        reason: str,
        with_credit_note: bool = True,
    ) -> Optional[AuthorizationResult]:
        """
        Void an authorized invoice. With a credit note the original is voided
        only if the note is authorized; without one, the audited override is
        used and nothing is sent to the authority.
        """
        if not reason or not reason.strip():
            raise InvoiceValidationError(["A reason is required to void an invoice"])
        if with_credit_note:
            return await self.issue(invoice_id, actor, reason=reason.strip(), void_original=True)
        await self.state_machine.void_without_credit_note(invoice_id, actor, reason)
        return None
