"""Invoice Service for draft creation and lookup.

Drafts come from:
- one or more back-office sales of the same customer
- manual entry, optionally as a debit note against an authorized invoice

Every new draft resolves the counterparty's tax profile again; nothing
cached on the customer record is trusted.
"""
import uuid
import logging
from datetime import date
from decimal import Decimal
from typing import Optional, List, Sequence, Tuple

from sqlalchemy import select, func, and_, true
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_invoicing.config import IssuerConfig
from fiscal_invoicing.core.code_tables import (
    Concept,
    VoucherFamily,
    debit_note_type_for,
    tax_condition_from_code,
    to_invoice_type,
)
from fiscal_invoicing.core.exceptions import InvariantViolationError, InvoiceValidationError
from fiscal_invoicing.models.invoice import (
    Invoice, InvoiceItem, InvoiceStatus, InvoiceStatusHistory, InvoiceTribute, InvoiceVatLine,
)
from fiscal_invoicing.services.audit_service import AuditService
from fiscal_invoicing.services.backoffice_client import CustomerRecord
from fiscal_invoicing.services.invoice_assembler import DraftComposition
from fiscal_invoicing.services.invoice_state_machine import can_edit
from fiscal_invoicing.services.tax_profile_resolver import TaxProfile, to_document_type


logger = logging.getLogger(__name__)


class InvoiceService:
    """Service for draft invoices."""

    def __init__(self, db: AsyncSession, assembler, state_machine, backoffice, issuer: IssuerConfig):
        self.db = db
        self.assembler = assembler
        self.state_machine = state_machine
        self.backoffice = backoffice
        self.issuer = issuer

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_from_sales(
        self,
        sale_ids: Sequence[str],
        actor: str,
        invoice_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        """Draft invoice for one sale, or a grouped invoice for several."""
        if not sale_ids:
            raise InvoiceValidationError(["At least one sale is required"])
        if len(set(sale_ids)) != len(sale_ids):
            raise InvoiceValidationError(["A sale may only appear once in an invoice"])

        sales = [await self.backoffice.get_sale(sale_id) for sale_id in sale_ids]
        customer = await self.backoffice.get_customer(sales[0].customer_id)
        profile = await self.assembler.resolve_counterparty(customer.tax_id, customer.document_type)
        composition = self.assembler.compose_from_sales(sales, profile)

        invoice = await self._persist_draft(
            composition,
            profile,
            customer,
            actor,
            invoice_date=invoice_date,
            sale_ids=[sale.sale_id for sale in sales],
            notes=notes,
        )
        logger.info(
            f"Draft {invoice.invoice_type} {invoice.id} created from sales {', '.join(invoice.sale_ids)} "
            f"total {invoice.grand_total}"
        )
        return invoice

    async def create_manual(self, data, actor: str) -> Invoice:
        """
        Draft from manual lines. With `original_invoice_id` the draft is a
        debit note that mirrors the original's letter and counterparty.
        """
        original = None
        if data.original_invoice_id:
            original = await self.state_machine.load(data.original_invoice_id)
            self._check_debit_note_original(original)
            profile = self._profile_of(original)
            customer = CustomerRecord(
                customer_id=original.customer_id,
                tax_id=original.receiver_document_number,
                document_type=str(original.receiver_document_type),
                name=original.receiver_name,
                address=original.receiver_address,
            )
            invoice_type = debit_note_type_for(original.invoice_type)
        else:
            customer = await self._counterparty_from_input(data)
            profile = await self.assembler.resolve_counterparty(customer.tax_id, customer.document_type)
            invoice_type = None

        composition = self.assembler.compose_manual(
            data.items,
            profile,
            vat_applied=data.vat_applied,
            net_untaxed=data.net_untaxed,
            exempt=data.exempt,
            tributes=data.tributes,
            invoice_type=invoice_type,
        )
        if original is not None:
            composition.vat_itemized = original.vat_itemized and composition.vat_itemized

        invoice = await self._persist_draft(
            composition,
            profile,
            customer,
            actor,
            invoice_date=data.invoice_date,
            concept=data.concept,
            service_from=data.service_from,
            service_to=data.service_to,
            payment_due_date=data.payment_due_date,
            currency_id=data.currency_id,
            currency_rate=data.currency_rate,
            original=original,
            notes=data.notes,
        )
        logger.info(f"Manual draft {invoice.invoice_type} {invoice.id} created, total {invoice.grand_total}")
        return invoice

    async def _counterparty_from_input(self, data) -> CustomerRecord:
        if data.customer_id and not data.counterparty:
            return await self.backoffice.get_customer(data.customer_id)
        if not data.counterparty:
            raise InvoiceValidationError(["Either customer_id or counterparty is required"])
        return CustomerRecord(
            customer_id=data.customer_id,
            tax_id=data.counterparty.tax_id,
            document_type=data.counterparty.document_type,
            name=data.counterparty.name,
            address=data.counterparty.address,
        )

    def _check_debit_note_original(self, original: Invoice) -> None:
        if original.status != InvoiceStatus.AUTHORIZED.value:
            raise InvariantViolationError(
                f"Debit notes require an authorized original, invoice is {original.status}"
            )
        if original.type.family != VoucherFamily.INVOICE:
            raise InvariantViolationError("Debit notes can only reference a standard invoice")

    @staticmethod
    def _profile_of(invoice: Invoice) -> TaxProfile:
        """Counterparty profile as stored on an existing document."""
        return TaxProfile(
            invoice_letter=invoice.type.letter,
            tax_condition=tax_condition_from_code(invoice.receiver_tax_condition),
            tax_condition_label=invoice.receiver_tax_condition_label,
            itemize_vat=invoice.vat_itemized,
            document_type=to_document_type(invoice.receiver_document_type),
            document_number=invoice.receiver_document_number,
            source="ORIGINAL_DOCUMENT",
        )

    async def _persist_draft(
        self,
        composition: DraftComposition,
        profile: TaxProfile,
        customer: CustomerRecord,
        actor: str,
        invoice_date: Optional[date] = None,
        concept: int = Concept.PRODUCTS,
        service_from: Optional[date] = None,
        service_to: Optional[date] = None,
        payment_due_date: Optional[date] = None,
        currency_id: str = "PES",
        currency_rate: Decimal = Decimal("1"),
        sale_ids: Optional[List[str]] = None,
        original: Optional[Invoice] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        invoice = Invoice(
            id=uuid.uuid4(),
            invoice_type=composition.invoice_type.value,
            status=InvoiceStatus.DRAFT.value,
            concept=int(concept),
            invoice_date=invoice_date or date.today(),
            service_from=service_from,
            service_to=service_to,
            payment_due_date=payment_due_date,
            issuer_tax_id=self.issuer.tax_id,
            issuer_name=self.issuer.name,
            issuer_address=self.issuer.address,
            issuer_tax_condition=int(self.issuer.tax_condition),
            point_of_sale=self.issuer.point_of_sale,
            customer_id=customer.customer_id,
            receiver_name=customer.name,
            receiver_address=customer.address,
            net_untaxed=composition.net_untaxed,
            exempt=composition.exempt,
            currency_id=currency_id or "PES",
            currency_rate=currency_rate or Decimal("1"),
            submission_attempts=0,
            voids_original=False,
            sale_ids=sale_ids,
            notes=notes,
            created_by=actor,
        )
        self._apply_profile(invoice, profile)
        self._apply_composition(invoice, composition)

        if original is not None:
            invoice.original_invoice_id = original.id
            invoice.associated_type_code = original.type.code
            invoice.associated_point_of_sale = original.point_of_sale
            invoice.associated_number = original.sequence_number

        self.db.add(invoice)
        await self.db.flush()
        self.db.add(InvoiceStatusHistory(
            invoice_id=invoice.id,
            from_status=None,
            to_status=InvoiceStatus.DRAFT.value,
            action="CREATE",
            actor=actor,
            reason=f"Tax profile from {profile.source.lower().replace('_', ' ')}",
        ))
        await self.state_machine.commit()
        return invoice

    @staticmethod
    def _apply_profile(invoice: Invoice, profile: TaxProfile) -> None:
        invoice.receiver_document_type = int(profile.document_type)
        invoice.receiver_document_number = profile.document_number
        invoice.receiver_tax_condition = int(profile.tax_condition)
        invoice.receiver_tax_condition_label = profile.tax_condition_label

    @staticmethod
    def _apply_composition(invoice: Invoice, composition: DraftComposition) -> None:
        invoice.invoice_type = composition.invoice_type.value
        invoice.vat_itemized = composition.vat_itemized
        invoice.net_taxed = composition.net_taxed
        invoice.net_untaxed = composition.net_untaxed
        invoice.exempt = composition.exempt
        invoice.vat_total = composition.vat_total
        invoice.other_tributes_total = composition.other_tributes_total
        invoice.grand_total = composition.grand_total
        invoice.items = [
            InvoiceItem(
                line_number=number,
                code=line.code,
                description=line.description,
                quantity=line.quantity,
                unit_of_measure="7",
                unit_price=line.unit_price,
                gross_amount=line.gross_amount,
                discount_amount=line.discount_amount,
                net_amount=line.net_amount,
                vat_rate=line.vat_rate,
                vat_amount=line.vat_amount,
                line_total=line.line_total,
            )
            for number, line in enumerate(composition.lines, start=1)
        ]
        invoice.vat_lines = [
            InvoiceVatLine(rate=vat.rate, base_amount=vat.base_amount, vat_amount=vat.vat_amount)
            for vat in composition.vat_lines
        ]
        invoice.tributes = [
            InvoiceTribute(
                tribute_code=t.tribute_code,
                description=t.description,
                base_amount=t.base_amount,
                rate=t.rate,
                amount=t.amount,
            )
            for t in composition.tributes
        ]

    # =========================================================================
    # COUNTERPARTY CORRECTION
    # =========================================================================

    async def update_counterparty(self, invoice_id: uuid.UUID, data, actor: str) -> Invoice:
        """
        Correct a draft's counterparty and resolve its tax profile again.

        When the letter or VAT itemization changes, sale-based drafts are
        recomposed from their sales; manual drafts must be re-entered.
        """
        async with self.state_machine.locks.hold(invoice_id):
            invoice = await self.state_machine.load(invoice_id, for_update=True)
            if not can_edit(invoice.status):
                raise InvariantViolationError(f"Only drafts can be edited, invoice is {invoice.status}")
            self.state_machine.ensure_idle(invoice)
            if invoice.type.is_note:
                raise InvariantViolationError("A note's counterparty must match its original document")

            old_values = {
                "document_type": invoice.receiver_document_type,
                "document_number": invoice.receiver_document_number,
                "tax_condition": invoice.receiver_tax_condition,
                "invoice_type": invoice.invoice_type,
            }

            profile = await self.assembler.resolve_counterparty(data.tax_id, data.document_type)
            letter_changed = profile.invoice_letter != invoice.type.letter
            itemize_changed = profile.itemize_vat != invoice.vat_itemized and bool(invoice.vat_lines or profile.itemize_vat)

            if letter_changed or itemize_changed:
                if not invoice.sale_ids:
                    raise InvoiceValidationError([
                        "The new counterparty changes the invoice letter or VAT treatment; "
                        "create a new manual draft instead"
                    ])
                sales = [await self.backoffice.get_sale(sale_id) for sale_id in invoice.sale_ids]
                self._apply_composition(invoice, self.assembler.compose_from_sales(sales, profile))

            self._apply_profile(invoice, profile)
            if data.name:
                invoice.receiver_name = data.name
            if data.address is not None:
                invoice.receiver_address = data.address
            # A different document changes what the authority would match on
            invoice.pending_sequence_number = None

            await AuditService(self.db).log_counterparty_change(
                invoice,
                actor,
                old_values,
                {
                    "document_type": invoice.receiver_document_type,
                    "document_number": invoice.receiver_document_number,
                    "tax_condition": invoice.receiver_tax_condition,
                    "invoice_type": invoice.invoice_type,
                },
            )
            await self.state_machine.commit()
            return invoice

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get(self, invoice_id: uuid.UUID) -> Invoice:
        return await self.state_machine.load(invoice_id)

    async def list_invoices(
        self,
        status: Optional[str] = None,
        customer_id: Optional[str] = None,
        invoice_type: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        size: int = 50,
    ) -> Tuple[List[Invoice], int]:
        conditions = []
        if status:
            conditions.append(Invoice.status == status.upper())
        if customer_id:
            conditions.append(Invoice.customer_id == customer_id)
        if invoice_type:
            conditions.append(Invoice.invoice_type == to_invoice_type(invoice_type).value)
        if date_from:
            conditions.append(Invoice.invoice_date >= date_from)
        if date_to:
            conditions.append(Invoice.invoice_date <= date_to)

        where = and_(*conditions) if conditions else true()

        total = (await self.db.execute(select(func.count(Invoice.id)).where(where))).scalar() or 0
        result = await self.db.execute(
            select(Invoice)
            .where(where)
            .order_by(Invoice.invoice_date.desc(), Invoice.created_at.desc())
            .offset((page - 1) * size)
            .limit(size)
        )
        return list(result.scalars().all()), total
