"""
Invoice Assembler

Turns sales, manual entries and stored drafts into fiscal content:
- Draft composition from one or more sales or from manual lines
- Aggregate-first VAT: the invoice VAT is fixed first, then allocated to
  lines in proportion to their net (per VAT rate)
- Wire payload for the authority, including the referenced document of
  credit/debit notes
- Local validation, so an invalid payload never reaches the authority
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel

from fiscal_invoicing.config import IssuerConfig
from fiscal_invoicing.core.code_tables import (
    Concept,
    InvoiceType,
    TaxCondition,
    VoucherFamily,
    compose_invoice_type,
    invoice_type_from_code,
    vat_rate_code,
)
from fiscal_invoicing.core.exceptions import InvoiceValidationError, UnknownCodeError
from fiscal_invoicing.core.money import ZERO, apportion, round_money
from fiscal_invoicing.services.tax_profile_resolver import TaxProfile


logger = logging.getLogger(__name__)


# =============================================================================
# DRAFT COMPOSITION
# =============================================================================

@dataclass
class ComposedLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_rate: Decimal = ZERO
    vat_amount: Decimal = ZERO
    code: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.net_amount + self.vat_amount


@dataclass
class ComposedVat:
    rate: Decimal
    base_amount: Decimal
    vat_amount: Decimal


@dataclass
class ComposedTribute:
    tribute_code: int
    description: str
    base_amount: Decimal
    rate: Decimal
    amount: Decimal


@dataclass
class DraftComposition:
    """Amounts and lines for a new draft, before it is persisted."""
    invoice_type: InvoiceType
    vat_itemized: bool
    lines: List[ComposedLine]
    vat_lines: List[ComposedVat] = field(default_factory=list)
    tributes: List[ComposedTribute] = field(default_factory=list)
    net_untaxed: Decimal = ZERO
    exempt: Decimal = ZERO

    @property
    def net_taxed(self) -> Decimal:
        return sum((line.net_amount for line in self.lines), ZERO)

    @property
    def vat_total(self) -> Decimal:
        return sum((vat.vat_amount for vat in self.vat_lines), ZERO)

    @property
    def other_tributes_total(self) -> Decimal:
        return sum((tribute.amount for tribute in self.tributes), ZERO)

    @property
    def grand_total(self) -> Decimal:
        return self.net_taxed + self.net_untaxed + self.exempt + self.vat_total + self.other_tributes_total


def vat_applies(vat_applied_at_sale: bool, profile: TaxProfile) -> bool:
    """VAT goes on the document only if the sale opted in AND the counterparty allows it."""
    return bool(vat_applied_at_sale) and profile.itemize_vat


def allocate_vat(net_amounts: Sequence[Decimal], vat_total: Decimal) -> List[Decimal]:
    """Share an already known VAT total across lines by their net amount."""
    return apportion(vat_total, net_amounts)


def allocate_vat_by_rate(
    net_amounts: Sequence[Decimal],
    rates: Sequence[Decimal],
    vat_by_rate: Dict[Decimal, Decimal],
) -> List[Decimal]:
    """Per-rate allocation: each rate's VAT goes only to lines taxed at that rate."""
    allocated = [ZERO] * len(net_amounts)
    for rate, vat_amount in vat_by_rate.items():
        indexes = [i for i, line_rate in enumerate(rates) if Decimal(line_rate) == Decimal(rate)]
        if not indexes:
            if vat_amount:
                raise InvoiceValidationError([f"VAT at {rate}% has no lines to allocate to"])
            continue
        shares = allocate_vat([net_amounts[i] for i in indexes], vat_amount)
        for i, share in zip(indexes, shares):
            allocated[i] = share
    return allocated


def _letter_type(profile: TaxProfile) -> InvoiceType:
    return compose_invoice_type(profile.invoice_letter, VoucherFamily.INVOICE)


class InvoiceAssembler:
    """
    Builds draft content and authority payloads.

    The resolver is consulted for every new draft; stored drafts are
    assembled from their own resolved data.
    """

    def __init__(self, resolver, issuer: IssuerConfig):
        self.resolver = resolver
        self.issuer = issuer

    async def resolve_counterparty(self, tax_id: Optional[str], document_type) -> TaxProfile:
        return await self.resolver.resolve(tax_id, document_type, self.issuer.tax_condition)

    def compose_from_sales(self, sales: Sequence, profile: TaxProfile) -> DraftComposition:
        """
        Compose a draft from one sale or several sales of the same customer.

        The aggregate net and VAT recorded on each sale are authoritative;
        lines only receive their proportional share.
        """
        if not sales:
            raise InvoiceValidationError(["At least one sale is required"])

        errors = []
        if len({sale.customer_id for sale in sales}) > 1:
            errors.append("All sales of a grouped invoice must belong to the same customer")
        if len({bool(sale.vat_applied) for sale in sales}) > 1:
            errors.append("Cannot group sales with and without VAT in one invoice")
        if any(not sale.items for sale in sales):
            errors.append("Sale has no line items")
        if errors:
            raise InvoiceValidationError(errors)

        include_vat = vat_applies(sales[0].vat_applied, profile)
        lines: List[ComposedLine] = []
        vat_by_rate: Dict[Decimal, List[Decimal]] = {}

        for sale in sales:
            sale_net = round_money(sale.net)
            sale_vat = round_money(sale.vat)
            sale_total = round_money(sale.total)

            if sale.vat_applied and sale_net + sale_vat != sale_total:
                logger.warning(
                    f"Sale {sale.sale_id} total {sale_total} differs from net {sale_net} + VAT {sale_vat}"
                )

            # Without itemized VAT the lines carry the final price
            line_base = sale_net if include_vat else sale_total
            line_nets = apportion(line_base, [round_money(item.line_total) for item in sale.items])
            rate = Decimal(str(sale.vat_rate)) if include_vat else ZERO

            for item, net in zip(sale.items, line_nets):
                quantity = Decimal(str(item.quantity))
                unit_price = round_money(item.unit_price)
                gross = round_money(quantity * unit_price)
                lines.append(ComposedLine(
                    code=item.code,
                    description=item.description,
                    quantity=quantity,
                    unit_price=unit_price,
                    gross_amount=gross,
                    discount_amount=max(gross - net, ZERO),
                    net_amount=net,
                    vat_rate=rate,
                ))

            if include_vat:
                base, vat = vat_by_rate.setdefault(rate, [ZERO, ZERO])
                vat_by_rate[rate] = [base + sale_net, vat + sale_vat]

        vat_lines = [ComposedVat(rate=rate, base_amount=base, vat_amount=vat) for rate, (base, vat) in vat_by_rate.items()]
        self._allocate(lines, vat_lines)

        return DraftComposition(
            invoice_type=_letter_type(profile),
            vat_itemized=include_vat,
            lines=lines,
            vat_lines=vat_lines,
        )

    def compose_manual(
        self,
        entries: Sequence,
        profile: TaxProfile,
        vat_applied: bool = True,
        net_untaxed: Decimal = ZERO,
        exempt: Decimal = ZERO,
        tributes: Sequence = (),
        invoice_type: Optional[InvoiceType] = None,
    ) -> DraftComposition:
        """
        Compose a draft from manually entered lines.

        VAT is computed once per rate on the aggregate base and then
        allocated back to the lines.
        """
        if not entries:
            raise InvoiceValidationError(["At least one line is required"])

        include_vat = vat_applies(vat_applied, profile)
        lines: List[ComposedLine] = []
        errors = []
        for number, entry in enumerate(entries, start=1):
            quantity = Decimal(str(entry.quantity))
            unit_price = round_money(entry.unit_price)
            gross = round_money(quantity * unit_price)
            discount = round_money(entry.discount or 0)
            if discount > gross:
                errors.append(f"Line {number}: discount {discount} exceeds its amount {gross}")
            lines.append(ComposedLine(
                code=entry.code,
                description=entry.description,
                quantity=quantity,
                unit_price=unit_price,
                gross_amount=gross,
                discount_amount=discount,
                net_amount=gross - discount,
                vat_rate=Decimal(str(entry.vat_rate)) if include_vat else ZERO,
            ))
        if errors:
            raise InvoiceValidationError(errors)

        vat_lines: List[ComposedVat] = []
        if include_vat:
            bases: Dict[Decimal, Decimal] = {}
            for line in lines:
                bases[line.vat_rate] = bases.get(line.vat_rate, ZERO) + line.net_amount
            vat_lines = [
                ComposedVat(rate=rate, base_amount=base, vat_amount=round_money(base * rate / 100))
                for rate, base in bases.items()
            ]
        self._allocate(lines, vat_lines)

        return DraftComposition(
            invoice_type=invoice_type or _letter_type(profile),
            vat_itemized=include_vat,
            lines=lines,
            vat_lines=vat_lines,
            tributes=[
                ComposedTribute(
                    tribute_code=t.tribute_code,
                    description=t.description,
                    base_amount=round_money(t.base_amount),
                    rate=Decimal(str(t.rate or 0)),
                    amount=round_money(t.amount),
                )
                for t in tributes
            ],
            net_untaxed=round_money(net_untaxed or 0),
            exempt=round_money(exempt or 0),
        )

    def _allocate(self, lines: List[ComposedLine], vat_lines: List[ComposedVat]) -> None:
        shares = allocate_vat_by_rate(
            [line.net_amount for line in lines],
            [line.vat_rate for line in lines],
            {vat.rate: vat.vat_amount for vat in vat_lines},
        )
        for line, share in zip(lines, shares):
            line.vat_amount = share

    # =========================================================================
    # WIRE PAYLOAD
    # =========================================================================

    def assemble(self, invoice, sequence_number: Optional[int] = None) -> "InvoicePayload":
        """
        Build and validate the authority payload for a stored draft.

        Raises InvoiceValidationError with every failed check; nothing is sent
        for an invalid payload.
        """
        errors: List[str] = []
        try:
            invoice_type = InvoiceType(invoice.invoice_type)
        except ValueError:
            raise InvoiceValidationError([f"Unknown invoice type: {invoice.invoice_type!r}"])

        items = sorted(invoice.items, key=lambda item: item.line_number)
        if invoice.vat_itemized:
            try:
                vat_shares = allocate_vat_by_rate(
                    [item.net_amount for item in items],
                    [item.vat_rate for item in items],
                    {vat.rate: vat.vat_amount for vat in invoice.vat_lines},
                )
            except InvoiceValidationError as e:
                errors.extend(e.errors)
                vat_shares = [ZERO] * len(items)
        else:
            vat_shares = [ZERO] * len(items)

        vat_breakdown = []
        for vat in invoice.vat_lines:
            try:
                vat_breakdown.append(PayloadVat(
                    rate_code=vat_rate_code(vat.rate),
                    rate=vat.rate,
                    base_amount=vat.base_amount,
                    amount=vat.vat_amount,
                ))
            except UnknownCodeError as e:
                errors.append(e.message)

        associated = []
        if invoice.associated_type_code is not None:
            associated.append(AssociatedDocument(
                voucher_type=invoice.associated_type_code,
                point_of_sale=invoice.associated_point_of_sale,
                number=invoice.associated_number,
                issuer_tax_id=invoice.issuer_tax_id,
            ))

        payload = InvoicePayload(
            invoice_type=invoice_type,
            voucher_type=invoice_type.code,
            point_of_sale=invoice.point_of_sale,
            sequence_number=sequence_number,
            concept=invoice.concept,
            document_type=invoice.receiver_document_type,
            document_number=invoice.receiver_document_number or "",
            receiver_tax_condition=invoice.receiver_tax_condition,
            invoice_date=invoice.invoice_date,
            service_from=invoice.service_from,
            service_to=invoice.service_to,
            payment_due_date=invoice.payment_due_date,
            net_taxed=invoice.net_taxed,
            net_untaxed=invoice.net_untaxed,
            exempt=invoice.exempt,
            vat_total=invoice.vat_total,
            other_tributes_total=invoice.other_tributes_total,
            grand_total=invoice.grand_total,
            currency_id=invoice.currency_id,
            currency_rate=invoice.currency_rate,
            vat_breakdown=vat_breakdown,
            tributes=[
                PayloadTribute(
                    tribute_code=t.tribute_code,
                    description=t.description,
                    base_amount=t.base_amount,
                    rate=t.rate,
                    amount=t.amount,
                )
                for t in invoice.tributes
            ],
            associated_documents=associated,
            items=[
                PayloadItem(
                    code=item.code,
                    description=item.description,
                    quantity=item.quantity,
                    unit_of_measure=item.unit_of_measure or "7",
                    unit_price=item.unit_price,
                    discount_amount=item.discount_amount,
                    net_amount=item.net_amount,
                    vat_rate=item.vat_rate,
                    vat_amount=share,
                    line_total=item.net_amount + share,
                )
                for item, share in zip(items, vat_shares)
            ],
        )

        errors.extend(self.validate(payload))
        if errors:
            raise InvoiceValidationError(errors)
        return payload

    def validate(self, payload: "InvoicePayload") -> List[str]:
        errors = []

        if not payload.document_number or not payload.document_number.strip():
            errors.append("Counterparty document number is required")
        try:
            invoice_type_from_code(payload.voucher_type)
        except UnknownCodeError:
            errors.append(f"Unknown invoice type code: {payload.voucher_type}")
        if not 1 <= payload.point_of_sale <= 99999:
            errors.append("Point of sale must be between 1 and 99999")
        if payload.grand_total <= 0:
            errors.append("Grand total must be greater than zero")
        if not payload.items:
            errors.append("Invoice has no line items")
        for number, item in enumerate(payload.items, start=1):
            if item.net_amount < 0:
                errors.append(f"Line {number} net amount must not be negative")

        breakdown_vat = sum((vat.amount for vat in payload.vat_breakdown), ZERO)
        if breakdown_vat != payload.vat_total:
            errors.append(f"VAT breakdown ({breakdown_vat}) does not match VAT total ({payload.vat_total})")
        if payload.vat_breakdown:
            breakdown_base = sum((vat.base_amount for vat in payload.vat_breakdown), ZERO)
            if breakdown_base != payload.net_taxed:
                errors.append(f"VAT base ({breakdown_base}) does not match net taxed ({payload.net_taxed})")

        tributes = sum((t.amount for t in payload.tributes), ZERO)
        if tributes != payload.other_tributes_total:
            errors.append(f"Tributes ({tributes}) do not match tribute total ({payload.other_tributes_total})")

        expected_total = (
            payload.net_taxed + payload.net_untaxed + payload.exempt
            + payload.vat_total + payload.other_tributes_total
        )
        if expected_total != payload.grand_total:
            errors.append(f"Grand total {payload.grand_total} does not equal the sum of its parts ({expected_total})")

        letter = payload.invoice_type.letter
        if letter == "A" and payload.net_taxed > 0 and not payload.vat_breakdown:
            errors.append("Type A documents require a VAT breakdown")
        if letter == "C" and (payload.vat_total != 0 or payload.vat_breakdown):
            errors.append("Type C documents cannot carry VAT")

        if payload.invoice_type == InvoiceType.A_NC and payload.receiver_tax_condition != TaxCondition.REGISTERED:
            # Authority error 10217
            errors.append("Credit note A requires a counterparty registered for VAT")

        if payload.invoice_type.is_note and len(payload.associated_documents) != 1:
            errors.append("Credit and debit notes must reference exactly one original document")
        if not payload.invoice_type.is_note and payload.associated_documents:
            errors.append("Only credit and debit notes may reference another document")

        try:
            concept = Concept(payload.concept)
            if concept.requires_service_dates and not (
                payload.service_from and payload.service_to and payload.payment_due_date
            ):
                errors.append("Service invoices require service period and payment due date")
        except ValueError:
            errors.append(f"Unknown concept: {payload.concept}")

        return errors


# =============================================================================
# PAYLOAD SCHEMA
# =============================================================================

def _amount(value: Decimal) -> float:
    return float(round_money(value))


def _wire_date(value: Optional[date]) -> Optional[str]:
    return value.strftime("%Y%m%d") if value else None


class PayloadVat(BaseModel):
    rate_code: int
    rate: Decimal
    base_amount: Decimal
    amount: Decimal


class PayloadTribute(BaseModel):
    tribute_code: int
    description: str
    base_amount: Decimal
    rate: Decimal
    amount: Decimal


class AssociatedDocument(BaseModel):
    voucher_type: int
    point_of_sale: int
    number: int
    issuer_tax_id: str


class PayloadItem(BaseModel):
    code: Optional[str] = None
    description: str
    quantity: Decimal
    unit_of_measure: str = "7"
    unit_price: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    line_total: Decimal


class InvoicePayload(BaseModel):
    """Canonical submission for one voucher."""
    invoice_type: InvoiceType
    voucher_type: int
    point_of_sale: int
    sequence_number: Optional[int] = None
    concept: int
    document_type: int
    document_number: str
    receiver_tax_condition: int
    invoice_date: date
    service_from: Optional[date] = None
    service_to: Optional[date] = None
    payment_due_date: Optional[date] = None
    net_taxed: Decimal
    net_untaxed: Decimal
    exempt: Decimal
    vat_total: Decimal
    other_tributes_total: Decimal
    grand_total: Decimal
    currency_id: str = "PES"
    currency_rate: Decimal = Decimal("1")
    vat_breakdown: List[PayloadVat] = []
    tributes: List[PayloadTribute] = []
    associated_documents: List[AssociatedDocument] = []
    items: List[PayloadItem] = []

    def with_sequence(self, sequence_number: int) -> "InvoicePayload":
        return self.model_copy(update={"sequence_number": sequence_number})

    def to_wire(self) -> Dict[str, Any]:
        """Authority field names; amounts as numbers, dates as YYYYMMDD."""
        body: Dict[str, Any] = {
            "CantReg": 1,
            "PtoVta": self.point_of_sale,
            "CbteTipo": self.voucher_type,
            "Concepto": self.concept,
            "DocTipo": self.document_type,
            "DocNro": int("".join(ch for ch in self.document_number if ch.isdigit()) or 0),
            "CbteDesde": self.sequence_number,
            "CbteHasta": self.sequence_number,
            "CbteFch": _wire_date(self.invoice_date),
            "ImpTotal": _amount(self.grand_total),
            "ImpTotConc": _amount(self.net_untaxed),
            "ImpNeto": _amount(self.net_taxed),
            "ImpOpEx": _amount(self.exempt),
            "ImpIVA": _amount(self.vat_total),
            "ImpTrib": _amount(self.other_tributes_total),
            "MonId": self.currency_id,
            "MonCotiz": float(self.currency_rate),
            "CondicionIVAReceptorId": self.receiver_tax_condition,
        }
        if self.concept != Concept.PRODUCTS:
            body["FchServDesde"] = _wire_date(self.service_from)
            body["FchServHasta"] = _wire_date(self.service_to)
            body["FchVtoPago"] = _wire_date(self.payment_due_date)
        if self.vat_breakdown:
            body["Iva"] = [
                {"Id": vat.rate_code, "BaseImp": _amount(vat.base_amount), "Importe": _amount(vat.amount)}
                for vat in self.vat_breakdown
            ]
        if self.tributes:
            body["Tributos"] = [
                {
                    "Id": t.tribute_code,
                    "Desc": t.description,
                    "BaseImp": _amount(t.base_amount),
                    "Alic": float(t.rate),
                    "Importe": _amount(t.amount),
                }
                for t in self.tributes
            ]
        if self.associated_documents:
            body["CbtesAsoc"] = [
                {"Tipo": doc.voucher_type, "PtoVta": doc.point_of_sale, "Nro": doc.number, "Cuit": doc.issuer_tax_id}
                for doc in self.associated_documents
            ]
        body["Items"] = [
            {
                "Codigo": item.code,
                "Descripcion": item.description,
                "Cantidad": float(item.quantity),
                "UnidadMedida": item.unit_of_measure,
                "PrecioUnitario": _amount(item.unit_price),
                "Bonificacion": _amount(item.discount_amount),
                "ImporteNeto": _amount(item.net_amount),
                "ImporteIVA": _amount(item.vat_amount),
                "ImporteTotal": _amount(item.line_total),
            }
            for item in self.items
        ]
        return body
