"""Pydantic schemas for fiscal invoices, credit notes and authority queries."""
from datetime import datetime, date
from typing import Optional, List, Dict
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from fiscal_invoicing.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== Input Schemas ====================

class CounterpartyInput(BaseCreateSchema):
    """Counterparty as typed by the user; the tax profile is resolved from the registry."""
    tax_id: Optional[str] = Field(None, max_length=20)
    document_type: Optional[str] = Field("CUIT", description="CUIT, CUIL, DNI, PASSPORT, UNSPECIFIED or numeric code")
    name: str = Field(..., min_length=1, max_length=200)
    address: Optional[str] = Field(None, max_length=500)


class ManualItemCreate(BaseCreateSchema):
    code: Optional[str] = Field(None, max_length=50)
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0)
    discount: Decimal = Field(Decimal("0"), ge=0)
    vat_rate: Decimal = Field(Decimal("21"), ge=0, le=27)


class TributeCreate(BaseCreateSchema):
    tribute_code: int = Field(..., ge=1)
    description: str = Field(..., min_length=1, max_length=200)
    base_amount: Decimal = Field(..., ge=0)
    rate: Decimal = Field(Decimal("0"), ge=0)
    amount: Decimal = Field(..., ge=0)


class InvoiceFromSalesCreate(BaseCreateSchema):
    """One sale, or several sales of the same customer for a grouped invoice."""
    sale_ids: List[str] = Field(..., min_length=1)
    invoice_date: Optional[date] = None
    notes: Optional[str] = None


class InvoiceManualCreate(BaseCreateSchema):
    """
    Manual draft. With original_invoice_id the draft is a debit note against
    that authorized invoice and the counterparty is taken from it.
    """
    customer_id: Optional[str] = None
    counterparty: Optional[CounterpartyInput] = None
    items: List[ManualItemCreate] = Field(..., min_length=1)
    vat_applied: bool = True
    net_untaxed: Decimal = Field(Decimal("0"), ge=0)
    exempt: Decimal = Field(Decimal("0"), ge=0)
    tributes: List[TributeCreate] = []
    concept: int = Field(1, ge=1, le=3, description="1 products, 2 services, 3 products and services")
    invoice_date: Optional[date] = None
    service_from: Optional[date] = None
    service_to: Optional[date] = None
    payment_due_date: Optional[date] = None
    currency_id: str = Field("PES", min_length=3, max_length=3)
    currency_rate: Decimal = Field(Decimal("1"), gt=0)
    original_invoice_id: Optional[UUID] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_service_period(self):
        if self.service_from and self.service_to and self.service_from > self.service_to:
            raise ValueError("service_from must not be after service_to")
        return self


class CounterpartyUpdate(CounterpartyInput):
    pass


class CreditLineInput(BaseCreateSchema):
    line_number: int = Field(..., ge=1)
    amount: Decimal = Field(..., gt=0, description="Net amount to credit on this line")


class CreditNoteCreate(BaseCreateSchema):
    """Omit amount and lines to credit the whole pending balance."""
    amount: Optional[Decimal] = Field(None, gt=0)
    lines: Optional[List[CreditLineInput]] = None
    reason: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def amount_or_lines(self):
        if self.amount is not None and self.lines:
            raise ValueError("Give either amount or lines, not both")
        return self


class VoidRequest(BaseCreateSchema):
    reason: str = Field(..., min_length=1, max_length=500)
    with_credit_note: bool = True

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class ResetRequest(BaseCreateSchema):
    reason: Optional[str] = Field(None, max_length=500)


# ==================== Response Schemas ====================

class InvoiceItemResponse(BaseResponseSchema):
    line_number: int
    code: Optional[str] = None
    description: str
    quantity: Decimal
    unit_of_measure: str
    unit_price: Decimal
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    line_total: Decimal


class VatLineResponse(BaseResponseSchema):
    rate: Decimal
    base_amount: Decimal
    vat_amount: Decimal


class TributeResponse(BaseResponseSchema):
    tribute_code: int
    description: str
    base_amount: Decimal
    rate: Decimal
    amount: Decimal


class InvoiceResponse(BaseResponseSchema):
    id: UUID
    invoice_type: str
    status: str
    concept: int
    invoice_date: date
    service_from: Optional[date] = None
    service_to: Optional[date] = None
    payment_due_date: Optional[date] = None

    # Issuer
    issuer_tax_id: str
    issuer_name: str
    issuer_address: Optional[str] = None
    issuer_tax_condition: int
    point_of_sale: int

    # Counterparty
    customer_id: Optional[str] = None
    receiver_document_type: int
    receiver_document_number: str
    receiver_tax_condition: int
    receiver_tax_condition_label: str
    receiver_name: str
    receiver_address: Optional[str] = None
    vat_itemized: bool

    # Amounts
    net_taxed: Decimal
    net_untaxed: Decimal
    exempt: Decimal
    vat_total: Decimal
    other_tributes_total: Decimal
    grand_total: Decimal
    currency_id: str
    currency_rate: Decimal

    # Authorization
    cae: Optional[str] = None
    cae_expiry: Optional[date] = None
    sequence_number: Optional[int] = None
    document_number: Optional[str] = None
    authorized_at: Optional[datetime] = None
    authority_result: Optional[str] = None
    rejection_reasons: Optional[List[Dict[str, str]]] = None
    observations: Optional[List[Dict[str, str]]] = None
    barcode: Optional[str] = None
    submitting_since: Optional[datetime] = None
    submission_attempts: int = 0
    last_submission_error: Optional[str] = None

    # Notes
    original_invoice_id: Optional[UUID] = None
    associated_type_code: Optional[int] = None
    associated_point_of_sale: Optional[int] = None
    associated_number: Optional[int] = None
    voids_original: bool = False
    credit_reason: Optional[str] = None

    sale_ids: Optional[List[str]] = None
    void_reason: Optional[str] = None
    voided_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    items: List[InvoiceItemResponse] = []
    vat_lines: List[VatLineResponse] = []
    tributes: List[TributeResponse] = []


class InvoiceBrief(BaseResponseSchema):
    """Brief invoice for listing."""
    id: UUID
    invoice_type: str
    status: str
    invoice_date: date
    document_number: Optional[str] = None
    receiver_name: str
    receiver_document_number: str
    grand_total: Decimal
    cae: Optional[str] = None
    original_invoice_id: Optional[UUID] = None


class InvoiceListResponse(BaseModel):
    """Response for listing invoices."""
    items: List[InvoiceBrief]
    total: int
    page: int = 1
    size: int = 50
    pages: int = 1


class AuthorizationResponse(BaseModel):
    """
    Result of one authorization request. A rejection is a normal outcome,
    not an error: the reasons are the authority's own.
    """
    outcome: str  # APPROVED, REJECTED
    recovered: bool = False
    cae: Optional[str] = None
    cae_expiry: Optional[date] = None
    document_number: Optional[str] = None
    reasons: List[Dict[str, str]] = []
    observations: List[Dict[str, str]] = []
    invoice: InvoiceResponse


class VoidResponse(BaseModel):
    invoice: InvoiceResponse
    credit_note: Optional[AuthorizationResponse] = None


class PendingBalanceResponse(BaseModel):
    invoice_id: UUID
    original_total: Decimal
    credited_total: Decimal
    pending_balance: Decimal
    notes: List[InvoiceBrief] = []


class StatusHistoryResponse(BaseResponseSchema):
    from_status: Optional[str] = None
    to_status: str
    action: str
    actor: str
    reason: Optional[str] = None
    created_at: datetime


class VerificationResponse(BaseModel):
    invoice_id: UUID
    valid: bool
    cae_matches: bool
    barcode_matches: bool
    cae_expired: bool
    authority_cae: Optional[str] = None
    message: str


class PointOfSaleResponse(BaseResponseSchema):
    number: int
    blocked: bool
    description: Optional[str] = None


class AuthorityStatusResponse(BaseModel):
    app: str
    db: str
    auth: str
