"""Fiscal invoice models.

Supports:
- Standard invoices, debit notes and credit notes (letters A, B, C)
- Authorization artifacts issued by the tax authority (CAE)
- VAT breakdown by rate and other tributes
- Status history for audit
"""
import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, DateTime, ForeignKey, Integer, Text, Numeric, Date
from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_invoicing.database import Base
from fiscal_invoicing.db_types import JSONType, UUIDType
from fiscal_invoicing.core.code_tables import InvoiceType, VoucherFamily


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""
    DRAFT = "DRAFT"              # Editable, no fiscal artifacts
    AUTHORIZED = "AUTHORIZED"    # CAE issued by the authority
    REJECTED = "REJECTED"        # Authority refused the submission
    VOIDED = "VOIDED"            # Reversed; artifacts kept for history


class Invoice(Base):
    """
    Fiscal document: standard invoice, debit note or credit note.
    Notes carry a reference to the original invoice they adjust.
    """
    __tablename__ = "fiscal_invoices"
    __table_args__ = (
        Index("ix_fiscal_invoices_invoice_date", "invoice_date"),
        Index("ix_fiscal_invoices_cae", "cae"),
        Index("ix_fiscal_invoices_pos_sequence", "point_of_sale", "invoice_type", "sequence_number"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Type & Status
    invoice_type: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        comment="A, B, C, A_ND, B_ND, C_ND, A_NC, B_NC, C_NC"
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=InvoiceStatus.DRAFT.value,
        nullable=False,
        index=True,
        comment="DRAFT, AUTHORIZED, REJECTED, VOIDED"
    )
    concept: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
        comment="1 products, 2 services, 3 products and services"
    )

    # Dates
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    service_from: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    service_to: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    payment_due_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Issuer (fixed at issue time from configuration)
    issuer_tax_id: Mapped[str] = mapped_column(String(11), nullable=False)
    issuer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    issuer_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    issuer_tax_condition: Mapped[int] = mapped_column(Integer, nullable=False)
    point_of_sale: Mapped[int] = mapped_column(Integer, nullable=False)

    # Counterparty
    customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    receiver_document_type: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="80 CUIT, 86 CUIL, 94 passport, 96 DNI, 99 unspecified"
    )
    receiver_document_number: Mapped[str] = mapped_column(String(20), nullable=False)
    receiver_tax_condition: Mapped[int] = mapped_column(Integer, nullable=False)
    receiver_tax_condition_label: Mapped[str] = mapped_column(String(100), nullable=False)
    receiver_name: Mapped[str] = mapped_column(String(200), nullable=False)
    receiver_address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    vat_itemized: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="VAT shown per line and in the breakdown"
    )

    # Amounts
    net_taxed: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    net_untaxed: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    exempt: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    vat_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    other_tributes_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    grand_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency_id: Mapped[str] = mapped_column(String(3), default="PES", nullable=False)
    currency_rate: Mapped[Decimal] = mapped_column(Numeric(12, 6), default=Decimal("1"), nullable=False)

    # Authorization artifacts
    cae: Mapped[Optional[str]] = mapped_column(
        String(14),
        nullable=True,
        comment="Authorization code issued by the authority"
    )
    cae_expiry: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    sequence_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    document_number: Mapped[Optional[str]] = mapped_column(
        String(14),
        nullable=True,
        index=True,
        comment="PPPPP-NNNNNNNN"
    )
    authorized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    authority_result: Mapped[Optional[str]] = mapped_column(
        String(1),
        nullable=True,
        comment="A approved, R rejected"
    )
    rejection_reasons: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    observations: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    barcode: Mapped[Optional[str]] = mapped_column(String(60), nullable=True)

    # Submission bookkeeping (never a fiscal artifact)
    pending_sequence_number: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Sequence reserved for an unresolved submission"
    )
    submitting_since: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set while a worker waits on the authority for this invoice"
    )
    submission_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_submission_error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Note references
    original_invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_invoices.id", ondelete="RESTRICT"),
        nullable=True,
        index=True
    )
    associated_type_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    associated_point_of_sale: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    associated_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    voids_original: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Credit note issued to void the original invoice"
    )
    credit_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Originating sales
    sale_ids: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Void
    void_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    # Relationships
    items: Mapped[List["InvoiceItem"]] = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceItem.line_number",
        lazy="selectin"
    )
    vat_lines: Mapped[List["InvoiceVatLine"]] = relationship(
        "InvoiceVatLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    tributes: Mapped[List["InvoiceTribute"]] = relationship(
        "InvoiceTribute",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def type(self) -> InvoiceType:
        return InvoiceType(self.invoice_type)

    @property
    def is_credit_note(self) -> bool:
        return self.type.family == VoucherFamily.CREDIT_NOTE

    @property
    def has_fiscal_artifacts(self) -> bool:
        return bool(self.cae or self.sequence_number or self.document_number)

    def __repr__(self) -> str:
        return f"<Invoice(type='{self.invoice_type}', number='{self.document_number}', status='{self.status}')>"


class InvoiceItem(Base):
    """Invoice line. VAT is allocated from the invoice aggregate."""
    __tablename__ = "fiscal_invoice_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)

    code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_of_measure: Mapped[str] = mapped_column(
        String(5),
        default="7",
        comment="Authority unit code, 7 = units"
    )
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        comment="Quantity x unit price"
    )
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2),
        nullable=False,
        comment="Value after discount"
    )
    vat_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"))
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:
        return f"<InvoiceItem(line={self.line_number}, net={self.net_amount})>"


class InvoiceVatLine(Base):
    """VAT breakdown entry for one rate."""
    __tablename__ = "fiscal_invoice_vat_lines"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    vat_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="vat_lines")


class InvoiceTribute(Base):
    """Other tribute (provincial gross income perception, municipal tax, ...)."""
    __tablename__ = "fiscal_invoice_tributes"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tribute_code: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), default=Decimal("0"))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="tributes")


class InvoiceStatusHistory(Base):
    """One row per lifecycle transition."""
    __tablename__ = "fiscal_invoice_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("fiscal_invoices.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    to_status: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<InvoiceStatusHistory({self.from_status} -> {self.to_status})>"
