from fiscal_invoicing.models.invoice import (
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    InvoiceStatusHistory,
    InvoiceTribute,
    InvoiceVatLine,
)
from fiscal_invoicing.models.audit_log import AuditLog

__all__ = [
    "Invoice",
    "InvoiceItem",
    "InvoiceStatus",
    "InvoiceStatusHistory",
    "InvoiceTribute",
    "InvoiceVatLine",
    "AuditLog",
]
