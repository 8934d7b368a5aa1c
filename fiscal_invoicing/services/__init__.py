# Services module
from fiscal_invoicing.services.audit_service import AuditService
from fiscal_invoicing.services.afip_client import AuthorityClient, LoginTicketProvider
from fiscal_invoicing.services.tax_profile_resolver import TaxProfileResolver
from fiscal_invoicing.services.invoice_assembler import InvoiceAssembler
from fiscal_invoicing.services.authorization_gateway import AuthorizationGateway
from fiscal_invoicing.services.invoice_locks import InvoiceLockRegistry
from fiscal_invoicing.services.invoice_state_machine import InvoiceStateMachine
from fiscal_invoicing.services.invoice_service import InvoiceService
from fiscal_invoicing.services.credit_note_service import CreditNoteService
from fiscal_invoicing.services.backoffice_client import BackofficeClient

__all__ = [
    "AuditService",
    "AuthorityClient",
    "LoginTicketProvider",
    "TaxProfileResolver",
    "InvoiceAssembler",
    "AuthorizationGateway",
    "InvoiceLockRegistry",
    "InvoiceStateMachine",
    "InvoiceService",
    "CreditNoteService",
    "BackofficeClient",
]
