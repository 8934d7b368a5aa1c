from typing import Annotated, Optional
import logging

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_invoicing.database import get_db
from fiscal_invoicing.services.credit_note_service import CreditNoteService
from fiscal_invoicing.services.invoice_assembler import InvoiceAssembler
from fiscal_invoicing.services.invoice_service import InvoiceService
from fiscal_invoicing.services.invoice_state_machine import InvoiceStateMachine


logger = logging.getLogger(__name__)


async def get_actor(x_actor: Annotated[Optional[str], Header()] = None) -> str:
    """Caller identity for history and audit. Authentication happens upstream."""
    actor = (x_actor or "").strip()
    return actor[:100] or "system"


DB = Annotated[AsyncSession, Depends(get_db)]
Actor = Annotated[str, Depends(get_actor)]


def get_assembler(request: Request) -> InvoiceAssembler:
    state = request.app.state
    return InvoiceAssembler(state.resolver, state.issuer)


def get_state_machine(request: Request, db: DB) -> InvoiceStateMachine:
    state = request.app.state
    return InvoiceStateMachine(db, state.gateway, get_assembler(request), state.locks)


StateMachine = Annotated[InvoiceStateMachine, Depends(get_state_machine)]


def get_invoice_service(request: Request, db: DB, state_machine: StateMachine) -> InvoiceService:
    state = request.app.state
    return InvoiceService(db, get_assembler(request), state_machine, state.backoffice, state.issuer)


def get_credit_note_service(request: Request, db: DB, state_machine: StateMachine) -> CreditNoteService:
    return CreditNoteService(db, state_machine, request.app.state.locks)


def get_gateway(request: Request):
    return request.app.state.gateway


Invoices = Annotated[InvoiceService, Depends(get_invoice_service)]
CreditNotes = Annotated[CreditNoteService, Depends(get_credit_note_service)]
