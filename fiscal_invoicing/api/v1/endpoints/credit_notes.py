"""API endpoints for credit notes, pending balances and voiding."""
from uuid import UUID

from fastapi import APIRouter, status

from fiscal_invoicing.api.deps import Actor, CreditNotes, StateMachine
from fiscal_invoicing.api.v1.endpoints.invoices import authorization_response
from fiscal_invoicing.schemas.invoice import (
    AuthorizationResponse,
    CreditNoteCreate,
    InvoiceBrief,
    InvoiceResponse,
    PendingBalanceResponse,
    VoidRequest,
    VoidResponse,
)
from fiscal_invoicing.services.credit_note_service import CreditLine


router = APIRouter()


@router.post(
    "/invoices/{invoice_id}/credit-notes",
    response_model=AuthorizationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def issue_credit_note(
    invoice_id: UUID,
    note_in: CreditNoteCreate,
    credit_notes: CreditNotes,
    actor: Actor,
):
    """
    Issue a partial or full credit note and submit it.

    The original stays AUTHORIZED; only its pending balance changes once
    the note is authorized.
    """
    result = await credit_notes.issue(
        invoice_id,
        actor,
        amount=note_in.amount,
        lines=[CreditLine(line_number=l.line_number, amount=l.amount) for l in note_in.lines or []],
        reason=note_in.reason,
    )
    return authorization_response(result)


@router.get("/invoices/{invoice_id}/pending-balance", response_model=PendingBalanceResponse)
async def get_pending_balance(invoice_id: UUID, credit_notes: CreditNotes):
    summary = await credit_notes.balance_summary(invoice_id)
    return PendingBalanceResponse(
        invoice_id=summary.invoice_id,
        original_total=summary.original_total,
        credited_total=summary.credited_total,
        pending_balance=summary.pending_balance,
        notes=[InvoiceBrief.model_validate(n) for n in summary.notes],
    )


@router.post("/invoices/{invoice_id}/void", response_model=VoidResponse)
async def void_invoice(
    invoice_id: UUID,
    void_in: VoidRequest,
    credit_notes: CreditNotes,
    state_machine: StateMachine,
    actor: Actor,
):
    """
    Void an authorized invoice with a credit note for its pending balance.

    If the authority rejects the note the invoice stays AUTHORIZED. With
    with_credit_note=false the audited override is used instead.
    """
    result = await credit_notes.void_invoice(
        invoice_id, actor, void_in.reason, with_credit_note=void_in.with_credit_note
    )
    invoice = await state_machine.load(invoice_id)
    return VoidResponse(
        invoice=InvoiceResponse.model_validate(invoice),
        credit_note=authorization_response(result) if result else None,
    )
