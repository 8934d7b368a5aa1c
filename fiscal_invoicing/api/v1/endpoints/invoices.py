"""API endpoints for fiscal invoice drafts and their authorization."""
from typing import Optional, List
from uuid import UUID
from datetime import date

from fastapi import APIRouter, Depends, Query, status

from fiscal_invoicing.api.deps import Actor, CreditNotes, Invoices, StateMachine, get_gateway
from fiscal_invoicing.schemas.invoice import (
    AuthorizationResponse,
    CounterpartyUpdate,
    InvoiceBrief,
    InvoiceFromSalesCreate,
    InvoiceListResponse,
    InvoiceManualCreate,
    InvoiceResponse,
    ResetRequest,
    StatusHistoryResponse,
    VerificationResponse,
)
from fiscal_invoicing.services.invoice_state_machine import AuthorizationResult


router = APIRouter()


def authorization_response(result: AuthorizationResult) -> AuthorizationResponse:
    outcome = result.outcome
    return AuthorizationResponse(
        outcome="APPROVED" if outcome.approved else "REJECTED",
        recovered=outcome.recovered,
        cae=outcome.cae,
        cae_expiry=outcome.cae_expiry,
        document_number=outcome.document_number if outcome.approved else None,
        reasons=outcome.reasons,
        observations=outcome.observations,
        invoice=InvoiceResponse.model_validate(result.invoice),
    )


# ==================== Drafts ====================

@router.post("/invoices/from-sales", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice_from_sales(
    invoice_in: InvoiceFromSalesCreate,
    service: Invoices,
    actor: Actor,
):
    """Draft an invoice from one sale, or a grouped invoice from several sales of one customer."""
    invoice = await service.create_from_sales(
        invoice_in.sale_ids,
        actor,
        invoice_date=invoice_in.invoice_date,
        notes=invoice_in.notes,
    )
    return InvoiceResponse.model_validate(invoice)


@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_invoice(
    invoice_in: InvoiceManualCreate,
    service: Invoices,
    actor: Actor,
):
    """Draft an invoice (or a debit note, with original_invoice_id) from manual lines."""
    invoice = await service.create_manual(invoice_in, actor)
    return InvoiceResponse.model_validate(invoice)


@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    service: Invoices,
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    invoice_type: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    size: int = Query(50, ge=1, le=200),
):
    """List invoices with filters."""
    invoices, total = await service.list_invoices(
        status=status,
        customer_id=customer_id,
        invoice_type=invoice_type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        size=size,
    )
    return InvoiceListResponse(
        items=[InvoiceBrief.model_validate(i) for i in invoices],
        total=total,
        page=page,
        size=size,
        pages=(total + size - 1) // size if total > 0 else 1,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: UUID, service: Invoices):
    return InvoiceResponse.model_validate(await service.get(invoice_id))


@router.patch("/invoices/{invoice_id}/counterparty", response_model=InvoiceResponse)
async def update_counterparty(
    invoice_id: UUID,
    counterparty_in: CounterpartyUpdate,
    service: Invoices,
    actor: Actor,
):
    """Correct a draft's counterparty; its tax profile is resolved again."""
    invoice = await service.update_counterparty(invoice_id, counterparty_in, actor)
    return InvoiceResponse.model_validate(invoice)


# ==================== Lifecycle ====================

@router.post("/invoices/{invoice_id}/authorize", response_model=AuthorizationResponse)
async def authorize_invoice(
    invoice_id: UUID,
    service: Invoices,
    credit_notes: CreditNotes,
    state_machine: StateMachine,
    actor: Actor,
):
    """
    Submit a draft to the tax authority.

    A rejection is returned with outcome REJECTED and the authority's
    reasons. Transport failures answer 503 and leave the draft retryable.
    """
    invoice = await service.get(invoice_id)
    if invoice.is_credit_note:
        result = await credit_notes.authorize_note(invoice_id, actor)
    else:
        result = await state_machine.authorize(invoice_id, actor)
    return authorization_response(result)


@router.post("/invoices/{invoice_id}/reset", response_model=InvoiceResponse)
async def reset_invoice(
    invoice_id: UUID,
    state_machine: StateMachine,
    actor: Actor,
    reset_in: Optional[ResetRequest] = None,
):
    """Return a rejected invoice to draft for correction and resubmission."""
    invoice = await state_machine.reset_to_draft(invoice_id, actor, reset_in.reason if reset_in else None)
    return InvoiceResponse.model_validate(invoice)


@router.get("/invoices/{invoice_id}/history", response_model=List[StatusHistoryResponse])
async def get_invoice_history(invoice_id: UUID, state_machine: StateMachine):
    entries = await state_machine.history(invoice_id)
    return [StatusHistoryResponse.model_validate(e) for e in entries]


@router.get("/invoices/{invoice_id}/verify", response_model=VerificationResponse)
async def verify_invoice(
    invoice_id: UUID,
    service: Invoices,
    gateway=Depends(get_gateway),
):
    """Compare the stored CAE with the authority's record and recompute the barcode."""
    invoice = await service.get(invoice_id)
    result = await gateway.verify(invoice)
    return VerificationResponse(
        invoice_id=invoice.id,
        valid=result.valid,
        cae_matches=result.cae_matches,
        barcode_matches=result.barcode_matches,
        cae_expired=result.cae_expired,
        authority_cae=result.authority_cae,
        message=result.message,
    )
