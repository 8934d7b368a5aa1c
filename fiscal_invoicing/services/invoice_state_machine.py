"""
Invoice State Machine

This module is the SINGLE SOURCE OF TRUTH for invoice status transitions.
All status changes go through InvoiceStateMachine.transition(), which
writes a history row for each one.

    DRAFT ──authorize──> AUTHORIZED ──void──> VOIDED
      │  ^
      │  └──reset──┐
      └──reject──> REJECTED

Fiscal artifacts are written as a side effect of DRAFT -> AUTHORIZED and
kept afterwards; the status column, not their presence, is what counts.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from fiscal_invoicing.core.exceptions import (
    AuthorityProtocolError,
    AuthorityTransportError,
    ConcurrentModificationError,
    IllegalTransitionError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    SubmissionInProgressError,
)
from fiscal_invoicing.models.invoice import Invoice, InvoiceStatus, InvoiceStatusHistory
from fiscal_invoicing.services.audit_service import AuditService
from fiscal_invoicing.services.authorization_gateway import SEQUENCE_TAKEN, AuthorizationOutcome


logger = logging.getLogger(__name__)

# A claim older than this belongs to a worker that died mid-submission
SUBMISSION_CLAIM_TIMEOUT = timedelta(minutes=5)


# =============================================================================
# TRANSITION RULES
# =============================================================================

# Format: current_status -> [list of allowed next statuses]
INVOICE_TRANSITIONS: Dict[str, List[str]] = {
    InvoiceStatus.DRAFT.value: [
        InvoiceStatus.AUTHORIZED.value,   # Authority approved
        InvoiceStatus.REJECTED.value,     # Authority rejected
    ],
    InvoiceStatus.REJECTED.value: [
        InvoiceStatus.DRAFT.value,        # Reset for correction and resubmission
    ],
    InvoiceStatus.AUTHORIZED.value: [
        InvoiceStatus.VOIDED.value,       # Full credit note, or audited override
    ],
    InvoiceStatus.VOIDED.value: [],       # Terminal state
}

TRANSITION_ACTIONS: Dict[tuple, str] = {
    (InvoiceStatus.DRAFT.value, InvoiceStatus.AUTHORIZED.value): "AUTHORIZE",
    (InvoiceStatus.DRAFT.value, InvoiceStatus.REJECTED.value): "REJECT",
    (InvoiceStatus.REJECTED.value, InvoiceStatus.DRAFT.value): "RESET",
    (InvoiceStatus.AUTHORIZED.value, InvoiceStatus.VOIDED.value): "VOID",
}


def _value(status) -> str:
    return status.value if isinstance(status, InvoiceStatus) else str(status)


def can_transition(current_status, new_status) -> bool:
    return _value(new_status) in INVOICE_TRANSITIONS.get(_value(current_status), [])


def get_allowed_transitions(current_status) -> List[str]:
    return list(INVOICE_TRANSITIONS.get(_value(current_status), []))


def get_transition_action(current_status, new_status) -> str:
    current, new = _value(current_status), _value(new_status)
    return TRANSITION_ACTIONS.get((current, new), f"{current} -> {new}")


def validate_transition(current_status, new_status) -> None:
    """
    Raise IllegalTransitionError unless the transition is in the table.

    Re-entering the current status is not a no-op: a second authorization
    of an authorized invoice is reported, not ignored.
    """
    if not can_transition(current_status, new_status):
        raise IllegalTransitionError(
            _value(current_status), _value(new_status), get_allowed_transitions(current_status)
        )


def is_terminal(status) -> bool:
    return not INVOICE_TRANSITIONS.get(_value(status))


def can_authorize(status) -> bool:
    return _value(status) == InvoiceStatus.DRAFT.value


def can_edit(status) -> bool:
    return _value(status) == InvoiceStatus.DRAFT.value


# =============================================================================
# LIFECYCLE SERVICE
# =============================================================================

@dataclass
class AuthorizationResult:
    invoice: Invoice
    outcome: AuthorizationOutcome


class InvoiceStateMachine:
    """
    Drives one invoice at a time through its lifecycle.

    Public operations take the per-invoice lock, reload the row, validate
    the transition and commit. `transition()` and `mark_voided()` assume
    the caller already holds the lock.
    """

    def __init__(self, db: AsyncSession, gateway, assembler, locks, claim_timeout: timedelta = SUBMISSION_CLAIM_TIMEOUT):
        self.db = db
        self.gateway = gateway
        self.assembler = assembler
        self.locks = locks
        self.claim_timeout = claim_timeout

    async def load(self, invoice_id: UUID, for_update: bool = False) -> Invoice:
        query = select(Invoice).where(Invoice.id == invoice_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        invoice = result.scalar_one_or_none()
        if not invoice:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", details={"invoice_id": str(invoice_id)})
        return invoice

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise ConcurrentModificationError("Invoice was modified concurrently, reload and retry")

    def transition(self, invoice: Invoice, new_status: InvoiceStatus, actor: str, reason: Optional[str] = None) -> InvoiceStatusHistory:
        current_status = invoice.status
        validate_transition(current_status, new_status)

        invoice.status = new_status.value
        entry = InvoiceStatusHistory(
            invoice_id=invoice.id,
            from_status=current_status,
            to_status=new_status.value,
            action=get_transition_action(current_status, new_status),
            actor=actor,
            reason=reason,
        )
        self.db.add(entry)
        logger.info(f"Invoice {invoice.id}: {current_status} -> {new_status.value} by {actor}")
        return entry

    # -------------------------------------------------------------------------
    # draft -> authorized | rejected
    # -------------------------------------------------------------------------

    def ensure_idle(self, invoice: Invoice) -> None:
        """Refuse to touch a draft while another worker awaits the authority's answer."""
        since = invoice.submitting_since
        if since is None:
            return
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - since < self.claim_timeout:
            raise SubmissionInProgressError(
                f"Invoice {invoice.id} is being submitted since {since.isoformat()}",
                details={"submitting_since": since.isoformat()},
            )
        logger.warning(f"Taking over abandoned submission of invoice {invoice.id} started {since.isoformat()}")

    async def authorize(
        self,
        invoice_id: UUID,
        actor: str,
        precheck: Optional[Callable[[Invoice], Awaitable[None]]] = None,
        on_approved: Optional[Callable[[Invoice], Awaitable[None]]] = None,
    ) -> AuthorizationResult:
        """
        Submit a draft to the authority.

        Returns the approved or rejected invoice. Validation and invariant
        errors leave the draft untouched; transport failures leave it in
        DRAFT with its sequence reservation so a retry cannot produce a
        second CAE.

        The submission is claimed on the row before anything is sent, so a
        worker in another process sees it and backs off instead of
        resubmitting the reserved number. `on_approved` runs inside the
        approval's unit of work.
        """
        async with self.locks.hold(invoice_id):
            invoice = await self.load(invoice_id, for_update=True)
            validate_transition(invoice.status, InvoiceStatus.AUTHORIZED)
            self.ensure_idle(invoice)

            if precheck is not None:
                await precheck(invoice)

            payload = self.assembler.assemble(invoice)
            self._sync_line_vat(invoice, payload)

            # Two workers that read the same version cannot both claim
            invoice.submitting_since = datetime.now(timezone.utc)
            await self.commit()

            try:
                outcome = await self._submit(invoice, payload)
            except (AuthorityTransportError, AuthorityProtocolError) as e:
                invoice.last_submission_error = e.message[:500]
                if e.error_code == SEQUENCE_TAKEN:
                    invoice.pending_sequence_number = None
                invoice.submitting_since = None
                await self.commit()
                raise

            if outcome.approved:
                invoice = await self._record_approval(invoice, outcome, actor, on_approved)
            else:
                self._apply_rejection(invoice, outcome, actor)
                await self.commit()

            return AuthorizationResult(invoice=invoice, outcome=outcome)

    async def _submit(self, invoice: Invoice, payload) -> AuthorizationOutcome:
        """Recover a reserved sequence if the authority already holds it, else submit."""
        sequence = invoice.pending_sequence_number
        if sequence is not None:
            status = await self.gateway.inspect_sequence(payload.with_sequence(sequence))
            if status.outcome:
                return status.outcome
            if not status.free:
                logger.info(f"Reserved sequence {sequence} of invoice {invoice.id} was consumed elsewhere")
                sequence = None

        if sequence is None:
            sequence = await self.gateway.reserve_sequence(payload)
        invoice.pending_sequence_number = sequence
        invoice.submission_attempts = (invoice.submission_attempts or 0) + 1
        await self.commit()

        return await self.gateway.authorize(payload.with_sequence(sequence))

    async def _record_approval(
        self,
        invoice: Invoice,
        outcome: AuthorizationOutcome,
        actor: str,
        on_approved: Optional[Callable[[Invoice], Awaitable[None]]],
    ) -> Invoice:
        """
        Persist an approval. The CAE already exists at the authority, so a
        version conflict reloads the row and applies it again.
        """
        invoice_id = invoice.id
        self._apply_approval(invoice, outcome, actor)
        if on_approved is not None:
            await on_approved(invoice)
        try:
            await self.commit()
            return invoice
        except ConcurrentModificationError:
            logger.warning(f"Invoice {invoice_id} changed while CAE {outcome.cae} was issued, applying it again")

        invoice = await self.load(invoice_id, for_update=True)
        if invoice.status == InvoiceStatus.AUTHORIZED.value and invoice.cae == outcome.cae:
            return invoice
        if not can_authorize(invoice.status):
            logger.error(
                f"CAE {outcome.cae} for sequence {outcome.sequence_number} could not be recorded "
                f"on invoice {invoice.id}, which is now {invoice.status}"
            )
            raise ConcurrentModificationError(
                f"Invoice {invoice.id} is {invoice.status}; CAE {outcome.cae} was not recorded",
                details={"cae": outcome.cae, "sequence_number": outcome.sequence_number},
            )

        self._apply_approval(invoice, outcome, actor)
        if on_approved is not None:
            await on_approved(invoice)
        await self.commit()
        return invoice

    def _sync_line_vat(self, invoice: Invoice, payload) -> None:
        for item, wire in zip(sorted(invoice.items, key=lambda i: i.line_number), payload.items):
            item.vat_amount = wire.vat_amount
            item.line_total = wire.line_total

    def _apply_approval(self, invoice: Invoice, outcome: AuthorizationOutcome, actor: str) -> None:
        invoice.cae = outcome.cae
        invoice.cae_expiry = outcome.cae_expiry
        invoice.sequence_number = outcome.sequence_number
        invoice.document_number = outcome.document_number
        invoice.authorized_at = datetime.now(timezone.utc)
        invoice.authority_result = outcome.result_flag
        invoice.observations = outcome.observations or None
        invoice.rejection_reasons = None
        invoice.barcode = outcome.barcode
        invoice.pending_sequence_number = None
        invoice.submitting_since = None
        invoice.last_submission_error = None
        reason = "Recovered earlier submission" if outcome.recovered else None
        self.transition(invoice, InvoiceStatus.AUTHORIZED, actor, reason)

    def _apply_rejection(self, invoice: Invoice, outcome: AuthorizationOutcome, actor: str) -> None:
        invoice.authority_result = outcome.result_flag
        invoice.rejection_reasons = outcome.reasons
        invoice.observations = None
        # A rejected voucher does not consume its number
        invoice.pending_sequence_number = None
        invoice.submitting_since = None
        invoice.last_submission_error = None
        summary = "; ".join(f"{r['code']} {r['message']}".strip() for r in outcome.reasons)
        self.transition(invoice, InvoiceStatus.REJECTED, actor, summary[:500] or "Rejected by authority")

    # -------------------------------------------------------------------------
    # rejected -> draft
    # -------------------------------------------------------------------------

    async def reset_to_draft(self, invoice_id: UUID, actor: str, reason: Optional[str] = None) -> Invoice:
        async with self.locks.hold(invoice_id):
            invoice = await self.load(invoice_id, for_update=True)
            validate_transition(invoice.status, InvoiceStatus.DRAFT)

            invoice.rejection_reasons = None
            invoice.authority_result = None
            invoice.observations = None
            invoice.last_submission_error = None
            invoice.submission_attempts = 0
            self.transition(invoice, InvoiceStatus.DRAFT, actor, reason or "Reset after rejection")
            await self.commit()
            return invoice

    # -------------------------------------------------------------------------
    # authorized -> voided
    # -------------------------------------------------------------------------

    def mark_voided(self, invoice: Invoice, actor: str, reason: str) -> None:
        self.transition(invoice, InvoiceStatus.VOIDED, actor, reason)
        invoice.void_reason = reason
        invoice.voided_at = datetime.now(timezone.utc)

    async def void_without_credit_note(self, invoice_id: UUID, actor: str, reason: str) -> Invoice:
        """Override for bookkeeping errors: void with no credit note, audited."""
        if not reason or not reason.strip():
            raise InvoiceValidationError(["A reason is required to void without a credit note"])

        async with self.locks.hold(invoice_id):
            invoice = await self.load(invoice_id, for_update=True)
            self.mark_voided(invoice, actor, reason.strip())
            await AuditService(self.db).log_void_override(invoice, actor, reason.strip())
            logger.warning(f"Invoice {invoice.document_number} voided without credit note by {actor}: {reason}")
            await self.commit()
            return invoice

    async def history(self, invoice_id: UUID) -> List[InvoiceStatusHistory]:
        await self.load(invoice_id)
        result = await self.db.execute(
            select(InvoiceStatusHistory)
            .where(InvoiceStatusHistory.invoice_id == invoice_id)
            .order_by(InvoiceStatusHistory.created_at)
        )
        return list(result.scalars().all())
