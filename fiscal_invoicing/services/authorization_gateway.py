"""
Authorization Gateway

Submits assembled vouchers to the tax authority and interprets the answer.

Failure handling:
- A response from the authority (approval or rejection) is final for that
  submission and is never retried here.
- Transport failures (timeouts, connection errors, 5xx) are retried a
  bounded number of times with exponential backoff. Before every resend
  the reserved sequence number is looked up: if the authority already
  holds it for this document, that authorization is adopted instead of
  submitting a second time.

After approval the barcode is derived from issuer, type, point of sale,
CAE and expiry; it can be recomputed offline for verification.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fiscal_invoicing.config import AuthorityConfig, IssuerConfig
from fiscal_invoicing.core.exceptions import AuthorityProtocolError, AuthorityTransportError, FiscalError
from fiscal_invoicing.core.money import format_document_number
from fiscal_invoicing.services.invoice_assembler import InvoicePayload


logger = logging.getLogger(__name__)


SEQUENCE_TAKEN = "SEQUENCE_TAKEN"


# =============================================================================
# BARCODE
# =============================================================================

def barcode_check_digit(digits: str) -> str:
    """Check digit: odd positions x3 plus even positions, complemented to a multiple of 10."""
    odd = sum(int(d) for d in digits[0::2])
    even = sum(int(d) for d in digits[1::2])
    return str((10 - (odd * 3 + even) % 10) % 10)


def build_barcode(issuer_tax_id: str, voucher_type: int, point_of_sale: int, cae: str, cae_expiry: date) -> str:
    """CUIT(11) + type(3) + point of sale(5) + CAE(14) + expiry YYYYMMDD + check digit."""
    body = (
        f"{issuer_tax_id}"
        f"{int(voucher_type):03d}"
        f"{int(point_of_sale):05d}"
        f"{str(cae).zfill(14)}"
        f"{cae_expiry.strftime('%Y%m%d')}"
    )
    if not body.isdigit():
        raise ValueError(f"Barcode fields must be numeric: {body!r}")
    return body + barcode_check_digit(body)


def is_valid_barcode(barcode: Optional[str]) -> bool:
    if not barcode or len(barcode) != 42 or not barcode.isdigit():
        return False
    return barcode_check_digit(barcode[:-1]) == barcode[-1]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class AuthorizationOutcome:
    """Definitive answer from the authority for one submission."""
    approved: bool
    point_of_sale: int
    sequence_number: int
    cae: Optional[str] = None
    cae_expiry: Optional[date] = None
    barcode: Optional[str] = None
    observations: List[Dict[str, str]] = field(default_factory=list)
    reasons: List[Dict[str, str]] = field(default_factory=list)
    recovered: bool = False

    @property
    def document_number(self) -> str:
        return format_document_number(self.point_of_sale, self.sequence_number)

    @property
    def result_flag(self) -> str:
        return "A" if self.approved else "R"


@dataclass
class SequenceStatus:
    """What the authority holds under a reserved sequence number."""
    free: bool
    outcome: Optional[AuthorizationOutcome] = None


@dataclass
class VerificationResult:
    valid: bool
    cae_matches: bool
    barcode_matches: bool
    cae_expired: bool
    authority_cae: Optional[str] = None
    message: str = ""


def _messages(entries: Any) -> List[Dict[str, str]]:
    messages = []
    for entry in entries or []:
        if isinstance(entry, dict):
            messages.append({
                "code": str(entry.get("code", "")),
                "message": str(entry.get("message", entry.get("msg", ""))),
            })
        else:
            messages.append({"code": "", "message": str(entry)})
    return messages


def _parse_authority_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d").date()
    except ValueError:
        raise AuthorityProtocolError(f"Malformed authority date: {value!r}")


def _digits(value: Any) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


class AuthorizationGateway:
    """
    Authority-facing half of the invoice lifecycle.

    One instance is built at startup with the issuer and retry policy and
    injected wherever authorization is needed. The semaphore bounds how
    many authority calls are in flight across all invoices.
    """

    def __init__(self, client, issuer: IssuerConfig, config: AuthorityConfig, sleep=asyncio.sleep):
        self.client = client
        self.issuer = issuer
        self.config = config
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(config.max_concurrency)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before attempt number `attempt` (2 = first retry)."""
        delay = self.config.backoff_seconds * (2 ** (attempt - 2))
        return min(delay, self.config.backoff_max_seconds)

    async def reserve_sequence(self, payload: InvoicePayload) -> int:
        """Next sequence number for the payload's point of sale and type."""
        async with self._semaphore:
            last = await self.client.last_voucher_number(payload.point_of_sale, payload.voucher_type)
        return last + 1

    async def inspect_sequence(self, payload: InvoicePayload) -> SequenceStatus:
        """Check whether the reserved number is free, ours, or used by another document."""
        async with self._semaphore:
            voucher = await self.client.get_voucher(
                payload.point_of_sale, payload.voucher_type, payload.sequence_number
            )
        if voucher is None:
            return SequenceStatus(free=True)

        if self._belongs_to(payload, voucher) and voucher.get("cae"):
            logger.info(
                f"Voucher {format_document_number(payload.point_of_sale, payload.sequence_number)} "
                f"already authorized for this document, adopting CAE {voucher.get('cae')}"
            )
            return SequenceStatus(free=False, outcome=self._approved(payload, voucher, recovered=True))

        return SequenceStatus(free=False)

    async def authorize(self, payload: InvoicePayload) -> AuthorizationOutcome:
        """
        Submit one voucher and wait for a definitive answer.

        Returns an approved or rejected outcome. Raises AuthorityTransportError
        once the retry budget is spent without an answer.
        """
        if payload.sequence_number is None:
            raise FiscalError("Payload has no reserved sequence number", error_code="SEQUENCE_NOT_RESERVED")

        last_error: Optional[AuthorityTransportError] = None
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                if attempt > 1:
                    await self._sleep(self.backoff_delay(attempt))
                    status = await self.inspect_sequence(payload)
                    if status.outcome:
                        return status.outcome
                    if not status.free:
                        raise AuthorityTransportError(
                            f"Sequence {payload.sequence_number} was used by another document",
                            error_code=SEQUENCE_TAKEN,
                        )

                logger.info(
                    f"Submitting voucher type {payload.voucher_type} "
                    f"{format_document_number(payload.point_of_sale, payload.sequence_number)} (attempt {attempt})"
                )
                async with self._semaphore:
                    response = await self.client.submit_voucher(payload.to_wire())
                return self._interpret(payload, response)

            except AuthorityTransportError as e:
                if e.error_code == SEQUENCE_TAKEN:
                    raise
                last_error = e
                logger.warning(
                    f"Transport failure on attempt {attempt}/{self.config.max_attempts} "
                    f"for sequence {payload.sequence_number}: {e.message}"
                )

        raise AuthorityTransportError(
            f"Authority unreachable after {self.config.max_attempts} attempts: {last_error.message}",
            details={"attempts": self.config.max_attempts, "last_error": last_error.message},
        )

    def _interpret(self, payload: InvoicePayload, response: Dict[str, Any]) -> AuthorizationOutcome:
        if response["result"] == "A":
            outcome = self._approved(payload, response)
            logger.info(f"Voucher {outcome.document_number} approved with CAE {outcome.cae}")
            return outcome

        reasons = _messages(response.get("errors")) + _messages(response.get("observations"))
        logger.info(
            f"Voucher {format_document_number(payload.point_of_sale, payload.sequence_number)} rejected: "
            + "; ".join(f"{r['code']} {r['message']}".strip() for r in reasons)
        )
        return AuthorizationOutcome(
            approved=False,
            point_of_sale=payload.point_of_sale,
            sequence_number=payload.sequence_number,
            reasons=reasons,
        )

    def _approved(self, payload: InvoicePayload, response: Dict[str, Any], recovered: bool = False) -> AuthorizationOutcome:
        cae = _digits(response.get("cae"))
        cae_expiry = _parse_authority_date(response.get("cae_expiry"))
        if not cae or not cae_expiry:
            raise AuthorityProtocolError("Approval without CAE or expiry", details={"response": response})

        sequence_number = int(response.get("number") or payload.sequence_number)
        return AuthorizationOutcome(
            approved=True,
            point_of_sale=payload.point_of_sale,
            sequence_number=sequence_number,
            cae=cae,
            cae_expiry=cae_expiry,
            barcode=build_barcode(self.issuer.tax_id, payload.voucher_type, payload.point_of_sale, cae, cae_expiry),
            observations=_messages(response.get("observations")),
            recovered=recovered,
        )

    def _belongs_to(self, payload: InvoicePayload, voucher: Dict[str, Any]) -> bool:
        try:
            return (
                int(voucher.get("document_type")) == payload.document_type
                and _digits(voucher.get("document_number")) == _digits(payload.document_number)
                and Decimal(str(voucher.get("total"))) == payload.grand_total
            )
        except (TypeError, ValueError, ArithmeticError):
            return False

    # =========================================================================
    # SIDE QUERIES
    # =========================================================================

    async def verify(self, invoice) -> VerificationResult:
        """Recompute the barcode offline and compare the stored CAE with the authority's."""
        if not invoice.cae or invoice.sequence_number is None:
            return VerificationResult(
                valid=False, cae_matches=False, barcode_matches=False, cae_expired=False,
                message="Invoice has no authorization",
            )

        expected_barcode = build_barcode(
            invoice.issuer_tax_id, invoice.type.code, invoice.point_of_sale, invoice.cae, invoice.cae_expiry
        )
        barcode_matches = expected_barcode == invoice.barcode
        cae_expired = invoice.cae_expiry < date.today()

        async with self._semaphore:
            voucher = await self.client.get_voucher(invoice.point_of_sale, invoice.type.code, invoice.sequence_number)
        authority_cae = _digits(voucher.get("cae")) if voucher else None
        cae_matches = authority_cae == invoice.cae

        if not voucher:
            message = "Voucher not found at the authority"
        elif not cae_matches:
            message = "CAE does not match the authority record"
        elif not barcode_matches:
            message = "Stored barcode does not match its fields"
        else:
            message = "Authorization verified"

        return VerificationResult(
            valid=cae_matches and barcode_matches,
            cae_matches=cae_matches,
            barcode_matches=barcode_matches,
            cae_expired=cae_expired,
            authority_cae=authority_cae,
            message=message,
        )

    async def points_of_sale(self):
        async with self._semaphore:
            return await self.client.points_of_sale()

    async def server_status(self) -> Dict[str, str]:
        async with self._semaphore:
            return await self.client.server_status()
