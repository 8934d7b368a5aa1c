"""
AFIP Authority Client

HTTP client for the tax authority adapter:
- Login ticket request signed with the issuer certificate (CMS)
- Taxpayer registry lookup
- Last authorized voucher number per point of sale and type
- Voucher authorization (CAE request) and voucher query
- Enabled points of sale and server status

Connection errors, timeouts and 5xx answers raise AuthorityTransportError;
any other unexpected answer raises AuthorityProtocolError.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7

from fiscal_invoicing.config import AuthorityConfig, IssuerConfig
from fiscal_invoicing.core.exceptions import AuthorityProtocolError, AuthorityTransportError, FiscalError


logger = logging.getLogger(__name__)


@dataclass
class LoginTicket:
    """Token/sign pair returned by the authentication service."""
    token: str
    sign: str
    expires_at: datetime

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        # Refresh a few minutes before the authority expires it
        now = now or datetime.now(timezone.utc)
        return now < self.expires_at - timedelta(minutes=5)


@dataclass
class RegistryRecord:
    """Taxpayer registry entry."""
    tax_id: str
    tax_condition_code: Optional[int] = None
    tax_condition_label: Optional[str] = None
    name: Optional[str] = None
    person_type: Optional[str] = None


@dataclass
class PointOfSale:
    number: int
    blocked: bool = False
    description: Optional[str] = None


class LoginTicketProvider:
    """
    Obtains and caches the login ticket for the invoicing service.

    The request (TRA) is signed as CMS/PKCS#7 with the certificate and key
    registered for the issuer, then exchanged for a token/sign pair that
    stays valid for several hours.
    """

    AUTH_PATH = "/auth/login"
    SERVICE = "wsfe"

    def __init__(
        self,
        issuer: IssuerConfig,
        config: AuthorityConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.issuer = issuer
        self.config = config
        self._transport = transport
        self._ticket: Optional[LoginTicket] = None
        self._lock = asyncio.Lock()

    def build_login_ticket_request(self, now: Optional[datetime] = None) -> bytes:
        now = now or datetime.now(timezone.utc)
        generation = (now - timedelta(minutes=10)).replace(microsecond=0)
        expiration = (now + timedelta(minutes=10)).replace(microsecond=0)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            '<loginTicketRequest version="1.0">'
            "<header>"
            f"<uniqueId>{int(now.timestamp())}</uniqueId>"
            f"<generationTime>{generation.isoformat()}</generationTime>"
            f"<expirationTime>{expiration.isoformat()}</expirationTime>"
            "</header>"
            f"<service>{self.SERVICE}</service>"
            "</loginTicketRequest>"
        ).encode("utf-8")

    def _load_credentials(self):
        if not self.issuer.cert_path or not self.issuer.key_path:
            raise FiscalError(
                "Authority certificate and key paths are not configured",
                error_code="AUTHORITY_CREDENTIALS_MISSING",
            )
        with open(self.issuer.cert_path, "rb") as f:
            certificate = x509.load_pem_x509_certificate(f.read())
        with open(self.issuer.key_path, "rb") as f:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
        return certificate, private_key

    def sign_request(self, request: bytes) -> str:
        """Sign the TRA and return the DER CMS as base64."""
        certificate, private_key = self._load_credentials()
        cms = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(request)
            .add_signer(certificate, private_key, hashes.SHA256())
            .sign(serialization.Encoding.DER, [])
        )
        return base64.b64encode(cms).decode("ascii")

    async def get_ticket(self) -> LoginTicket:
        async with self._lock:
            if self._ticket and self._ticket.is_valid():
                return self._ticket

            body = {"service": self.SERVICE, "cms": self.sign_request(self.build_login_ticket_request())}
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            ) as client:
                try:
                    response = await client.post(self.AUTH_PATH, json=body)
                except httpx.RequestError as e:
                    raise AuthorityTransportError(f"Authentication request failed: {str(e)}")

            if response.status_code >= 500:
                raise AuthorityTransportError(f"Authentication HTTP error: {response.status_code}")
            if response.is_error:
                raise AuthorityProtocolError(
                    f"Authentication rejected: {response.status_code}",
                    details={"response": response.text},
                )

            try:
                result = response.json()
                expires_at = datetime.fromisoformat(result["expiration_time"])
                if expires_at.tzinfo is None:
                    expires_at = expires_at.replace(tzinfo=timezone.utc)
                self._ticket = LoginTicket(token=result["token"], sign=result["sign"], expires_at=expires_at)
            except (ValueError, KeyError, TypeError) as e:
                raise AuthorityProtocolError(f"Malformed authentication response: {str(e)}")

            logger.info(f"Obtained authority login ticket valid until {self._ticket.expires_at.isoformat()}")
            return self._ticket


class AuthorityClient:
    """
    Thin async client over the authority adapter endpoints.

    Holds no per-invoice state; one instance is shared by the gateway and
    the resolver.
    """

    REGISTRY_PATH = "/registry/{tax_id}"
    LAST_VOUCHER_PATH = "/vouchers/last"
    VOUCHERS_PATH = "/vouchers"
    VOUCHER_PATH = "/vouchers/{point_of_sale}/{voucher_type}/{number}"
    POINTS_OF_SALE_PATH = "/points-of-sale"
    STATUS_PATH = "/status"

    def __init__(
        self,
        issuer: IssuerConfig,
        config: AuthorityConfig,
        ticket_provider=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.issuer = issuer
        self.config = config
        self.ticket_provider = ticket_provider or LoginTicketProvider(issuer, config, transport=transport)
        self._transport = transport

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Any:
        ticket = await self.ticket_provider.get_ticket()
        headers = {
            "Content-Type": "application/json",
            "X-Token": ticket.token,
            "X-Sign": ticket.sign,
            "X-Cuit": self.issuer.tax_id,
        }

        async with httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        ) as client:
            try:
                response = await client.request(method, path, json=json, params=params, headers=headers)
            except httpx.TimeoutException as e:
                raise AuthorityTransportError(
                    f"Authority request timed out: {method} {path}",
                    details={"error": str(e)},
                )
            except httpx.RequestError as e:
                raise AuthorityTransportError(
                    f"Authority request failed: {method} {path}: {str(e)}",
                    details={"error": str(e)},
                )

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 500:
            raise AuthorityTransportError(
                f"Authority HTTP error: {response.status_code}",
                details={"response": response.text},
            )
        if response.is_error:
            raise AuthorityProtocolError(
                f"Authority HTTP error: {response.status_code}",
                details={"response": response.text},
            )

        try:
            return response.json()
        except ValueError:
            logger.error(f"Non-JSON answer from authority for {method} {path}")
            raise AuthorityProtocolError(
                "Authority returned a non-JSON response",
                details={"response": response.text},
            )

    async def lookup_taxpayer(self, tax_id: str) -> Optional[RegistryRecord]:
        """Registry lookup. Returns None when the tax id is not registered."""
        result = await self._request("GET", self.REGISTRY_PATH.format(tax_id=tax_id), allow_not_found=True)
        if result is None:
            return None
        if not isinstance(result, dict):
            raise AuthorityProtocolError("Malformed registry response", details={"response": result})

        code = result.get("tax_condition_code")
        try:
            code = int(code) if code not in (None, "") else None
        except (TypeError, ValueError):
            raise AuthorityProtocolError("Malformed tax condition code in registry response", details={"response": result})
        return RegistryRecord(
            tax_id=tax_id,
            tax_condition_code=code,
            tax_condition_label=result.get("tax_condition_label"),
            name=result.get("name"),
            person_type=result.get("person_type"),
        )

    async def last_voucher_number(self, point_of_sale: int, voucher_type: int) -> int:
        result = await self._request(
            "GET",
            self.LAST_VOUCHER_PATH,
            params={"point_of_sale": point_of_sale, "voucher_type": voucher_type},
        )
        try:
            return int(result["number"])
        except (KeyError, TypeError, ValueError):
            raise AuthorityProtocolError("Malformed last voucher response", details={"response": result})

    async def submit_voucher(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        result = await self._request("POST", self.VOUCHERS_PATH, json=payload)
        if not isinstance(result, dict) or result.get("result") not in ("A", "R"):
            logger.error(f"Unexpected authorization response: {result!r}")
            raise AuthorityProtocolError("Malformed authorization response", details={"response": result})
        return result

    async def get_voucher(self, point_of_sale: int, voucher_type: int, number: int) -> Optional[Dict[str, Any]]:
        path = self.VOUCHER_PATH.format(point_of_sale=point_of_sale, voucher_type=voucher_type, number=number)
        return await self._request("GET", path, allow_not_found=True)

    async def points_of_sale(self) -> List[PointOfSale]:
        result = await self._request("GET", self.POINTS_OF_SALE_PATH)
        try:
            return [
                PointOfSale(
                    number=int(entry["number"]),
                    blocked=bool(entry.get("blocked", False)),
                    description=entry.get("description"),
                )
                for entry in result
            ]
        except (KeyError, TypeError, ValueError):
            raise AuthorityProtocolError("Malformed points of sale response", details={"response": result})

    async def server_status(self) -> Dict[str, str]:
        result = await self._request("GET", self.STATUS_PATH)
        if not isinstance(result, dict):
            raise AuthorityProtocolError("Malformed status response", details={"response": result})
        return {key: str(result.get(key, "UNKNOWN")) for key in ("app", "db", "auth")}
