"""
Back-office collaborators.

Sales and customers live in the back-office application; this module reads
them over its HTTP API and hands them to the invoicing services as plain
records.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import httpx

from fiscal_invoicing.core.exceptions import FiscalError, InvoiceNotFoundError


logger = logging.getLogger(__name__)


@dataclass
class SaleLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal  # After discount
    code: Optional[str] = None


@dataclass
class SaleRecord:
    sale_id: str
    customer_id: str
    items: List[SaleLine]
    net: Decimal
    vat: Decimal
    total: Decimal
    vat_applied: bool
    vat_rate: Decimal = Decimal("21")


@dataclass
class CustomerRecord:
    customer_id: str
    tax_id: Optional[str]
    document_type: Optional[str]  # Label (CUIT, DNI, ...) or numeric code
    name: str
    address: Optional[str] = None
    extra: dict = field(default_factory=dict)


class BackofficeError(FiscalError):
    error_code = "BACKOFFICE_UNAVAILABLE"


class BackofficeClient:
    """Reads sales and customers from the back-office API."""

    def __init__(self, base_url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def _get(self, path: str, not_found_message: str) -> dict:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(path)
            except httpx.RequestError as e:
                raise BackofficeError(f"Back-office request failed: {str(e)}")

        if response.status_code == 404:
            raise InvoiceNotFoundError(not_found_message, error_code="SOURCE_NOT_FOUND")
        try:
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise BackofficeError(
                f"Back-office HTTP error: {e.response.status_code}",
                details={"response": e.response.text},
            )
        except ValueError:
            raise BackofficeError("Back-office returned a non-JSON response")

    async def get_sale(self, sale_id: str) -> SaleRecord:
        data = await self._get(f"/sales/{sale_id}", f"Sale {sale_id} not found")
        try:
            return SaleRecord(
                sale_id=str(data["id"]),
                customer_id=str(data["customer_id"]),
                items=[
                    SaleLine(
                        code=item.get("code"),
                        description=item["description"],
                        quantity=Decimal(str(item["quantity"])),
                        unit_price=Decimal(str(item["unit_price"])),
                        line_total=Decimal(str(item["line_total"])),
                    )
                    for item in data["items"]
                ],
                net=Decimal(str(data["net"])),
                vat=Decimal(str(data.get("vat") or 0)),
                total=Decimal(str(data["total"])),
                vat_applied=bool(data.get("vat_applied", False)),
                vat_rate=Decimal(str(data.get("vat_rate") or 21)),
            )
        except (KeyError, TypeError, ArithmeticError) as e:
            logger.error(f"Malformed sale {sale_id} from back-office: {e}")
            raise BackofficeError(f"Malformed sale {sale_id}: {str(e)}")

    async def get_customer(self, customer_id: str) -> CustomerRecord:
        data = await self._get(f"/customers/{customer_id}", f"Customer {customer_id} not found")
        try:
            return CustomerRecord(
                customer_id=str(data["id"]),
                tax_id=data.get("tax_id"),
                document_type=data.get("document_type"),
                name=data["name"],
                address=data.get("address"),
            )
        except (KeyError, TypeError) as e:
            raise BackofficeError(f"Malformed customer {customer_id}: {str(e)}")
