"""Shared fixtures: SQLite database, in-memory tax authority and back office."""
import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import httpx
import pytest

from fiscal_invoicing.config import AuthorityConfig, IssuerConfig
from fiscal_invoicing.core.code_tables import TaxCondition
from fiscal_invoicing.core.exceptions import InvoiceNotFoundError
from fiscal_invoicing.database import build_engine, build_session_factory, init_db
from fiscal_invoicing.services.afip_client import AuthorityClient, LoginTicket
from fiscal_invoicing.services.authorization_gateway import AuthorizationGateway
from fiscal_invoicing.services.backoffice_client import CustomerRecord, SaleLine, SaleRecord
from fiscal_invoicing.services.credit_note_service import CreditNoteService
from fiscal_invoicing.services.invoice_assembler import InvoiceAssembler
from fiscal_invoicing.services.invoice_locks import InvoiceLockRegistry
from fiscal_invoicing.services.invoice_service import InvoiceService
from fiscal_invoicing.services.invoice_state_machine import InvoiceStateMachine
from fiscal_invoicing.services.tax_profile_resolver import TaxProfileResolver


ISSUER_CUIT = "30712345675"
REGISTERED_CUIT = "30500010912"
CONSUMER_CUIT = "20123456786"
UNREGISTERED_CUIT = "20304050607"


# ==================== Fake tax authority ====================

class FakeAuthority:
    """
    In-memory stand-in for the authority adapter, served through
    httpx.MockTransport.

    - registry: tax id -> registry record
    - fail_submissions: next N submissions time out before reaching the ledger
    - lose_responses: next N submissions are recorded, then the answer is lost
    - reject_with: answer every submission with R and these errors
    """

    def __init__(self):
        self.registry: Dict[str, dict] = {}
        self.vouchers: Dict[tuple, dict] = {}
        self.submissions: List[dict] = []
        self.fail_submissions = 0
        self.lose_responses = 0
        self.reject_with: Optional[List[dict]] = None
        self.registry_down = False
        self.next_cae = 74123456789012
        self.cae_expiry = date.today() + timedelta(days=10)
        self.points = [{"number": 1, "blocked": False}, {"number": 2, "blocked": True}]

    def add_voucher(self, point_of_sale: int, voucher_type: int, number: int, **fields) -> dict:
        voucher = {"point_of_sale": point_of_sale, "voucher_type": voucher_type, "number": number, **fields}
        self.vouchers[(point_of_sale, voucher_type, number)] = voucher
        return voucher

    def last_number(self, point_of_sale: int, voucher_type: int) -> int:
        numbers = [n for (p, t, n) in self.vouchers if p == point_of_sale and t == voucher_type]
        return max(numbers, default=0)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path

        if path == "/auth/login":
            return httpx.Response(200, json={
                "token": "token", "sign": "sign",
                "expiration_time": (datetime.now(timezone.utc) + timedelta(hours=12)).isoformat(),
            })

        if path.startswith("/registry/"):
            if self.registry_down:
                raise httpx.ConnectError("registry unreachable", request=request)
            record = self.registry.get(path.rsplit("/", 1)[-1])
            if record is None:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(200, json=record)

        if path == "/vouchers/last":
            pos = int(request.url.params["point_of_sale"])
            voucher_type = int(request.url.params["voucher_type"])
            return httpx.Response(200, json={"number": self.last_number(pos, voucher_type)})

        if path == "/vouchers" and request.method == "POST":
            return self._submit(request)

        if path.startswith("/vouchers/"):
            _, _, pos, voucher_type, number = path.split("/")
            voucher = self.vouchers.get((int(pos), int(voucher_type), int(number)))
            if voucher is None:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(200, json=voucher)

        if path == "/points-of-sale":
            return httpx.Response(200, json=self.points)

        if path == "/status":
            return httpx.Response(200, json={"app": "OK", "db": "OK", "auth": "OK"})

        return httpx.Response(404, json={"detail": "unknown path"})

    def _submit(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.submissions.append(body)

        if self.fail_submissions:
            self.fail_submissions -= 1
            raise httpx.ConnectTimeout("timed out", request=request)

        if self.reject_with is not None:
            return httpx.Response(200, json={
                "result": "R", "number": body["CbteDesde"], "errors": self.reject_with, "observations": [],
            })

        key = (body["PtoVta"], body["CbteTipo"], body["CbteDesde"])
        if key in self.vouchers or body["CbteDesde"] != self.last_number(body["PtoVta"], body["CbteTipo"]) + 1:
            return httpx.Response(200, json={
                "result": "R", "number": body["CbteDesde"],
                "errors": [{"code": "10016", "message": "El numero de comprobante no es el proximo a autorizar"}],
            })

        cae = str(self.next_cae)
        self.next_cae += 1
        self.add_voucher(
            body["PtoVta"], body["CbteTipo"], body["CbteDesde"],
            cae=cae,
            cae_expiry=self.cae_expiry.strftime("%Y%m%d"),
            document_type=body["DocTipo"],
            document_number=str(body["DocNro"]),
            total=body["ImpTotal"],
        )

        if self.lose_responses:
            self.lose_responses -= 1
            raise httpx.ReadTimeout("response lost", request=request)

        return httpx.Response(200, json={
            "result": "A", "cae": cae, "cae_expiry": self.cae_expiry.strftime("%Y%m%d"),
            "number": body["CbteDesde"], "observations": [], "errors": [],
        })


class StaticTicketProvider:
    async def get_ticket(self) -> LoginTicket:
        return LoginTicket(token="token", sign="sign", expires_at=datetime.now(timezone.utc) + timedelta(hours=12))


# ==================== Fake back office ====================

class FakeBackoffice:
    def __init__(self):
        self.sales: Dict[str, SaleRecord] = {}
        self.customers: Dict[str, CustomerRecord] = {}

    async def get_sale(self, sale_id: str) -> SaleRecord:
        if sale_id not in self.sales:
            raise InvoiceNotFoundError(f"Sale {sale_id} not found", error_code="SOURCE_NOT_FOUND")
        return self.sales[sale_id]

    async def get_customer(self, customer_id: str) -> CustomerRecord:
        if customer_id not in self.customers:
            raise InvoiceNotFoundError(f"Customer {customer_id} not found", error_code="SOURCE_NOT_FOUND")
        return self.customers[customer_id]


def make_sale(sale_id, customer_id, line_totals, net, vat, total, vat_applied=True, vat_rate="21"):
    return SaleRecord(
        sale_id=sale_id,
        customer_id=customer_id,
        items=[
            SaleLine(description=f"Item {i}", quantity=Decimal("1"), unit_price=Decimal(str(t)), line_total=Decimal(str(t)))
            for i, t in enumerate(line_totals, start=1)
        ],
        net=Decimal(str(net)),
        vat=Decimal(str(vat)),
        total=Decimal(str(total)),
        vat_applied=vat_applied,
        vat_rate=Decimal(vat_rate),
    )


# ==================== Fixtures ====================

@pytest.fixture
def issuer() -> IssuerConfig:
    return IssuerConfig(
        tax_id=ISSUER_CUIT,
        name="Talleres Norte SRL",
        address="Av. Siempreviva 742, Rosario",
        tax_condition=TaxCondition.REGISTERED,
        point_of_sale=1,
    )


@pytest.fixture
def authority_config() -> AuthorityConfig:
    return AuthorityConfig(
        base_url="https://authority.test",
        timeout_seconds=5,
        max_attempts=3,
        backoff_seconds=0.01,
        backoff_max_seconds=0.05,
        max_concurrency=4,
    )


@pytest.fixture
def authority() -> FakeAuthority:
    fake = FakeAuthority()
    fake.registry[REGISTERED_CUIT] = {
        "tax_condition_code": 1,
        "tax_condition_label": "IVA Responsable Inscripto",
        "name": "Distribuidora Sur SA",
        "person_type": "JURIDICA",
    }
    fake.registry[CONSUMER_CUIT] = {
        "tax_condition_code": 6,
        "tax_condition_label": "Responsable Monotributo",
        "name": "Perez Juan",
        "person_type": "FISICA",
    }
    return fake


@pytest.fixture
def client(issuer, authority_config, authority) -> AuthorityClient:
    return AuthorityClient(issuer, authority_config, ticket_provider=StaticTicketProvider(), transport=authority.transport)


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def gateway(client, issuer, authority_config, sleeps) -> AuthorizationGateway:
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return AuthorizationGateway(client, issuer, authority_config, sleep=fake_sleep)


@pytest.fixture
def resolver(client) -> TaxProfileResolver:
    return TaxProfileResolver(client)


@pytest.fixture
def assembler(resolver, issuer) -> InvoiceAssembler:
    return InvoiceAssembler(resolver, issuer)


@pytest.fixture
def locks() -> InvoiceLockRegistry:
    return InvoiceLockRegistry()


@pytest.fixture
def backoffice() -> FakeBackoffice:
    office = FakeBackoffice()
    office.customers["C-1"] = CustomerRecord(customer_id="C-1", tax_id=REGISTERED_CUIT, document_type="CUIT", name="Distribuidora Sur SA")
    office.customers["C-2"] = CustomerRecord(customer_id="C-2", tax_id=UNREGISTERED_CUIT, document_type="CUIT", name="Gomez Ana")
    office.customers["C-3"] = CustomerRecord(customer_id="C-3", tax_id="28765432", document_type="DNI", name="Lopez Marta")
    office.sales["S-1"] = make_sale("S-1", "C-1", ["600", "400"], net="1000", vat="210", total="1210")
    office.sales["S-2"] = make_sale("S-2", "C-1", ["300"], net="300", vat="63", total="363")
    office.sales["S-3"] = make_sale("S-3", "C-1", ["500"], net="500", vat="0", total="500", vat_applied=False)
    office.sales["S-4"] = make_sale("S-4", "C-2", ["826.45"], net="826.45", vat="173.55", total="1000")
    office.sales["S-5"] = make_sale("S-5", "C-3", ["1000"], net="826.45", vat="173.55", total="1000")
    return office


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'fiscal.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Services:
    """Request-scoped services bound to one session, as the API builds them."""

    def __init__(self, db, gateway, assembler, locks, backoffice, issuer):
        self.db = db
        self.state_machine = InvoiceStateMachine(db, gateway, assembler, locks)
        self.invoices = InvoiceService(db, assembler, self.state_machine, backoffice, issuer)
        self.credit_notes = CreditNoteService(db, self.state_machine, locks)


@pytest.fixture
def services(db, gateway, assembler, locks, backoffice, issuer) -> Services:
    return Services(db, gateway, assembler, locks, backoffice, issuer)


@pytest.fixture
async def make_services(session_factory, gateway, assembler, locks, backoffice, issuer):
    """Services on a fresh session each call, to act like separate requests."""
    sessions = []

    def factory() -> Services:
        session = session_factory()
        sessions.append(session)
        return Services(session, gateway, assembler, locks, backoffice, issuer)

    yield factory

    for session in sessions:
        await session.close()


class GatedAuthority:
    """Holds every voucher submission until `opened` is set."""

    def __init__(self, authority: FakeAuthority):
        self.authority = authority
        self.reached = asyncio.Event()
        self.opened = asyncio.Event()

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path == "/vouchers":
            self.reached.set()
            await self.opened.wait()
        return self.authority.handle(request)


@pytest.fixture
def gate(authority) -> GatedAuthority:
    return GatedAuthority(authority)


@pytest.fixture
async def worker_services(session_factory, issuer, authority_config, gate, assembler, backoffice):
    """
    Services as a separate process builds them: own session, own lock
    registry, and submissions that wait at the gate.
    """
    async def no_sleep(seconds):
        return None

    client = AuthorityClient(
        issuer, authority_config, ticket_provider=StaticTicketProvider(), transport=httpx.MockTransport(gate.handle)
    )
    gateway = AuthorizationGateway(client, issuer, authority_config, sleep=no_sleep)
    sessions = []

    def factory() -> Services:
        session = session_factory()
        sessions.append(session)
        return Services(session, gateway, assembler, InvoiceLockRegistry(), backoffice, issuer)

    yield factory

    for session in sessions:
        await session.close()
