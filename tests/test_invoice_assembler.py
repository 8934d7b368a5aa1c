from datetime import date
from decimal import Decimal

import pytest

from fiscal_invoicing.core.code_tables import DocumentType, InvoiceType, TaxCondition
from fiscal_invoicing.core.exceptions import InvoiceValidationError
from fiscal_invoicing.schemas.invoice import CounterpartyInput, InvoiceManualCreate, ManualItemCreate, TributeCreate
from fiscal_invoicing.services.tax_profile_resolver import TaxProfile

from tests.conftest import REGISTERED_CUIT, make_sale


REGISTERED = TaxProfile(
    invoice_letter="A",
    tax_condition=TaxCondition.REGISTERED,
    tax_condition_label="IVA Responsable Inscripto",
    itemize_vat=True,
    document_type=DocumentType.CUIT,
    document_number=REGISTERED_CUIT,
)

UNREGISTERED = TaxProfile(
    invoice_letter="B",
    tax_condition=TaxCondition.FINAL_CONSUMER,
    tax_condition_label="Consumidor Final",
    itemize_vat=False,
    document_type=DocumentType.DNI,
    document_number="30405060",
    downgraded=True,
    source="NOT_REGISTERED",
)


def test_vat_is_allocated_proportionally_from_the_aggregate(assembler, backoffice):
    composition = assembler.compose_from_sales([backoffice.sales["S-1"]], REGISTERED)

    assert composition.invoice_type == InvoiceType.A
    assert [line.net_amount for line in composition.lines] == [Decimal("600.00"), Decimal("400.00")]
    assert [line.vat_amount for line in composition.lines] == [Decimal("126.00"), Decimal("84.00")]
    assert composition.vat_total == Decimal("210.00")
    assert len(composition.vat_lines) == 1
    assert composition.vat_lines[0].base_amount == Decimal("1000.00")
    assert composition.grand_total == Decimal("1210.00")


def test_line_vat_sums_to_aggregate_with_rounding(assembler):
    sale = make_sale("S-9", "C-1", ["33.33", "33.33", "33.34"], net="100", vat="21", total="121")
    composition = assembler.compose_from_sales([sale], REGISTERED)

    assert sum(line.vat_amount for line in composition.lines) == Decimal("21.00")
    assert composition.grand_total == composition.net_taxed + composition.vat_total


def test_grouped_sales_aggregate_vat(assembler, backoffice):
    composition = assembler.compose_from_sales([backoffice.sales["S-1"], backoffice.sales["S-2"]], REGISTERED)

    assert composition.net_taxed == Decimal("1300.00")
    assert composition.vat_total == Decimal("273.00")
    assert [line.vat_amount for line in composition.lines] == [Decimal("126.00"), Decimal("84.00"), Decimal("63.00")]


def test_grouping_sales_with_and_without_vat_is_rejected(assembler, backoffice):
    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.compose_from_sales([backoffice.sales["S-1"], backoffice.sales["S-3"]], REGISTERED)
    assert any("with and without VAT" in e for e in exc_info.value.errors)


def test_grouping_sales_of_different_customers_is_rejected(assembler, backoffice):
    with pytest.raises(InvoiceValidationError):
        assembler.compose_from_sales([backoffice.sales["S-1"], backoffice.sales["S-4"]], REGISTERED)


def test_without_itemized_vat_lines_carry_the_final_price(assembler, backoffice):
    composition = assembler.compose_from_sales([backoffice.sales["S-4"]], UNREGISTERED)

    assert composition.invoice_type == InvoiceType.B
    assert composition.vat_itemized is False
    assert composition.vat_lines == []
    assert composition.net_taxed == Decimal("1000.00")
    assert composition.grand_total == Decimal("1000.00")


def test_manual_composition_groups_vat_by_rate(assembler):
    entries = [
        ManualItemCreate(description="Service", quantity=Decimal("1"), unit_price=Decimal("100"), vat_rate=Decimal("21")),
        ManualItemCreate(description="Book", quantity=Decimal("2"), unit_price=Decimal("100"), vat_rate=Decimal("10.5")),
        ManualItemCreate(description="Part", quantity=Decimal("1"), unit_price=Decimal("50"), discount=Decimal("10"), vat_rate=Decimal("21")),
    ]
    tributes = [TributeCreate(tribute_code=2, description="IIBB", base_amount=Decimal("340"), rate=Decimal("3"), amount=Decimal("10.20"))]
    composition = assembler.compose_manual(entries, REGISTERED, tributes=tributes, exempt=Decimal("5"))

    rates = {vat.rate: (vat.base_amount, vat.vat_amount) for vat in composition.vat_lines}
    assert rates[Decimal("21")] == (Decimal("140.00"), Decimal("29.40"))
    assert rates[Decimal("10.5")] == (Decimal("200.00"), Decimal("21.00"))
    assert [line.vat_amount for line in composition.lines] == [Decimal("21.00"), Decimal("21.00"), Decimal("8.40")]
    assert composition.lines[2].net_amount == Decimal("40.00")
    assert composition.other_tributes_total == Decimal("10.20")
    assert composition.grand_total == Decimal("405.60")


def test_discount_larger_than_the_line_is_rejected(assembler):
    entries = [
        ManualItemCreate(description="Bolt", quantity=Decimal("1"), unit_price=Decimal("10"), discount=Decimal("50")),
        ManualItemCreate(description="Nut", quantity=Decimal("1"), unit_price=Decimal("100")),
    ]

    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.compose_manual(entries, REGISTERED)
    assert exc_info.value.errors == ["Line 1: discount 50.00 exceeds its amount 10.00"]


async def test_negative_line_net_fails_before_submission(services, assembler):
    invoice = await services.invoices.create_from_sales(["S-1"], "tester")
    invoice.items[1].net_amount = Decimal("-40.00")

    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.assemble(invoice)
    assert "Line 2 net amount must not be negative" in exc_info.value.errors


async def test_assembled_payload_uses_authority_fields(services, assembler):
    invoice = await services.invoices.create_from_sales(["S-1"], "tester")
    payload = assembler.assemble(invoice)
    wire = payload.with_sequence(7).to_wire()

    assert wire["CbteTipo"] == 1
    assert wire["PtoVta"] == 1
    assert wire["CbteDesde"] == wire["CbteHasta"] == 7
    assert wire["DocTipo"] == 80
    assert wire["DocNro"] == int(REGISTERED_CUIT)
    assert wire["CondicionIVAReceptorId"] == 1
    assert wire["ImpTotal"] == 1210.0
    assert wire["ImpNeto"] == 1000.0
    assert wire["ImpIVA"] == 210.0
    assert wire["Iva"] == [{"Id": 5, "BaseImp": 1000.0, "Importe": 210.0}]
    assert wire["CbteFch"] == date.today().strftime("%Y%m%d")
    assert "CbtesAsoc" not in wire
    assert [item["ImporteIVA"] for item in wire["Items"]] == [126.0, 84.0]


async def test_inconsistent_totals_fail_before_submission(services, assembler):
    invoice = await services.invoices.create_from_sales(["S-1"], "tester")
    invoice.grand_total = Decimal("1211.00")

    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.assemble(invoice)
    assert any("Grand total" in e for e in exc_info.value.errors)


async def test_service_concept_requires_service_dates(services, assembler):
    data = InvoiceManualCreate(
        counterparty=CounterpartyInput(tax_id=REGISTERED_CUIT, document_type="CUIT", name="Distribuidora Sur SA"),
        items=[ManualItemCreate(description="Consulting", quantity=Decimal("1"), unit_price=Decimal("1000"))],
        concept=2,
    )
    invoice = await services.invoices.create_manual(data, "tester")

    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.assemble(invoice)
    assert any("service period" in e for e in exc_info.value.errors)


async def test_letter_c_cannot_carry_vat(services, assembler):
    invoice = await services.invoices.create_from_sales(["S-1"], "tester")
    invoice.invoice_type = InvoiceType.C.value

    with pytest.raises(InvoiceValidationError) as exc_info:
        assembler.assemble(invoice)
    assert any("Type C" in e for e in exc_info.value.errors)
