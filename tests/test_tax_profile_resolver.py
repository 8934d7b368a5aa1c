import pytest

from fiscal_invoicing.core.code_tables import DocumentType, TaxCondition
from fiscal_invoicing.core.exceptions import TaxProfileResolutionError
from fiscal_invoicing.services.afip_client import RegistryRecord
from fiscal_invoicing.services.tax_profile_resolver import TaxProfileResolver, invoice_letter_for

from tests.conftest import CONSUMER_CUIT, REGISTERED_CUIT, UNREGISTERED_CUIT


class StubRegistry:
    def __init__(self, records=None, error=None):
        self.records = records or {}
        self.error = error
        self.lookups = []

    async def lookup_taxpayer(self, tax_id):
        self.lookups.append(tax_id)
        if self.error:
            raise self.error
        return self.records.get(tax_id)


def test_invoice_letter_rules():
    assert invoice_letter_for(TaxCondition.REGISTERED, TaxCondition.REGISTERED) == "A"
    assert invoice_letter_for(TaxCondition.REGISTERED, TaxCondition.FINAL_CONSUMER) == "B"
    assert invoice_letter_for(TaxCondition.REGISTERED, TaxCondition.SMALL_TAXPAYER) == "B"
    assert invoice_letter_for(TaxCondition.SMALL_TAXPAYER, TaxCondition.REGISTERED) == "C"


async def test_registered_counterparty_gets_letter_a(resolver):
    profile = await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)

    assert profile.invoice_letter == "A"
    assert profile.tax_condition == TaxCondition.REGISTERED
    assert profile.tax_condition_label == "IVA Responsable Inscripto"
    assert profile.itemize_vat is True
    assert profile.document_type == DocumentType.CUIT
    assert profile.document_number == REGISTERED_CUIT
    assert profile.downgraded is False


async def test_small_taxpayer_gets_letter_b(resolver):
    profile = await resolver.resolve(CONSUMER_CUIT, 80, TaxCondition.REGISTERED)

    assert profile.invoice_letter == "B"
    assert profile.tax_condition == TaxCondition.SMALL_TAXPAYER


async def test_business_id_not_in_registry_is_declared_by_personal_id(resolver):
    profile = await resolver.resolve(UNREGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)

    assert profile.document_type == DocumentType.DNI
    assert profile.document_type != DocumentType.CUIT
    assert profile.document_number == "30405060"
    assert profile.tax_condition == TaxCondition.FINAL_CONSUMER
    assert profile.invoice_letter == "B"
    assert profile.downgraded is True


async def test_numeric_code_wins_over_label():
    registry = StubRegistry({
        REGISTERED_CUIT: RegistryRecord(
            tax_id=REGISTERED_CUIT, tax_condition_code=6, tax_condition_label="IVA Responsable Inscripto"
        ),
    })
    profile = await TaxProfileResolver(registry).resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)

    assert profile.tax_condition == TaxCondition.SMALL_TAXPAYER
    assert profile.invoice_letter == "B"


async def test_label_used_when_code_missing():
    registry = StubRegistry({
        REGISTERED_CUIT: RegistryRecord(tax_id=REGISTERED_CUIT, tax_condition_label="Responsable Inscripto"),
    })
    profile = await TaxProfileResolver(registry).resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)

    assert profile.tax_condition == TaxCondition.REGISTERED


async def test_registry_is_consulted_on_every_resolution():
    registry = StubRegistry({REGISTERED_CUIT: RegistryRecord(tax_id=REGISTERED_CUIT, tax_condition_code=1)})
    resolver = TaxProfileResolver(registry)

    await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)
    registry.records[REGISTERED_CUIT] = RegistryRecord(tax_id=REGISTERED_CUIT, tax_condition_code=6)
    profile = await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)

    assert registry.lookups == [REGISTERED_CUIT, REGISTERED_CUIT]
    assert profile.invoice_letter == "B"


async def test_personal_id_needs_no_lookup():
    registry = StubRegistry()
    profile = await TaxProfileResolver(registry).resolve("28.765.432", "DNI", TaxCondition.REGISTERED)

    assert registry.lookups == []
    assert profile.document_type == DocumentType.DNI
    assert profile.document_number == "28765432"
    assert profile.tax_condition == TaxCondition.FINAL_CONSUMER
    assert profile.invoice_letter == "B"


async def test_missing_identifier_is_unspecified_consumer():
    profile = await TaxProfileResolver(StubRegistry()).resolve(None, None, TaxCondition.REGISTERED)

    assert profile.document_type == DocumentType.UNSPECIFIED
    assert profile.document_number == "0"
    assert profile.tax_condition == TaxCondition.FINAL_CONSUMER


async def test_non_registered_issuer_always_issues_c_without_vat(resolver):
    profile = await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.SMALL_TAXPAYER)

    assert profile.invoice_letter == "C"
    assert profile.itemize_vat is False


async def test_registry_failure_is_a_resolution_error(authority, resolver):
    authority.registry_down = True

    with pytest.raises(TaxProfileResolutionError):
        await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)


async def test_garbled_registry_code_is_a_resolution_error(authority, resolver):
    authority.registry[REGISTERED_CUIT]["tax_condition_code"] = "RI"

    with pytest.raises(TaxProfileResolutionError) as exc_info:
        await resolver.resolve(REGISTERED_CUIT, "CUIT", TaxCondition.REGISTERED)
    assert exc_info.value.details["cause"] == "AUTHORITY_PROTOCOL_ERROR"


async def test_prefix_inference():
    registry = StubRegistry()
    resolver = TaxProfileResolver(registry, prefix_inference=True)

    company = await resolver.resolve("30999999991", "CUIT", TaxCondition.REGISTERED)
    person = await resolver.resolve("27111222333", "CUIT", TaxCondition.REGISTERED)

    assert registry.lookups == []
    assert company.tax_condition == TaxCondition.REGISTERED
    assert company.invoice_letter == "A"
    assert person.tax_condition == TaxCondition.FINAL_CONSUMER
    assert person.document_type == DocumentType.DNI
    assert person.document_number == "11122233"
