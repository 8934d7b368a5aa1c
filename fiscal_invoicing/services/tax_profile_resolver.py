"""
Tax Profile Resolver

Determines, for every new invoice, how the counterparty must be declared:
- current tax condition (numeric code and printed label) from the registry
- invoice letter (A/B/C) given the issuer's own condition
- whether VAT is itemized on the document
- which identifier type to declare (CUIT holders missing from the
  registry are re-declared by DNI so the authority does not reject them)

The registry is authoritative; tax conditions cached on the customer
record are never used.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from fiscal_invoicing.core.code_tables import (
    DocumentType,
    TaxCondition,
    document_type_code,
    tax_condition_from_code,
    tax_condition_from_label,
)
from fiscal_invoicing.core.exceptions import (
    AuthorityProtocolError,
    AuthorityTransportError,
    TaxProfileResolutionError,
    UnknownCodeError,
)


logger = logging.getLogger(__name__)


# Tax id prefixes used to infer a profile when the test registry has no data
LEGAL_ENTITY_PREFIXES = ("30", "33", "34")
NATURAL_PERSON_PREFIXES = ("20", "23", "24", "27")


@dataclass
class TaxProfile:
    """Resolved fiscal profile of a counterparty for one invoice."""
    invoice_letter: str
    tax_condition: TaxCondition
    tax_condition_label: str
    itemize_vat: bool
    document_type: DocumentType
    document_number: str
    downgraded: bool = False
    source: str = "REGISTRY"  # REGISTRY, NOT_REGISTERED, PERSONAL_ID, PREFIX_INFERENCE


def invoice_letter_for(issuer_condition: TaxCondition, receiver_condition: TaxCondition) -> str:
    """Only registered issuers discriminate VAT; they issue A to registered receivers."""
    if issuer_condition != TaxCondition.REGISTERED:
        return "C"
    if receiver_condition == TaxCondition.REGISTERED:
        return "A"
    return "B"


def to_document_type(value: Union[DocumentType, int, str, None]) -> DocumentType:
    """Accept a DocumentType, its numeric code, or its label."""
    if value is None or value == "":
        return DocumentType.UNSPECIFIED
    if isinstance(value, DocumentType):
        return value
    if isinstance(value, int) or str(value).strip().isdigit():
        try:
            return DocumentType(int(value))
        except ValueError:
            raise UnknownCodeError(f"Unknown document type code: {value!r}")
    return DocumentType(document_type_code(value))


def personal_id_from_tax_id(tax_id: str) -> str:
    """CUIT/CUIL embed the DNI in positions 3-10."""
    return str(int(tax_id[2:10]))


class TaxProfileResolver:
    """
    Resolves counterparty tax profiles against the taxpayer registry.

    `registry` is anything with an async `lookup_taxpayer(tax_id)` returning
    a RegistryRecord or None when the tax id is not registered.
    """

    def __init__(self, registry, prefix_inference: bool = False):
        self.registry = registry
        self.prefix_inference = prefix_inference

    async def resolve(
        self,
        tax_id: Optional[str],
        document_type: Union[DocumentType, int, str, None],
        issuer_tax_condition: TaxCondition,
    ) -> TaxProfile:
        digits = "".join(ch for ch in str(tax_id or "") if ch.isdigit())
        declared = to_document_type(document_type) if digits else DocumentType.UNSPECIFIED

        if not digits:
            return self._profile(
                issuer_tax_condition,
                TaxCondition.FINAL_CONSUMER,
                document_type=DocumentType.UNSPECIFIED,
                document_number="0",
                itemize_vat=True,
                source="PERSONAL_ID",
            )

        if not declared.is_tax_id or len(digits) != 11:
            # DNI, passport or a malformed tax id: nothing to look up
            return self._profile(
                issuer_tax_condition,
                TaxCondition.FINAL_CONSUMER,
                document_type=DocumentType.DNI if declared.is_tax_id else declared,
                document_number=digits,
                itemize_vat=True,
                downgraded=declared.is_tax_id,
                source="PERSONAL_ID",
            )

        if self.prefix_inference:
            return self._infer_from_prefix(digits, declared, issuer_tax_condition)

        try:
            record = await self.registry.lookup_taxpayer(digits)
        except (AuthorityTransportError, AuthorityProtocolError) as e:
            logger.warning(f"Registry lookup failed for {digits}: {e.message}")
            raise TaxProfileResolutionError(
                f"Could not determine tax condition for {digits}: {e.message}",
                details={"tax_id": digits, "cause": e.error_code},
            )

        if record is None:
            logger.info(f"Tax id {digits} not registered, declaring counterparty by DNI")
            return self._profile(
                issuer_tax_condition,
                TaxCondition.FINAL_CONSUMER,
                document_type=DocumentType.DNI,
                document_number=personal_id_from_tax_id(digits),
                itemize_vat=False,
                downgraded=True,
                source="NOT_REGISTERED",
            )

        condition = self._condition_from_record(digits, record)
        return self._profile(
            issuer_tax_condition,
            condition,
            document_type=declared,
            document_number=digits,
            itemize_vat=True,
            label=record.tax_condition_label,
        )

    def _condition_from_record(self, tax_id: str, record) -> TaxCondition:
        # The numeric code wins over the description whenever both are present
        try:
            if record.tax_condition_code is not None:
                return tax_condition_from_code(record.tax_condition_code)
            if record.tax_condition_label:
                return tax_condition_from_label(record.tax_condition_label)
        except UnknownCodeError as e:
            raise TaxProfileResolutionError(
                f"Registry returned an unknown tax condition for {tax_id}: {e.message}",
                details={"tax_id": tax_id},
            )
        raise TaxProfileResolutionError(
            f"Registry entry for {tax_id} has no tax condition",
            details={"tax_id": tax_id},
        )

    def _infer_from_prefix(self, digits: str, declared: DocumentType, issuer_tax_condition: TaxCondition) -> TaxProfile:
        if digits[:2] in LEGAL_ENTITY_PREFIXES:
            return self._profile(
                issuer_tax_condition,
                TaxCondition.REGISTERED,
                document_type=declared,
                document_number=digits,
                itemize_vat=True,
                source="PREFIX_INFERENCE",
            )

        if digits[:2] not in NATURAL_PERSON_PREFIXES:
            logger.warning(f"Unrecognized tax id prefix for {digits}, assuming end consumer")
        return self._profile(
            issuer_tax_condition,
            TaxCondition.FINAL_CONSUMER,
            document_type=DocumentType.DNI,
            document_number=personal_id_from_tax_id(digits),
            itemize_vat=True,
            downgraded=True,
            source="PREFIX_INFERENCE",
        )

    def _profile(
        self,
        issuer_tax_condition: TaxCondition,
        condition: TaxCondition,
        document_type: DocumentType,
        document_number: str,
        itemize_vat: bool,
        downgraded: bool = False,
        source: str = "REGISTRY",
        label: Optional[str] = None,
    ) -> TaxProfile:
        letter = invoice_letter_for(issuer_tax_condition, condition)
        return TaxProfile(
            invoice_letter=letter,
            tax_condition=condition,
            tax_condition_label=label or condition.label,
            itemize_vat=itemize_vat and letter != "C",
            document_type=document_type,
            document_number=document_number,
            downgraded=downgraded,
            source=source,
        )
