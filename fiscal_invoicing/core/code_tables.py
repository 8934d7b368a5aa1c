"""
Authority code tables.

Single source of truth for the numeric codes the tax authority uses and
the symbolic types used everywhere else in the package. Lookups fail with
UnknownCodeError on anything outside the tables; the one exception is a
document type read back from an authority response, which falls back to
DNI.
"""

import logging
import re
import unicodedata
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Dict, Union

from fiscal_invoicing.core.exceptions import UnknownCodeError


logger = logging.getLogger(__name__)


# =============================================================================
# INVOICE TYPES
# =============================================================================

class VoucherFamily(str, Enum):
    INVOICE = "INVOICE"
    DEBIT_NOTE = "DEBIT_NOTE"
    CREDIT_NOTE = "CREDIT_NOTE"


class InvoiceType(str, Enum):
    """The nine fiscal document types: letter plus family suffix."""
    A = "A"
    B = "B"
    C = "C"
    A_ND = "A_ND"
    B_ND = "B_ND"
    C_ND = "C_ND"
    A_NC = "A_NC"
    B_NC = "B_NC"
    C_NC = "C_NC"

    @property
    def letter(self) -> str:
        return self.value[0]

    @property
    def family(self) -> VoucherFamily:
        for family, suffix in FAMILY_SUFFIXES.items():
            if suffix and self.value.endswith(suffix):
                return family
        return VoucherFamily.INVOICE

    @property
    def code(self) -> int:
        return INVOICE_TYPE_CODES[self]

    @property
    def is_note(self) -> bool:
        return self.family != VoucherFamily.INVOICE


# Standard invoice code for each letter. Note codes are derived from these
# by a fixed offset, so a new letter only needs an entry here.
LETTER_CODES: Dict[str, int] = {
    "A": 1,
    "B": 6,
    "C": 11,
}

FAMILY_OFFSETS: Dict[VoucherFamily, int] = {
    VoucherFamily.INVOICE: 0,
    VoucherFamily.DEBIT_NOTE: 1,
    VoucherFamily.CREDIT_NOTE: 2,
}

FAMILY_SUFFIXES: Dict[VoucherFamily, str] = {
    VoucherFamily.INVOICE: "",
    VoucherFamily.DEBIT_NOTE: "_ND",
    VoucherFamily.CREDIT_NOTE: "_NC",
}


def compose_invoice_type(letter: str, family: VoucherFamily) -> InvoiceType:
    """Build the type for a letter and family, e.g. ("B", CREDIT_NOTE) -> B_NC."""
    try:
        return InvoiceType(f"{letter}{FAMILY_SUFFIXES[VoucherFamily(family)]}")
    except ValueError:
        raise UnknownCodeError(f"Unknown invoice letter: {letter!r}")


INVOICE_TYPE_CODES: Dict[InvoiceType, int] = {
    compose_invoice_type(letter, family): base + FAMILY_OFFSETS[family]
    for letter, base in LETTER_CODES.items()
    for family in VoucherFamily
}

CODE_TO_INVOICE_TYPE: Dict[int, InvoiceType] = {
    code: invoice_type for invoice_type, code in INVOICE_TYPE_CODES.items()
}


def to_invoice_type(value: Union[InvoiceType, str]) -> InvoiceType:
    if isinstance(value, InvoiceType):
        return value
    try:
        return InvoiceType(str(value).upper())
    except ValueError:
        raise UnknownCodeError(f"Unknown invoice type: {value!r}")


def invoice_type_code(value: Union[InvoiceType, str]) -> int:
    return to_invoice_type(value).code


def invoice_type_from_code(code: int) -> InvoiceType:
    try:
        return CODE_TO_INVOICE_TYPE[int(code)]
    except (KeyError, TypeError, ValueError):
        raise UnknownCodeError(f"Unknown invoice type code: {code!r}")


def credit_note_type_for(value: Union[InvoiceType, str]) -> InvoiceType:
    return compose_invoice_type(to_invoice_type(value).letter, VoucherFamily.CREDIT_NOTE)


def debit_note_type_for(value: Union[InvoiceType, str]) -> InvoiceType:
    return compose_invoice_type(to_invoice_type(value).letter, VoucherFamily.DEBIT_NOTE)


# =============================================================================
# DOCUMENT TYPES
# =============================================================================

class DocumentType(IntEnum):
    CUIT = 80
    CUIL = 86
    PASSPORT = 94
    DNI = 96
    UNSPECIFIED = 99

    @property
    def is_tax_id(self) -> bool:
        return self in (DocumentType.CUIT, DocumentType.CUIL)


def document_type_code(label: str) -> int:
    """Internal label -> authority code. Unknown labels are a hard error."""
    try:
        return DocumentType[str(label).strip().upper()].value
    except KeyError:
        raise UnknownCodeError(f"Unknown document type: {label!r}")


def document_type_label(code: int) -> str:
    try:
        return DocumentType(int(code)).name
    except (TypeError, ValueError):
        raise UnknownCodeError(f"Unknown document type code: {code!r}")


def document_type_from_external(code) -> DocumentType:
    """Authority code -> DocumentType, falling back to DNI for unknown codes."""
    try:
        return DocumentType(int(code))
    except (TypeError, ValueError):
        logger.warning(f"Unknown document type code {code!r} in authority response, using DNI")
        return DocumentType.DNI


# =============================================================================
# RECEIVER TAX CONDITIONS
# =============================================================================

class TaxCondition(IntEnum):
    REGISTERED = 1
    EXEMPT = 4
    FINAL_CONSUMER = 5
    SMALL_TAXPAYER = 6
    UNCATEGORIZED = 7
    FOREIGN_SUPPLIER = 8
    FOREIGN_CUSTOMER = 9
    VAT_RELEASED = 10
    SOCIAL_SMALL_TAXPAYER = 13
    VAT_NOT_APPLICABLE = 15

    @property
    def label(self) -> str:
        return TAX_CONDITION_LABELS[self]


# Descriptions as printed on the document
TAX_CONDITION_LABELS: Dict[TaxCondition, str] = {
    TaxCondition.REGISTERED: "IVA Responsable Inscripto",
    TaxCondition.EXEMPT: "IVA Sujeto Exento",
    TaxCondition.FINAL_CONSUMER: "Consumidor Final",
    TaxCondition.SMALL_TAXPAYER: "Responsable Monotributo",
    TaxCondition.UNCATEGORIZED: "Sujeto No Categorizado",
    TaxCondition.FOREIGN_SUPPLIER: "Proveedor del Exterior",
    TaxCondition.FOREIGN_CUSTOMER: "Cliente del Exterior",
    TaxCondition.VAT_RELEASED: "IVA Liberado - Ley N° 19.640",
    TaxCondition.SOCIAL_SMALL_TAXPAYER: "Monotributista Social",
    TaxCondition.VAT_NOT_APPLICABLE: "IVA No Alcanzado",
}

_TAX_CONDITION_ALIASES: Dict[str, TaxCondition] = {
    "RI": TaxCondition.REGISTERED,
    "RESPONSABLE INSCRIPTO": TaxCondition.REGISTERED,
    "EXENTO": TaxCondition.EXEMPT,
    "IVA EXENTO": TaxCondition.EXEMPT,
    "CF": TaxCondition.FINAL_CONSUMER,
    "MONOTRIBUTO": TaxCondition.SMALL_TAXPAYER,
    "MONOTRIBUTISTA": TaxCondition.SMALL_TAXPAYER,
    "NO CATEGORIZADO": TaxCondition.UNCATEGORIZED,
    "IVA LIBERADO": TaxCondition.VAT_RELEASED,
}


def _normalize_label(label: str) -> str:
    text = unicodedata.normalize("NFKD", str(label)).encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^A-Z0-9]+", " ", text.upper()).strip()


for _condition in TaxCondition:
    _TAX_CONDITION_ALIASES.setdefault(_normalize_label(_condition.label), _condition)
    _TAX_CONDITION_ALIASES.setdefault(_normalize_label(_condition.name), _condition)


def tax_condition_from_code(code) -> TaxCondition:
    try:
        return TaxCondition(int(code))
    except (TypeError, ValueError):
        raise UnknownCodeError(f"Unknown tax condition code: {code!r}")


def tax_condition_from_label(label: str) -> TaxCondition:
    """Free-text description -> TaxCondition. Accepts both the printed and short forms."""
    try:
        return _TAX_CONDITION_ALIASES[_normalize_label(label)]
    except KeyError:
        raise UnknownCodeError(f"Unknown tax condition: {label!r}")


# =============================================================================
# VAT RATES AND CONCEPTS
# =============================================================================

VAT_RATE_CODES: Dict[Decimal, int] = {
    Decimal("0"): 3,
    Decimal("2.5"): 9,
    Decimal("5"): 8,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

CODE_TO_VAT_RATE: Dict[int, Decimal] = {code: rate for rate, code in VAT_RATE_CODES.items()}


def vat_rate_code(rate) -> int:
    try:
        return VAT_RATE_CODES[Decimal(str(rate))]
    except (KeyError, ArithmeticError):
        raise UnknownCodeError(f"Unsupported VAT rate: {rate!r}")


def vat_rate_from_code(code: int) -> Decimal:
    try:
        return CODE_TO_VAT_RATE[int(code)]
    except (KeyError, TypeError, ValueError):
        raise UnknownCodeError(f"Unknown VAT rate code: {code!r}")


class Concept(IntEnum):
    PRODUCTS = 1
    SERVICES = 2
    PRODUCTS_AND_SERVICES = 3

    @property
    def requires_service_dates(self) -> bool:
        return self != Concept.PRODUCTS
