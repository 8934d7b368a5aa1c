from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import date
from functools import lru_cache
import json

from fiscal_invoicing.core.code_tables import TaxCondition, tax_condition_from_code, tax_condition_from_label


AFIP_HOMOLOGATION_URL = "https://wswhomo.afip.gov.ar/api/v1"
AFIP_PRODUCTION_URL = "https://servicios1.afip.gov.ar/api/v1"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fiscal_invoicing.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Fiscal Invoicing Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Tax authority (AFIP) credentials and endpoint
    AFIP_CUIT: str = ""  # Issuer tax id, 11 digits
    AFIP_CERT_PATH: str = ""  # PEM certificate registered with the authority
    AFIP_KEY_PATH: str = ""  # PEM private key for the certificate
    AFIP_PRODUCTION: bool = False  # False = homologation environment
    AFIP_POINT_OF_SALE: int = 1
    AFIP_BASE_URL: Optional[str] = None  # Overrides the environment default
    AFIP_TIMEOUT_SECONDS: float = 30.0
    AFIP_MAX_ATTEMPTS: int = 3  # Transport-level attempts per submission
    AFIP_BACKOFF_SECONDS: float = 1.0  # First retry delay, doubled each attempt
    AFIP_BACKOFF_MAX_SECONDS: float = 10.0
    AFIP_MAX_CONCURRENCY: int = 5  # In-flight authority calls across invoices
    AFIP_REGISTRY_PREFIX_INFERENCE: Optional[bool] = None  # Defaults to on outside production

    # Issuer data printed on every document
    EMPRESA_NOMBRE: str = ""
    EMPRESA_DOMICILIO: str = ""
    EMPRESA_CONDICION_IVA: str = "1"  # Numeric code or label
    EMPRESA_IIBB: str = ""  # Gross income registration
    EMPRESA_INICIO_ACTIVIDADES: Optional[date] = None

    # Back-office API that owns sales and customers
    BACKOFFICE_API_URL: str = "http://localhost:8080/api"
    BACKOFFICE_TIMEOUT_SECONDS: float = 10.0

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    def issuer_config(self) -> "IssuerConfig":
        """Resolve the issuer block once; the result is passed by value from here on."""
        condition = self.EMPRESA_CONDICION_IVA.strip()
        if condition.isdigit():
            tax_condition = tax_condition_from_code(condition)
        else:
            tax_condition = tax_condition_from_label(condition)

        return IssuerConfig(
            tax_id=self.AFIP_CUIT,
            name=self.EMPRESA_NOMBRE,
            address=self.EMPRESA_DOMICILIO,
            tax_condition=tax_condition,
            point_of_sale=self.AFIP_POINT_OF_SALE,
            gross_income_id=self.EMPRESA_IIBB or None,
            activity_start=self.EMPRESA_INICIO_ACTIVIDADES,
            cert_path=self.AFIP_CERT_PATH or None,
            key_path=self.AFIP_KEY_PATH or None,
            production=self.AFIP_PRODUCTION,
        )

    def authority_config(self) -> "AuthorityConfig":
        default_url = AFIP_PRODUCTION_URL if self.AFIP_PRODUCTION else AFIP_HOMOLOGATION_URL
        prefix_inference = self.AFIP_REGISTRY_PREFIX_INFERENCE
        if prefix_inference is None:
            prefix_inference = not self.AFIP_PRODUCTION

        return AuthorityConfig(
            base_url=self.AFIP_BASE_URL or default_url,
            timeout_seconds=self.AFIP_TIMEOUT_SECONDS,
            max_attempts=self.AFIP_MAX_ATTEMPTS,
            backoff_seconds=self.AFIP_BACKOFF_SECONDS,
            backoff_max_seconds=self.AFIP_BACKOFF_MAX_SECONDS,
            max_concurrency=self.AFIP_MAX_CONCURRENCY,
            registry_prefix_inference=prefix_inference and not self.AFIP_PRODUCTION,
        )


class IssuerConfig(BaseModel):
    """Issuer identity and credentials, fixed for the life of the process."""
    model_config = ConfigDict(frozen=True)

    tax_id: str = Field(..., description="Issuer CUIT, digits only")
    name: str
    address: str = ""
    tax_condition: TaxCondition = TaxCondition.REGISTERED
    point_of_sale: int = Field(1, ge=1, le=99999)
    gross_income_id: Optional[str] = None
    activity_start: Optional[date] = None
    cert_path: Optional[str] = None
    key_path: Optional[str] = None
    production: bool = False

    @field_validator('tax_id', mode='before')
    @classmethod
    def normalize_tax_id(cls, v):
        digits = "".join(ch for ch in str(v or "") if ch.isdigit())
        if len(digits) != 11:
            raise ValueError("issuer tax id must have 11 digits")
        return digits

    @property
    def is_registered(self) -> bool:
        return self.tax_condition == TaxCondition.REGISTERED


class AuthorityConfig(BaseModel):
    """Endpoint and retry policy for the authority client."""
    model_config = ConfigDict(frozen=True)

    base_url: str
    timeout_seconds: float = Field(30.0, gt=0)
    max_attempts: int = Field(3, ge=1)
    backoff_seconds: float = Field(1.0, ge=0)
    backoff_max_seconds: float = Field(10.0, ge=0)
    max_concurrency: int = Field(5, ge=1)
    registry_prefix_inference: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
