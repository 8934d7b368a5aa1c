from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from fiscal_invoicing.config import AuthorityConfig, IssuerConfig, settings
from fiscal_invoicing.api.v1.router import api_router
from fiscal_invoicing.core.exceptions import (
    AuthorityProtocolError,
    AuthorityTransportError,
    ConcurrentModificationError,
    FiscalError,
    IllegalTransitionError,
    InvariantViolationError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    TaxProfileResolutionError,
    UnknownCodeError,
)
from fiscal_invoicing.database import init_db, async_session_factory
from fiscal_invoicing.services.afip_client import AuthorityClient
from fiscal_invoicing.services.authorization_gateway import AuthorizationGateway
from fiscal_invoicing.services.backoffice_client import BackofficeClient, BackofficeError
from fiscal_invoicing.services.invoice_locks import InvoiceLockRegistry
from fiscal_invoicing.services.tax_profile_resolver import TaxProfileResolver


logger = logging.getLogger(__name__)


# First match wins, so subclasses come before their bases
ERROR_STATUS = [
    (InvoiceValidationError, 422),
    (UnknownCodeError, 422),
    (InvoiceNotFoundError, 404),
    (IllegalTransitionError, 409),
    (InvariantViolationError, 409),
    (ConcurrentModificationError, 409),
    (TaxProfileResolutionError, 502),
    (AuthorityProtocolError, 502),
    (AuthorityTransportError, 503),
    (BackofficeError, 503),
]


def status_for(exc: FiscalError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 500


def configure_services(
    app: FastAPI,
    issuer: IssuerConfig,
    authority: AuthorityConfig,
    client: AuthorityClient,
    backoffice,
) -> None:
    """Shared, process-wide collaborators. Request-scoped services are built in api.deps."""
    app.state.issuer = issuer
    app.state.authority = authority
    app.state.client = client
    app.state.gateway = AuthorizationGateway(client, issuer, authority)
    app.state.resolver = TaxProfileResolver(client, prefix_inference=authority.registry_prefix_inference)
    app.state.locks = InvoiceLockRegistry()
    app.state.backoffice = backoffice


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    - Resolve issuer and authority configuration (invalid values fail here)
    - Create tables
    - Build the authority client, gateway, resolver and lock registry
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    issuer = settings.issuer_config()
    authority = settings.authority_config()
    await init_db()

    configure_services(
        app,
        issuer,
        authority,
        AuthorityClient(issuer, authority),
        BackofficeClient(settings.BACKOFFICE_API_URL, timeout=settings.BACKOFFICE_TIMEOUT_SECONDS),
    )
    logger.info(
        f"Issuer {issuer.tax_id} point of sale {issuer.point_of_sale}, "
        f"authority {authority.base_url} ({'production' if issuer.production else 'homologation'})"
    )

    yield

    logger.info("Shutting down...")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Fiscal invoice authorization and credit-note lifecycle",
        lifespan=lifespan_handler,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router)

    @application.exception_handler(FiscalError)
    async def fiscal_error_handler(request: Request, exc: FiscalError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc.error_code} {exc.message}")

        content = {
            "detail": exc.message,
            "error_code": exc.error_code,
        }
        if isinstance(exc, InvoiceValidationError):
            content["errors"] = exc.errors
        if exc.details:
            content["details"] = exc.details

        return JSONResponse(
            status_code=status_code,
            content=content,
            headers={"X-Error-Code": exc.error_code or "FISCAL_ERROR"},
        )

    @application.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint with database validation."""
        from sqlalchemy import text

        health_status = {
            "status": "healthy",
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "checks": {"database": "unknown"},
        }
        try:
            async with async_session_factory() as session:
                await session.execute(text("SELECT 1"))
                health_status["checks"]["database"] = "connected"
        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["checks"]["database"] = f"error: {str(e)}"
            return JSONResponse(status_code=503, content=health_status)

        return health_status

    return application


app = create_app()
