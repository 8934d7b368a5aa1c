from fastapi import APIRouter

from fiscal_invoicing.api.v1.endpoints import (
    invoices,
    credit_notes,
    authority,
)

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# ==================== Fiscal Invoices ====================
api_router.include_router(
    invoices.router,
    prefix="/fiscal",
    tags=["Fiscal Invoices"]
)

# ==================== Credit Notes ====================
api_router.include_router(
    credit_notes.router,
    prefix="/fiscal",
    tags=["Credit Notes"]
)

# ==================== Tax Authority ====================
api_router.include_router(
    authority.router,
    prefix="/fiscal",
    tags=["Tax Authority"]
)
