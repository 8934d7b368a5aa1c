"""API endpoints that query the tax authority directly."""
from typing import List

from fastapi import APIRouter, Depends

from fiscal_invoicing.api.deps import get_gateway
from fiscal_invoicing.schemas.invoice import AuthorityStatusResponse, PointOfSaleResponse


router = APIRouter()


@router.get("/points-of-sale", response_model=List[PointOfSaleResponse])
async def list_points_of_sale(gateway=Depends(get_gateway)):
    """Points of sale enabled for electronic invoicing."""
    points = await gateway.points_of_sale()
    return [PointOfSaleResponse.model_validate(p) for p in points]


@router.get("/authority/status", response_model=AuthorityStatusResponse)
async def authority_status(gateway=Depends(get_gateway)):
    """Health of the authority's application, database and auth servers."""
    return AuthorityStatusResponse(**await gateway.server_status())
