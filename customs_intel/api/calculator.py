"""
Customs value and import tax calculator endpoints.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from customs_intel.dependencies import verify_api_key
from customs_intel.pipeline.tax_calculator import calculate_caf, calculate_taxes
from customs_intel.schemas.tax import CAFRequest, CAFResult, TaxBreakdown, TaxRequest

router = APIRouter(prefix="/api/v1/calculate", tags=["calculator"], dependencies=[Depends(verify_api_key)])


@router.post("/caf", response_model=CAFResult)
async def caf(request: CAFRequest):
    try:
        return calculate_caf(request)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e


@router.post("/taxes", response_model=TaxBreakdown)
async def taxes(request: TaxRequest):
    return calculate_taxes(request)
