"""Rebalancing router.

The plan is derived on request; the PUT endpoints only store targets and
thresholds.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session
from ..services.errors import ValidationError, RecordNotFound
from ..services.rebalancing import RebalancingService

router = APIRouter()


# Pydantic schemas
class SubPortfolioTargetUpdate(BaseModel):
    id: str = Field(..., min_length=1, max_length=36)
    target_percentage: float = Field(..., ge=0, le=100)


class AssetTargetUpdate(BaseModel):
    asset_id: str = Field(..., min_length=1, max_length=36)
    sub_portfolio_id: str = Field(..., min_length=1, max_length=36)
    target_percentage: float = Field(..., ge=0, le=100)


class ThresholdsUpdate(BaseModel):
    id: str = Field(..., min_length=1, max_length=36)
    upside_threshold: float = Field(..., ge=0)
    downside_threshold: float = Field(..., ge=0)
    band_mode: bool = False


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, RecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.get("")
async def get_rebalancing(
    as_of: Optional[date] = None,
    session: AsyncSession = Depends(get_session),
):
    """Buy/sell/hold per asset against its sub-portfolio targets.

    Returns:
        {"as_of", "total_value", "cash_balance", "groups": [...], "assets": [...]}
    """
    plan = await RebalancingService(session).get_plan(as_of=as_of)
    return plan.to_dict()


@router.put("/sub-portfolio-target")
async def update_sub_portfolio_target(
    payload: SubPortfolioTargetUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        sub_portfolio = await RebalancingService(session).set_sub_portfolio_target(
            payload.id, payload.target_percentage,
        )
    except (ValidationError, RecordNotFound) as e:
        raise _http_error(e)
    return sub_portfolio.to_dict()


@router.put("/asset-target")
async def update_asset_target(
    payload: AssetTargetUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        target = await RebalancingService(session).set_asset_target(
            payload.asset_id, payload.sub_portfolio_id, payload.target_percentage,
        )
    except (ValidationError, RecordNotFound) as e:
        raise _http_error(e)
    return target.to_dict()


@router.put("/thresholds")
async def update_thresholds(
    payload: ThresholdsUpdate,
    session: AsyncSession = Depends(get_session),
):
    try:
        sub_portfolio = await RebalancingService(session).set_thresholds(
            payload.id, payload.upside_threshold, payload.downside_threshold, payload.band_mode,
        )
    except (ValidationError, RecordNotFound) as e:
        raise _http_error(e)
    return sub_portfolio.to_dict()
