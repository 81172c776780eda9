"""Performance report router.

Reports are derived on request from transactions, lots and prices; nothing
here writes to the database.
"""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session
from ..services.config import config_service
from ..services.errors import ValidationError
from ..services.performance_engine import Lens, PerformanceService

router = APIRouter()


def _lens(lens: Optional[Lens]) -> Lens:
    return lens or Lens(config_service.get("performance.default_lens", Lens.ASSET.value))


@router.get("")
async def get_performance(
    lens: Optional[Lens] = None,
    as_of: Optional[date] = None,
    selected: Optional[List[str]] = Query(None),
    session: AsyncSession = Depends(get_session),
):
    """Performance per lens value plus the portfolio total.

    Args:
        lens: Grouping dimension (config `performance.default_lens` when omitted)
        as_of: Valuation date (today when omitted)
        selected: Only report these lens values

    Returns:
        {"lens", "as_of", "groups": [...], "total": {...}}
    """
    service = PerformanceService(session)
    result = await service.get_performance(_lens(lens), as_of=as_of, selected_values=selected)
    return result.to_dict()


@router.get("/time-series")
async def get_time_series(
    start: date,
    end: Optional[date] = None,
    lens: Optional[Lens] = None,
    granularity: str = Query("monthly", pattern="^(daily|monthly)$"),
    selected: Optional[List[str]] = Query(None),
    rebase: bool = False,
    session: AsyncSession = Depends(get_session),
):
    """Performance per lens value at each report date between start and end."""
    end = end or date.today()
    if granularity == "daily" and (end - start).days > 3660:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Daily series are limited to 10 years; use monthly granularity",
        )

    service = PerformanceService(session)
    try:
        return await service.time_series(
            _lens(lens), start, end,
            granularity=granularity,
            selected_values=selected,
            rebase=rebase,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
