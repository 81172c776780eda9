"""Price quote router."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session
from ..services.errors import ValidationError
from ..services.price_service import PriceService

router = APIRouter()


class PriceCreate(BaseModel):
    """Schema for recording a quote."""
    ticker: str = Field(..., min_length=1, max_length=20)
    price: float = Field(..., gt=0)
    timestamp: Optional[datetime] = None
    source: Optional[str] = Field(default=None, max_length=50)


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_price(
    payload: PriceCreate,
    session: AsyncSession = Depends(get_session),
):
    """Record one price quote."""
    service = PriceService(session)
    try:
        quote = await service.record_price(**payload.model_dump())
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return quote.to_dict()


@router.get("/latest")
async def latest_prices(
    tickers: Optional[List[str]] = Query(None),
    as_of: Optional[datetime] = None,
    session: AsyncSession = Depends(get_session),
):
    """Latest quote per ticker at or before as_of."""
    service = PriceService(session)
    prices = await service.latest_prices(tickers, as_of=as_of)
    return {
        "as_of": as_of.isoformat() if as_of else None,
        "prices": prices,
    }
