"""Price lookup service.

Quotes are append-only rows in asset_prices; the latest quote at or before
a timestamp is the price of a ticker at that time.
"""

import logging
from datetime import date, datetime, time
from typing import Dict, Iterable, Optional, Union

from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AssetPrice
from .errors import ValidationError, MissingPriceData

logger = logging.getLogger(__name__)


def _end_of(as_of: Union[date, datetime, None]) -> Optional[datetime]:
    """A plain date means "any quote taken that day"."""
    if as_of is None or isinstance(as_of, datetime):
        return as_of
    return datetime.combine(as_of, time.max)


def require_price(prices: Dict[str, float], ticker: str, as_of=None) -> float:
    """Look up a ticker in a price map.

    Raises:
        MissingPriceData: If the ticker has no quote
    """
    price = prices.get(ticker)
    if price is None:
        raise MissingPriceData(ticker, as_of)
    return price


class PriceService:
    """Service for recording and reading asset prices."""

    def __init__(self, session: AsyncSession):
        """Initialize price service.

        Args:
            session: Database session
        """
        self.session = session

    async def record_price(
        self,
        ticker: str,
        price: float,
        timestamp: Optional[datetime] = None,
        source: Optional[str] = None,
    ) -> AssetPrice:
        """Store one quote.

        Raises:
            ValidationError: If ticker is empty or price is not positive
        """
        if not ticker:
            raise ValidationError("ticker is required")
        if price is None or price <= 0:
            raise ValidationError(f"price must be positive, got {price}")

        quote = AssetPrice(
            ticker=ticker.upper(),
            price=price,
            timestamp=timestamp or datetime.utcnow(),
            source=source,
            created_at=datetime.utcnow(),
        )
        self.session.add(quote)
        await self.session.commit()

        logger.info(f"Recorded price {quote.ticker} = ${price:.4f} at {quote.timestamp}")
        return quote

    async def latest_prices(
        self,
        tickers: Optional[Iterable[str]] = None,
        as_of: Union[date, datetime, None] = None,
    ) -> Dict[str, float]:
        """Most recent quote per ticker at or before ``as_of``.

        Args:
            tickers: Tickers to look up (all when None)
            as_of: Cut-off date or timestamp (now when None)

        Returns:
            Mapping of ticker to price; tickers without a quote are omitted
        """
        cutoff = _end_of(as_of)

        latest = select(
            AssetPrice.ticker,
            func.max(AssetPrice.timestamp).label("timestamp"),
        )
        if cutoff is not None:
            latest = latest.where(AssetPrice.timestamp <= cutoff)
        if tickers is not None:
            wanted = sorted({t.upper() for t in tickers if t})
            if not wanted:
                return {}
            latest = latest.where(AssetPrice.ticker.in_(wanted))
        latest = latest.group_by(AssetPrice.ticker).subquery()

        query = (
            select(AssetPrice.ticker, AssetPrice.price, AssetPrice.id)
            .join(
                latest,
                and_(
                    AssetPrice.ticker == latest.c.ticker,
                    AssetPrice.timestamp == latest.c.timestamp,
                ),
            )
            .order_by(AssetPrice.id)
        )
        result = await self.session.execute(query)

        # Several quotes with the same timestamp: the last one inserted wins
        prices: Dict[str, float] = {}
        for ticker, price, _ in result.all():
            prices[ticker] = price
        return prices
