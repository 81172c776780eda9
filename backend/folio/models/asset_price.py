"""Asset price model - quote history supplied by the price collaborator."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, DateTime

from .database import Base


class AssetPrice(Base):
    """One price quote for a ticker at a point in time.

    Append-only: the latest quote at or before a timestamp wins.
    """
    __tablename__ = "asset_prices"

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(20), nullable=False, index=True)
    price = Column(Float, nullable=False)
    timestamp = Column(DateTime, nullable=False, index=True)
    source = Column(String(50), nullable=True)  # e.g. "polygon", "manual"

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<AssetPrice(ticker={self.ticker}, price={self.price:.4f}, at={self.timestamp})>"

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "ticker": self.ticker,
            "price": self.price,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "source": self.source,
        }
