"""Account, sub-portfolio and asset metadata.

These tables are owned by the application layer. The performance engine
only reads them to resolve a lens's partition key and display label; the
rebalancing planner also reads the allocation targets kept here.
"""

import uuid
from datetime import datetime
from sqlalchemy import Column, String, Float, Boolean, DateTime, ForeignKey, UniqueConstraint

from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Account(Base):
    """Brokerage or bank account."""
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Account(id={self.id}, name={self.name})>"

    def to_dict(self):
        return {"id": self.id, "name": self.name}


class SubPortfolio(Base):
    """User-defined grouping of assets (e.g. "Core", "Satellite")."""
    __tablename__ = "sub_portfolios"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(100), nullable=False)

    # Rebalancing: share of the whole portfolio, and the relative drift (%)
    # an asset may reach within the group before a trade is suggested
    target_allocation = Column(Float, default=0.0, nullable=False)
    upside_threshold = Column(Float, default=5.0, nullable=False)
    downside_threshold = Column(Float, default=5.0, nullable=False)
    band_mode = Column(Boolean, default=False, nullable=False)   # trade back to the band edge, not the target

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<SubPortfolio(id={self.id}, name={self.name})>"

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "target_allocation": self.target_allocation,
            "upside_threshold": self.upside_threshold,
            "downside_threshold": self.downside_threshold,
            "band_mode": self.band_mode,
        }


class Asset(Base):
    """Tradable asset with its grouping tags."""
    __tablename__ = "assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    ticker = Column(String(20), nullable=False, index=True)
    name = Column(String(200), nullable=True)

    # Grouping dimensions
    asset_type = Column(String(50), nullable=True)      # e.g. "Equity", "Bond"
    asset_subtype = Column(String(50), nullable=True)   # e.g. "ETF", "Treasury"
    geography = Column(String(50), nullable=True)       # e.g. "US", "International"
    size_tag = Column(String(50), nullable=True)        # e.g. "Large Cap"
    factor_tag = Column(String(50), nullable=True)      # e.g. "Value"
    sub_portfolio_id = Column(String(36), ForeignKey("sub_portfolios.id"), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Asset(id={self.id}, ticker={self.ticker})>"

    def to_dict(self):
        return {
            "id": self.id,
            "ticker": self.ticker,
            "name": self.name,
            "asset_type": self.asset_type,
            "asset_subtype": self.asset_subtype,
            "geography": self.geography,
            "size_tag": self.size_tag,
            "factor_tag": self.factor_tag,
            "sub_portfolio_id": self.sub_portfolio_id,
        }


class AssetTarget(Base):
    """Target share (%) of one asset within its sub-portfolio."""
    __tablename__ = "asset_targets"
    __table_args__ = (UniqueConstraint("asset_id", "sub_portfolio_id", name="uq_asset_target"),)

    id = Column(String(36), primary_key=True, default=_new_id)
    asset_id = Column(String(36), ForeignKey("assets.id"), nullable=False, index=True)
    sub_portfolio_id = Column(String(36), ForeignKey("sub_portfolios.id"), nullable=False, index=True)
    target_percentage = Column(Float, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<AssetTarget(asset={self.asset_id}, sub_portfolio={self.sub_portfolio_id}, target={self.target_percentage})>"

    def to_dict(self):
        return {
            "asset_id": self.asset_id,
            "sub_portfolio_id": self.sub_portfolio_id,
            "target_percentage": self.target_percentage,
        }
