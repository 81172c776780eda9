"""Immutable in-memory snapshots of persisted rows.

The performance engine computes against these instead of ORM instances so
that one invocation works on a single consistent snapshot and never
triggers lazy loads or writes.
"""

from dataclasses import dataclass
from datetime import date
from typing import Optional

from ..models import Transaction, TransactionType, FundingSource, Asset


@dataclass(frozen=True)
class TransactionRecord:
    """Read-only view of a transaction."""
    id: Optional[int]
    date: date
    type: TransactionType
    account_id: str
    amount: float
    fees: float = 0.0
    asset_id: Optional[str] = None
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    funding_source: Optional[FundingSource] = None
    realized_gain: Optional[float] = None
    related_transaction_id: Optional[int] = None

    @property
    def is_auto_deposit(self) -> bool:
        return self.type == TransactionType.DEPOSIT and self.related_transaction_id is not None

    @classmethod
    def from_model(cls, tx: Transaction) -> "TransactionRecord":
        return cls(
            id=tx.id,
            date=tx.date,
            type=tx.type,
            account_id=tx.account_id,
            amount=tx.amount or 0.0,
            fees=tx.fees or 0.0,
            asset_id=tx.asset_id,
            quantity=tx.quantity,
            price_per_unit=tx.price_per_unit,
            funding_source=tx.funding_source,
            realized_gain=tx.realized_gain,
            related_transaction_id=tx.related_transaction_id,
        )


@dataclass(frozen=True)
class AssetInfo:
    """Grouping metadata for one asset."""
    asset_id: str
    ticker: str
    asset_type: Optional[str] = None
    asset_subtype: Optional[str] = None
    geography: Optional[str] = None
    size_tag: Optional[str] = None
    factor_tag: Optional[str] = None
    sub_portfolio_id: Optional[str] = None

    @classmethod
    def from_model(cls, asset: Asset) -> "AssetInfo":
        return cls(
            asset_id=asset.id,
            ticker=asset.ticker,
            asset_type=asset.asset_type,
            asset_subtype=asset.asset_subtype,
            geography=asset.geography,
            size_tag=asset.size_tag,
            factor_tag=asset.factor_tag,
            sub_portfolio_id=asset.sub_portfolio_id,
        )
