"""Transaction model - the append-only event stream.

CRITICAL: Transactions are the authoritative record of what happened.
- BUY transactions create exactly one tax lot
- SELL transactions deplete tax lots (FIFO) and carry the realized gain
- Committed BUY/SELL rows are never edited: delete and re-enter instead

Design constraints:
- Immutable once recorded (realized_gain is written once, at sell time)
- Cash-only events (deposit, withdrawal, interest) carry no asset
- Every lot and every depletion references the transaction that caused it
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey, Enum as SQLEnum

from .database import Base


AUTO_DEPOSIT_NOTE = "Auto-deposit for external buy"


class TransactionType(str, Enum):
    """Transaction type enumeration."""
    BUY = "Buy"
    SELL = "Sell"
    DIVIDEND = "Dividend"
    INTEREST = "Interest"
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"

    @property
    def is_trade(self) -> bool:
        """True for types that touch the tax-lot ledger."""
        return self in (TransactionType.BUY, TransactionType.SELL)

    @property
    def requires_asset(self) -> bool:
        return self in (TransactionType.BUY, TransactionType.SELL, TransactionType.DIVIDEND)

    @property
    def is_income(self) -> bool:
        return self in (TransactionType.DIVIDEND, TransactionType.INTEREST)

    @property
    def is_external(self) -> bool:
        """True for capital crossing the portfolio boundary."""
        return self in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


class FundingSource(str, Enum):
    """Where the money for a BUY came from."""
    CASH = "cash"            # Account cash balance
    EXTERNAL = "external"    # New money, recorded with an auto-deposit


class Transaction(Base):
    """Transaction record - one investor event.

    Example:
        Deposit 2000 into Brokerage
        Buy 10 VTI @ $100 (fees $1) → amount=1000, lot of 10 @ $100.10/unit
        Sell 4 VTI @ $130 (fees $0) → amount=520, realized_gain=520.00-400.40=119.60

    BUY/SELL amounts are gross trade values (quantity * price_per_unit);
    fees are always carried separately in `fees`.
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)

    # Account and asset
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    asset_id = Column(String(36), ForeignKey("assets.id"), nullable=True, index=True)

    # Event details
    date = Column(Date, nullable=False, index=True)
    type = Column(SQLEnum(TransactionType), nullable=False, index=True)
    quantity = Column(Float, nullable=True)
    price_per_unit = Column(Float, nullable=True)
    amount = Column(Float, nullable=False)
    fees = Column(Float, default=0.0, nullable=False)
    funding_source = Column(SQLEnum(FundingSource), nullable=True)
    notes = Column(String(500), nullable=True)

    # Written once for SELL transactions
    realized_gain = Column(Float, nullable=True)

    # Auto-deposits point at the BUY they fund
    related_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, "
            f"{self.type.value} account={self.account_id} asset={self.asset_id} "
            f"amount={self.amount:.2f})>"
        )

    @property
    def is_auto_deposit(self) -> bool:
        return self.type == TransactionType.DEPOSIT and self.related_transaction_id is not None

    def get_proceeds(self) -> float:
        """Net proceeds of a SELL (gross value less fees)."""
        return (self.quantity or 0.0) * (self.price_per_unit or 0.0) - abs(self.fees or 0.0)

    def get_cost_basis_per_unit(self) -> float:
        """Cost basis per unit of a BUY (fees are capitalized)."""
        if not self.quantity or self.quantity <= 0:
            return 0.0
        gross = self.quantity * (self.price_per_unit or 0.0)
        return (gross + abs(self.fees or 0.0)) / self.quantity

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "asset_id": self.asset_id,
            "date": self.date.isoformat() if self.date else None,
            "type": self.type.value,
            "quantity": self.quantity,
            "price_per_unit": self.price_per_unit,
            "amount": self.amount,
            "fees": self.fees,
            "funding_source": self.funding_source.value if self.funding_source else None,
            "notes": self.notes,
            "realized_gain": self.realized_gain,
            "related_transaction_id": self.related_transaction_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
