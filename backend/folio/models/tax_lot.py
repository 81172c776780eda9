"""Tax lot model - FIFO cost basis tracking.

CRITICAL: Tax lots track the cost basis of held assets using FIFO (First-In-First-Out).
- BUY transactions create tax lots
- SELL transactions deplete lots in FIFO order, per (account, asset)
- Depletion is deterministic and persisted as LotDepletion rows
- A fully depleted lot is closed (remaining_quantity = 0), never deleted

Design constraints:
- 0 <= remaining_quantity <= quantity at all times
- sum(remaining) + sum(depleted) == sum(quantity) per (account, asset)
- Depletion history is immutable (only removed when its SELL is deleted)
"""

from datetime import datetime
from sqlalchemy import Column, Integer, String, Float, Date, DateTime, ForeignKey

from .database import Base


class TaxLot(Base):
    """Tax lot for FIFO cost basis tracking.

    Example workflow:
        BUY 1: 10 VTI @ $100 → Lot A (10 remaining)
        BUY 2: 5 VTI @ $110  → Lot B (5 remaining)
        SELL 1: 12 VTI @ $130 →
            Lot A: 10 depleted (0 remaining, closed)
            Lot B: 2 depleted (3 remaining)
    """
    __tablename__ = "tax_lots"

    id = Column(Integer, primary_key=True, index=True)

    # Account and asset
    account_id = Column(String(36), ForeignKey("accounts.id"), nullable=False, index=True)
    asset_id = Column(String(36), ForeignKey("assets.id"), nullable=False, index=True)

    # Lot details
    purchase_date = Column(Date, nullable=False, index=True)
    quantity = Column(Float, nullable=False)                # Original quantity
    cost_basis_per_unit = Column(Float, nullable=False)     # Including capitalized fees
    remaining_quantity = Column(Float, nullable=False)      # Remaining after sales

    # Purchase transaction reference
    purchase_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=True, index=True)

    # Lot status
    closed_at = Column(Date, nullable=True)  # Date the lot was fully depleted

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<TaxLot(id={self.id}, "
            f"asset={self.asset_id}, "
            f"remaining={self.remaining_quantity:.8f}, "
            f"basis=${self.cost_basis_per_unit:.2f})>"
        )

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > 0

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "account_id": self.account_id,
            "asset_id": self.asset_id,
            "purchase_date": self.purchase_date.isoformat() if self.purchase_date else None,
            "quantity": self.quantity,
            "cost_basis_per_unit": self.cost_basis_per_unit,
            "remaining_quantity": self.remaining_quantity,
            "total_cost_basis": self.quantity * self.cost_basis_per_unit,
            "purchase_transaction_id": self.purchase_transaction_id,
            "is_open": self.is_open,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class LotDepletion(Base):
    """Depletion of one lot by one SELL.

    CRITICAL: This is the historical side of the inventory equation.
    Each row records how much of a lot a SELL consumed and at what basis.
    """
    __tablename__ = "lot_depletions"

    id = Column(Integer, primary_key=True, index=True)

    tax_lot_id = Column(Integer, ForeignKey("tax_lots.id"), nullable=False, index=True)
    sell_transaction_id = Column(Integer, ForeignKey("transactions.id"), nullable=False, index=True)

    quantity = Column(Float, nullable=False)      # Quantity taken from the lot
    cost_basis = Column(Float, nullable=False)    # quantity * lot.cost_basis_per_unit
    depleted_at = Column(Date, nullable=False, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return (
            f"<LotDepletion(id={self.id}, "
            f"lot={self.tax_lot_id}, "
            f"sell={self.sell_transaction_id}, "
            f"quantity={self.quantity:.8f})>"
        )

    def to_dict(self):
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "tax_lot_id": self.tax_lot_id,
            "sell_transaction_id": self.sell_transaction_id,
            "quantity": self.quantity,
            "cost_basis": self.cost_basis,
            "depleted_at": self.depleted_at.isoformat() if self.depleted_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
