"""Error taxonomy for the ledger write path and the performance engine.

Write-path errors (validation, inventory, conflicts) abort the whole
compound operation and leave no state behind. Engine errors (missing price,
unavailable IRR) are local to one partition and degrade the report.
"""

from typing import Optional


# ============================================================================
# Exception Hierarchy
# ============================================================================

class PortfolioError(Exception):
    """Base class for all portfolio engine errors."""
    pass


class ValidationError(PortfolioError):
    """Malformed transaction input (bad quantity/price, missing field)."""
    pass


class InsufficientInventory(PortfolioError):
    """A SELL requests more quantity than is open for the (account, asset) pair."""

    def __init__(self, account_id: str, asset_id: str, requested: float, available: float):
        self.account_id = account_id
        self.asset_id = asset_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient inventory for account={account_id} asset={asset_id}: "
            f"requested {requested:.8f}, available {available:.8f}"
        )


class NumericNonConvergence(PortfolioError):
    """The IRR solver could not find a root; the rate is unavailable."""
    pass


class InsufficientCashFlowHistory(NumericNonConvergence):
    """Fewer than two dated flows, or no sign change, after netting."""
    pass


class MissingPriceData(PortfolioError):
    """A ticker has no known price."""

    def __init__(self, ticker: str, as_of: Optional[object] = None):
        self.ticker = ticker
        self.as_of = as_of
        suffix = f" as of {as_of}" if as_of is not None else ""
        super().__init__(f"No price for {ticker}{suffix}")


class TransactionNotFound(PortfolioError):
    """Referenced transaction does not exist."""
    pass


class RecordNotFound(PortfolioError):
    """Referenced sub-portfolio or asset does not exist."""
    pass


class LedgerConflictError(PortfolioError):
    """Operation would orphan ledger history (e.g. deleting a depleted BUY)."""
    pass


class InvariantViolationError(PortfolioError):
    """Base class for persisted-ledger invariant violations."""
    pass


class LotBoundsError(InvariantViolationError):
    """Lot remaining quantity outside [0, quantity]."""
    pass


class InventoryConservationError(InvariantViolationError):
    """sum(remaining) + sum(depleted) != sum(quantity)."""
    pass


class RealizedGainMismatchError(InvariantViolationError):
    """Stored realized gain does not match its depletions."""
    pass


class FIFOOrderError(InvariantViolationError):
    """Stored depletions differ from a date-ordered FIFO replay."""
    pass
