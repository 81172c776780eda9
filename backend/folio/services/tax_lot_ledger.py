"""In-memory FIFO tax-lot ledger.

CRITICAL: This is the ONLY place where lot depletion is decided.
- open_lot() creates exactly one lot per BUY
- deplete_fifo() consumes open lots oldest-purchase-date first
- Depletion is all-or-nothing: an oversell raises before any lot changes
- Every change is also emitted as an explicit mutation for persistence

Design constraints:
- Pure: no I/O, works on a snapshot of lot state
- Deterministic: ties on purchase_date are broken by insertion order
  (lot id order when loaded from the database)
- Closed lots keep their row with remaining_quantity = 0
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple, Union

from .errors import ValidationError, InsufficientInventory

logger = logging.getLogger(__name__)

# Floating point tolerance for quantity comparisons
QUANTITY_TOLERANCE = 1e-9


@dataclass
class LotState:
    """Mutable state of one tax lot inside a ledger snapshot."""
    account_id: str
    asset_id: str
    purchase_date: date
    quantity: float
    cost_basis_per_unit: float
    remaining_quantity: float
    lot_id: Optional[int] = None
    sequence: int = 0
    closed_at: Optional[date] = None

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > QUANTITY_TOLERANCE

    @property
    def depleted_quantity(self) -> float:
        return self.quantity - self.remaining_quantity

    @property
    def total_cost_basis(self) -> float:
        return self.quantity * self.cost_basis_per_unit

    @property
    def remaining_cost_basis(self) -> float:
        return self.remaining_quantity * self.cost_basis_per_unit

    @classmethod
    def from_model(cls, lot, sequence: int = 0) -> "LotState":
        """Build from a TaxLot ORM row."""
        return cls(
            account_id=lot.account_id,
            asset_id=lot.asset_id,
            purchase_date=lot.purchase_date,
            quantity=lot.quantity,
            cost_basis_per_unit=lot.cost_basis_per_unit,
            remaining_quantity=lot.remaining_quantity,
            lot_id=lot.id,
            sequence=sequence,
            closed_at=lot.closed_at,
        )


@dataclass(frozen=True)
class LotDepletionEntry:
    """Quantity taken from one lot by one depletion."""
    lot: LotState
    quantity: float
    cost_basis: float
    closes_lot: bool


@dataclass
class DepletionResult:
    """Outcome of one FIFO depletion."""
    account_id: str
    asset_id: str
    quantity: float
    basis_sold: float
    entries: List[LotDepletionEntry] = field(default_factory=list)


# ============================================================================
# Mutation intents
# ============================================================================

@dataclass(frozen=True)
class NewLot:
    """A lot to insert."""
    lot: LotState


@dataclass(frozen=True)
class LotDepleted:
    """A lot whose remaining quantity must be updated (and possibly closed)."""
    lot: LotState
    quantity: float
    cost_basis: float
    remaining_after: float
    closed_at: Optional[date]


LedgerMutation = Union[NewLot, LotDepleted]


def compute_realized_gain(quantity: float, price_per_unit: float, fees: float, basis_sold: float) -> float:
    """Realized gain of a SELL: (quantity * price - fees) - basis_sold."""
    proceeds = quantity * price_per_unit - abs(fees or 0.0)
    return proceeds - basis_sold


class TaxLotLedger:
    """FIFO lot ledger over an in-memory snapshot.

    Example:
        ledger = TaxLotLedger()
        ledger.open_lot("acc", "vti", date(2024, 1, 1), 10, 100.0)
        result = ledger.deplete_fifo("acc", "vti", 4, date(2024, 6, 1))
        result.basis_sold  # 400.0
        ledger.mutations   # [NewLot(...), LotDepleted(...)]
    """

    def __init__(self, lots: Optional[Iterable[LotState]] = None):
        """Initialize ledger.

        Args:
            lots: Existing lot state (open and closed), in insertion order
        """
        self._lots: Dict[Tuple[str, str], List[LotState]] = {}
        self._next_sequence = 0
        self.mutations: List[LedgerMutation] = []

        for lot in lots or []:
            self._track(lot)

    @classmethod
    def from_models(cls, lots: Iterable) -> "TaxLotLedger":
        """Build from TaxLot ORM rows (ordered by id)."""
        return cls(LotState.from_model(lot, sequence=i) for i, lot in enumerate(lots))

    def _track(self, lot: LotState) -> None:
        lot.sequence = max(lot.sequence, self._next_sequence)
        self._next_sequence = lot.sequence + 1
        self._lots.setdefault((lot.account_id, lot.asset_id), []).append(lot)

    def lots(self, account_id: str, asset_id: str) -> List[LotState]:
        """All lots for a pair, FIFO ordered."""
        lots = self._lots.get((account_id, asset_id), [])
        return sorted(lots, key=lambda l: (l.purchase_date, l.sequence))

    def open_lots(self, account_id: str, asset_id: str, as_of: Optional[date] = None) -> List[LotState]:
        """Open lots for a pair, FIFO ordered.

        With as_of, only lots purchased on or before that date.
        """
        return [
            lot for lot in self.lots(account_id, asset_id)
            if lot.is_open and (as_of is None or lot.purchase_date <= as_of)
        ]

    def all_lots(self) -> List[LotState]:
        return [lot for lots in self._lots.values() for lot in lots]

    def available_quantity(self, account_id: str, asset_id: str, as_of: Optional[date] = None) -> float:
        """Total open quantity for a pair (held on as_of when given)."""
        return sum(lot.remaining_quantity for lot in self.open_lots(account_id, asset_id, as_of))

    def open_lot(
        self,
        account_id: str,
        asset_id: str,
        purchase_date: date,
        quantity: float,
        cost_basis_per_unit: float,
        lot_id: Optional[int] = None,
    ) -> LotState:
        """Create a new open lot.

        Raises:
            ValidationError: If quantity or cost basis is not positive
        """
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Lot quantity must be positive, got {quantity}")
        if cost_basis_per_unit is None or cost_basis_per_unit <= 0:
            raise ValidationError(f"Lot cost basis per unit must be positive, got {cost_basis_per_unit}")

        lot = LotState(
            account_id=account_id,
            asset_id=asset_id,
            purchase_date=purchase_date,
            quantity=quantity,
            cost_basis_per_unit=cost_basis_per_unit,
            remaining_quantity=quantity,
            lot_id=lot_id,
        )
        self._track(lot)
        self.mutations.append(NewLot(lot=lot))

        logger.debug(
            f"Opened lot: {quantity:.8f} {asset_id} @ ${cost_basis_per_unit:.4f}/unit "
            f"(account {account_id}, {purchase_date})"
        )
        return lot

    def deplete_fifo(
        self,
        account_id: str,
        asset_id: str,
        quantity: float,
        as_of: Optional[date] = None,
    ) -> DepletionResult:
        """Consume open lots oldest first.

        Args:
            account_id: Account
            asset_id: Asset
            quantity: Quantity to sell
            as_of: Sell date. Only lots purchased on or before it are
                eligible; it is recorded as closed_at on lots that reach 0

        Returns:
            DepletionResult with basis_sold and per-lot entries

        Raises:
            ValidationError: If quantity is not positive
            InsufficientInventory: If quantity exceeds the open quantity
                held on as_of (no lot is changed)
        """
        if quantity is None or quantity <= 0:
            raise ValidationError(f"Sell quantity must be positive, got {quantity}")

        open_lots = self.open_lots(account_id, asset_id, as_of)
        available = sum(lot.remaining_quantity for lot in open_lots)
        if quantity > available + QUANTITY_TOLERANCE:
            raise InsufficientInventory(account_id, asset_id, quantity, available)

        # Plan first, then apply: nothing changes unless the whole sell fits
        remaining_to_sell = quantity
        plan: List[Tuple[LotState, float]] = []
        for lot in open_lots:
            if remaining_to_sell <= QUANTITY_TOLERANCE:
                break
            take = min(remaining_to_sell, lot.remaining_quantity)
            plan.append((lot, take))
            remaining_to_sell -= take

        result = DepletionResult(account_id=account_id, asset_id=asset_id, quantity=quantity, basis_sold=0.0)
        for lot, take in plan:
            cost_basis = take * lot.cost_basis_per_unit
            lot.remaining_quantity -= take
            closes = lot.remaining_quantity <= QUANTITY_TOLERANCE
            if closes:
                lot.remaining_quantity = 0.0
                lot.closed_at = as_of

            result.basis_sold += cost_basis
            result.entries.append(LotDepletionEntry(lot=lot, quantity=take, cost_basis=cost_basis, closes_lot=closes))
            self.mutations.append(LotDepleted(
                lot=lot,
                quantity=take,
                cost_basis=cost_basis,
                remaining_after=lot.remaining_quantity,
                closed_at=lot.closed_at if closes else None,
            ))

            logger.debug(
                f"Depleted lot {lot.lot_id}: {take:.8f} {asset_id} "
                f"(remaining {lot.remaining_quantity:.8f}{', closed' if closes else ''})"
            )

        return result


def lot_states_as_of(lots: Iterable, depletions: Iterable, as_of: date) -> List[LotState]:
    """Replay persisted lots to their state at the end of a past date.

    Lots purchased after ``as_of`` are excluded; depletions dated after
    ``as_of`` are added back to the remaining quantity.

    Args:
        lots: TaxLot rows (ordered by id)
        depletions: LotDepletion rows
        as_of: Replay date

    Returns:
        LotState snapshots
    """
    depleted_after: Dict[int, float] = {}
    for depletion in depletions:
        if depletion.depleted_at > as_of:
            depleted_after[depletion.tax_lot_id] = depleted_after.get(depletion.tax_lot_id, 0.0) + depletion.quantity

    states = []
    for i, lot in enumerate(lots):
        if lot.purchase_date > as_of:
            continue
        state = LotState.from_model(lot, sequence=i)
        restored = depleted_after.get(lot.id, 0.0)
        if restored:
            state.remaining_quantity = min(state.quantity, state.remaining_quantity + restored)
            state.closed_at = None
        states.append(state)
    return states
