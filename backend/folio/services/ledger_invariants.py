"""Ledger Invariant Validation Service

This service validates tax-lot invariants after each BUY, SELL or delete.
All violations raise exceptions so the surrounding write is rolled back.

Design principles:
- Fail fast: Raise exceptions on violation
- Read-only: No data modification
- Deterministic: No randomness or time-based logic
- Scoped: Validate one (account, asset) pair at a time
"""

import logging
from collections import defaultdict
from typing import Dict, List

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Transaction, TransactionType, TaxLot, LotDepletion
from .errors import (
    InvariantViolationError,
    LotBoundsError,
    InventoryConservationError,
    RealizedGainMismatchError,
    FIFOOrderError,
    InsufficientInventory,
)
from .tax_lot_ledger import TaxLotLedger, LotState, compute_realized_gain, QUANTITY_TOLERANCE

logger = logging.getLogger(__name__)


class LedgerInvariantService:
    """Service for validating tax-lot invariants.

    This service performs 5 validations per (account, asset):
    1. Lot bounds (0 <= remaining_quantity <= quantity)
    2. Inventory conservation (remaining + depleted == bought, in total)
    3. Per-lot depletion history matches its remaining quantity
    4. Each SELL's realized gain matches its depletions
    5. Replaying the SELLs in date order from fresh lots gives the stored
       depletions (oldest eligible lot first)
    """

    # Floating point tolerance for all comparisons
    TOLERANCE = 1e-6

    def __init__(self, session: AsyncSession):
        """Initialize the validator.

        Args:
            session: Async database session
        """
        self.session = session

    async def validate_pair(self, account_id: str, asset_id: str) -> None:
        """Validate all invariants for one (account, asset) pair.

        Args:
            account_id: Account ID
            asset_id: Asset ID

        Raises:
            InvariantViolationError subclass if any invariant is violated
        """
        lots = await self._lots(account_id, asset_id)
        depletions = await self._depletions([lot.id for lot in lots])

        try:
            self.validate_lot_bounds(lots)
            self.validate_conservation(account_id, asset_id, lots, depletions)
            self.validate_lot_history(lots, depletions)
            sells = await self._sells(account_id, asset_id)
            self.validate_realized_gains(sells, depletions)
            self.validate_fifo_order(lots, sells, depletions)

            logger.debug(f"Pair {account_id}/{asset_id}: All invariants validated successfully")

        except InvariantViolationError as e:
            logger.error(f"Pair {account_id}/{asset_id}: Validation failed - {e}")
            raise

    async def _lots(self, account_id: str, asset_id: str) -> List[TaxLot]:
        result = await self.session.execute(
            select(TaxLot).where(
                and_(TaxLot.account_id == account_id, TaxLot.asset_id == asset_id)
            ).order_by(TaxLot.id)
        )
        return list(result.scalars().all())

    async def _sells(self, account_id: str, asset_id: str) -> List[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(
                and_(
                    Transaction.account_id == account_id,
                    Transaction.asset_id == asset_id,
                    Transaction.type == TransactionType.SELL,
                )
            ).order_by(Transaction.date, Transaction.id)
        )
        return list(result.scalars().all())

    async def _depletions(self, lot_ids: List[int]) -> List[LotDepletion]:
        if not lot_ids:
            return []
        result = await self.session.execute(
            select(LotDepletion).where(LotDepletion.tax_lot_id.in_(lot_ids))
        )
        return list(result.scalars().all())

    def validate_lot_bounds(self, lots: List[TaxLot]) -> None:
        """Every lot keeps 0 <= remaining_quantity <= quantity.

        Raises:
            LotBoundsError on violation
        """
        for lot in lots:
            if lot.remaining_quantity < -self.TOLERANCE:
                raise LotBoundsError(
                    f"Lot {lot.id}: negative remaining quantity {lot.remaining_quantity:.8f}"
                )
            if lot.remaining_quantity > lot.quantity + self.TOLERANCE:
                raise LotBoundsError(
                    f"Lot {lot.id}: remaining {lot.remaining_quantity:.8f} "
                    f"exceeds original quantity {lot.quantity:.8f}"
                )

    def validate_conservation(
        self,
        account_id: str,
        asset_id: str,
        lots: List[TaxLot],
        depletions: List[LotDepletion],
    ) -> None:
        """sum(remaining) + sum(depleted) == sum(original quantity).

        Raises:
            InventoryConservationError on violation
        """
        bought = sum(lot.quantity for lot in lots)
        remaining = sum(lot.remaining_quantity for lot in lots)
        depleted = sum(d.quantity for d in depletions)

        if abs(remaining + depleted - bought) > self.TOLERANCE:
            raise InventoryConservationError(
                f"Pair {account_id}/{asset_id}: remaining {remaining:.8f} + "
                f"depleted {depleted:.8f} != bought {bought:.8f}"
            )

    def validate_lot_history(self, lots: List[TaxLot], depletions: List[LotDepletion]) -> None:
        """Each lot's depletions explain exactly its missing quantity.

        Raises:
            InventoryConservationError on violation
        """
        depleted_by_lot: Dict[int, float] = defaultdict(float)
        for depletion in depletions:
            depleted_by_lot[depletion.tax_lot_id] += depletion.quantity

        for lot in lots:
            expected = lot.quantity - lot.remaining_quantity
            if abs(depleted_by_lot[lot.id] - expected) > self.TOLERANCE:
                raise InventoryConservationError(
                    f"Lot {lot.id}: depletions sum to {depleted_by_lot[lot.id]:.8f}, "
                    f"expected {expected:.8f}"
                )
            if lot.remaining_quantity <= QUANTITY_TOLERANCE and lot.closed_at is None:
                raise LotBoundsError(f"Lot {lot.id}: fully depleted but not closed")

    def validate_realized_gains(self, sells: List[Transaction], depletions: List[LotDepletion]) -> None:
        """Stored realized gain == proceeds - basis of its depletions.

        Raises:
            RealizedGainMismatchError on violation
        """
        basis_by_sell: Dict[int, float] = defaultdict(float)
        quantity_by_sell: Dict[int, float] = defaultdict(float)
        for depletion in depletions:
            basis_by_sell[depletion.sell_transaction_id] += depletion.cost_basis
            quantity_by_sell[depletion.sell_transaction_id] += depletion.quantity

        for sell in sells:
            if abs(quantity_by_sell[sell.id] - sell.quantity) > self.TOLERANCE:
                raise RealizedGainMismatchError(
                    f"Sell {sell.id}: depletions cover {quantity_by_sell[sell.id]:.8f} "
                    f"of {sell.quantity:.8f} units"
                )

            expected = compute_realized_gain(sell.quantity, sell.price_per_unit, sell.fees, basis_by_sell[sell.id])
            if sell.realized_gain is None or abs(sell.realized_gain - expected) > 0.01:
                raise RealizedGainMismatchError(
                    f"Sell {sell.id}: realized gain {sell.realized_gain} != expected {expected:.2f}"
                )

    def validate_fifo_order(
        self,
        lots: List[TaxLot],
        sells: List[Transaction],
        depletions: List[LotDepletion],
    ) -> None:
        """Stored depletions are what FIFO gives when the SELLs are replayed.

        Lots start at their full quantity; SELLs run in (date, id) order and
        may only use lots purchased on or before their date.

        Raises:
            FIFOOrderError on violation
        """
        stored: Dict[int, Dict[int, float]] = defaultdict(lambda: defaultdict(float))
        for depletion in depletions:
            stored[depletion.sell_transaction_id][depletion.tax_lot_id] += depletion.quantity

        fresh = []
        for i, lot in enumerate(lots):
            state = LotState.from_model(lot, sequence=i)
            state.remaining_quantity = state.quantity
            state.closed_at = None
            fresh.append(state)
        ledger = TaxLotLedger(fresh)

        for sell in sells:
            try:
                result = ledger.deplete_fifo(sell.account_id, sell.asset_id, sell.quantity, as_of=sell.date)
            except InsufficientInventory as e:
                raise FIFOOrderError(f"Sell {sell.id} on {sell.date}: {e}")

            replayed: Dict[int, float] = defaultdict(float)
            for entry in result.entries:
                replayed[entry.lot.lot_id] += entry.quantity

            recorded = stored.get(sell.id, {})
            for lot_id in set(replayed) | set(recorded):
                if abs(replayed.get(lot_id, 0.0) - recorded.get(lot_id, 0.0)) > self.TOLERANCE:
                    raise FIFOOrderError(
                        f"Sell {sell.id} on {sell.date}: lot {lot_id} depleted by "
                        f"{recorded.get(lot_id, 0.0):.8f}, FIFO replay gives {replayed.get(lot_id, 0.0):.8f}"
                    )
