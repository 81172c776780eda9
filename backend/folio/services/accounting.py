"""Accounting services: transaction recording, FIFO tax engine, CSV exports.

CRITICAL: This module is the ledger write path:
- Transaction recording with validation and an audit trail
- FIFO tax lot creation/depletion (deterministic)
- Realized gain calculation at sell time
- CSV export from database (not primary storage)

Design constraints:
- SQLite is single source of truth
- A BUY/SELL, its lot changes and its realized gain commit together or not at all
- Writes are serialized per (account, asset) pair
- Committed BUY/SELL rows are never edited, only deleted and re-entered
"""

import asyncio
import csv
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_

from ..models import (
    Transaction, TransactionType, FundingSource, TaxLot, LotDepletion,
    AUTO_DEPOSIT_NOTE,
)
from .errors import (
    ValidationError, TransactionNotFound, LedgerConflictError,
)
from .tax_lot_ledger import (
    TaxLotLedger, NewLot, LotDepleted, DepletionResult, compute_realized_gain,
)
from .ledger_invariants import LedgerInvariantService
from .logging_service import LedgerAuditLogger, TransactionLogEntry, RealizedGainLogEntry
from .config import config_service

logger = logging.getLogger(__name__)

# Tolerance when checking a caller-supplied amount against quantity * price
AMOUNT_TOLERANCE = 0.01


class PairLockRegistry:
    """One asyncio.Lock per (account_id, asset_id).

    Two SELLs on the same pair must not both read the same remaining
    quantity, so ledger writes for a pair run one at a time. A pair's lock
    is dropped once nobody holds or waits for it.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, str], int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, account_id: str, asset_id: str) -> asyncio.Lock:
        key = (account_id, asset_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, account_id: str, asset_id: str):
        """Hold the pair's lock for the duration of the block."""
        key = (account_id, asset_id)
        lock = self.lock_for(account_id, asset_id)
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


# Process-wide registry shared by every recorder instance
pair_locks = PairLockRegistry()


class FIFOTaxEngine:
    """FIFO tax engine for cost basis tracking and realized gain calculation.

    CRITICAL: Lot decisions are made by TaxLotLedger on a snapshot of the
    pair's lots; this engine loads that snapshot and applies the resulting
    mutations to the session.
    - BUY creates exactly one tax lot
    - SELL runs exactly one FIFO depletion
    - Depletions are persisted as LotDepletion rows
    """

    def __init__(self, session: AsyncSession):
        """Initialize FIFO tax engine.

        Args:
            session: Database session
        """
        self.session = session

    async def load_ledger(self, account_id: str, asset_id: str) -> Tuple[TaxLotLedger, Dict[int, TaxLot]]:
        """Load every lot of a pair into an in-memory ledger.

        Returns:
            (ledger, ORM lots keyed by id)
        """
        query = select(TaxLot).where(
            and_(
                TaxLot.account_id == account_id,
                TaxLot.asset_id == asset_id,
            )
        ).order_by(TaxLot.id)

        result = await self.session.execute(query)
        lots = result.scalars().all()
        return TaxLotLedger.from_models(lots), {lot.id: lot for lot in lots}

    async def process_buy(self, tx: Transaction) -> TaxLot:
        """Process a BUY - create a new tax lot.

        Args:
            tx: Flushed BUY transaction

        Returns:
            Created tax lot

        Note:
            Caller must commit the session.
        """
        ledger = TaxLotLedger()
        state = ledger.open_lot(
            account_id=tx.account_id,
            asset_id=tx.asset_id,
            purchase_date=tx.date,
            quantity=tx.quantity,
            cost_basis_per_unit=tx.get_cost_basis_per_unit(),
        )

        lot = TaxLot(
            account_id=state.account_id,
            asset_id=state.asset_id,
            purchase_date=state.purchase_date,
            quantity=state.quantity,
            cost_basis_per_unit=state.cost_basis_per_unit,
            remaining_quantity=state.remaining_quantity,
            purchase_transaction_id=tx.id,
            created_at=datetime.utcnow(),
        )
        self.session.add(lot)
        await self.session.flush()

        logger.info(
            f"Created tax lot {lot.id}: {lot.quantity:.8f} {lot.asset_id} "
            f"@ ${lot.cost_basis_per_unit:.4f}/unit (transaction {tx.id})"
        )

        return lot

    async def process_sell(self, tx: Transaction) -> DepletionResult:
        """Process a SELL - deplete tax lots in FIFO order and set realized gain.

        Args:
            tx: Flushed SELL transaction

        Returns:
            Depletion result (basis_sold, per-lot entries)

        Raises:
            InsufficientInventory: If the pair has less open quantity than requested

        Note:
            Caller must commit the session (or roll back on error).
        """
        ledger, lots_by_id = await self.load_ledger(tx.account_id, tx.asset_id)
        result = ledger.deplete_fifo(tx.account_id, tx.asset_id, tx.quantity, as_of=tx.date)

        for mutation in ledger.mutations:
            if isinstance(mutation, LotDepleted):
                lot = lots_by_id[mutation.lot.lot_id]
                lot.remaining_quantity = mutation.remaining_after
                if mutation.closed_at is not None:
                    lot.closed_at = mutation.closed_at

                self.session.add(LotDepletion(
                    tax_lot_id=lot.id,
                    sell_transaction_id=tx.id,
                    quantity=mutation.quantity,
                    cost_basis=mutation.cost_basis,
                    depleted_at=tx.date,
                    created_at=datetime.utcnow(),
                ))
            elif isinstance(mutation, NewLot):
                raise LedgerConflictError("A SELL must not open lots")

        tx.realized_gain = compute_realized_gain(tx.quantity, tx.price_per_unit, tx.fees, result.basis_sold)
        await self.session.flush()

        logger.info(
            f"Realized gain for transaction {tx.id}: {tx.quantity:.8f} {tx.asset_id} "
            f"basis_sold=${result.basis_sold:.2f} gain/loss=${tx.realized_gain:+.2f} "
            f"({len(result.entries)} lot(s))"
        )

        return result


class TransactionRecorderService:
    """Service for recording and deleting transactions.

    CRITICAL: This is the ONLY way to change the ledger.
    Each call is one unit of work: it commits on success and rolls back
    the whole session on failure, so a rejected write leaves no state.

    Responsibilities:
    - Validate transaction input
    - Create/deplete tax lots through FIFOTaxEngine
    - Record the auto-deposit of an externally funded BUY
    - Serialize writes per (account, asset)
    """

    def __init__(
        self,
        session: AsyncSession,
        locks: Optional[PairLockRegistry] = None,
        validate_after_write: Optional[bool] = None,
        audit_dir: Optional[Path] = None,
    ):
        """Initialize transaction recorder.

        Args:
            session: Database session
            locks: Pair lock registry (defaults to the process-wide one)
            validate_after_write: Run ledger invariants before commit
                (defaults to config `ledger.validate_after_write`, else True)
            audit_dir: Root of CSV audit files (defaults to config
                `logging.audit_dir`; no audit files when unset)
        """
        self.session = session
        self.tax_engine = FIFOTaxEngine(session)
        self.locks = locks if locks is not None else pair_locks

        if validate_after_write is None:
            validate_after_write = config_service.get("ledger.validate_after_write", True)
        self.validate_after_write = validate_after_write

        if audit_dir is None:
            configured = config_service.get("logging.audit_dir")
            audit_dir = Path(configured) if configured else None
        self.audit_dir = audit_dir

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(
        self,
        tx_type: TransactionType,
        account_id: Optional[str],
        tx_date: Optional[date],
        asset_id: Optional[str],
        quantity: Optional[float],
        price_per_unit: Optional[float],
        amount: Optional[float],
        fees: float,
    ) -> float:
        """Validate input shape and return the amount to store.

        Raises:
            ValidationError: On any malformed field
        """
        if not account_id:
            raise ValidationError("account_id is required")
        if tx_date is None:
            raise ValidationError("date is required")
        if fees is not None and fees < 0:
            raise ValidationError(f"fees must not be negative, got {fees}")

        if tx_type.requires_asset and not asset_id:
            raise ValidationError(f"asset_id is required for {tx_type.value}")
        if not tx_type.requires_asset and asset_id:
            raise ValidationError(f"{tx_type.value} must not reference an asset")

        if tx_type.is_trade:
            if quantity is None or quantity <= 0:
                raise ValidationError(f"quantity must be positive for {tx_type.value}, got {quantity}")
            if price_per_unit is None or price_per_unit <= 0:
                raise ValidationError(f"price_per_unit must be positive for {tx_type.value}, got {price_per_unit}")

            gross = quantity * price_per_unit
            if amount is not None and abs(abs(amount) - gross) > AMOUNT_TOLERANCE:
                raise ValidationError(
                    f"amount {amount:.2f} does not match quantity * price_per_unit = {gross:.2f}"
                )
            return gross

        if amount is None or amount <= 0:
            raise ValidationError(f"amount must be positive for {tx_type.value}, got {amount}")
        return amount

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def record_transaction(
        self,
        account_id: str,
        type: TransactionType,
        date: date,
        amount: Optional[float] = None,
        fees: float = 0.0,
        asset_id: Optional[str] = None,
        quantity: Optional[float] = None,
        price_per_unit: Optional[float] = None,
        funding_source: Optional[FundingSource] = None,
        notes: Optional[str] = None,
    ) -> Transaction:
        """Record one transaction and its ledger side effects.

        This creates:
        1. Transaction record
        2. Tax lot (BUY) or lot depletions + realized gain (SELL)
        3. Auto-deposit (BUY funded externally)

        Returns:
            Created transaction

        Raises:
            ValidationError: Malformed input (nothing written)
            InsufficientInventory: SELL exceeds open quantity (nothing written)
        """
        try:
            tx_type = TransactionType(type)
        except ValueError:
            raise ValidationError(f"Unknown transaction type {type!r}")

        fees = abs(fees or 0.0)
        amount = self.validate(tx_type, account_id, date, asset_id, quantity, price_per_unit, amount, fees)

        if tx_type == TransactionType.BUY and funding_source is None:
            funding_source = FundingSource.CASH
        if tx_type != TransactionType.BUY:
            funding_source = None

        if not tx_type.is_trade:
            return await self._write(
                tx_type, account_id, date, amount, fees, asset_id,
                quantity, price_per_unit, funding_source, notes,
            )

        async with self.locks.hold(account_id, asset_id):
            return await self._write(
                tx_type, account_id, date, amount, fees, asset_id,
                quantity, price_per_unit, funding_source, notes,
            )

    async def _write(
        self,
        tx_type: TransactionType,
        account_id: str,
        tx_date: date,
        amount: float,
        fees: float,
        asset_id: Optional[str],
        quantity: Optional[float],
        price_per_unit: Optional[float],
        funding_source: Optional[FundingSource],
        notes: Optional[str],
    ) -> Transaction:
        realized: Optional[DepletionResult] = None
        try:
            tx = Transaction(
                account_id=account_id,
                asset_id=asset_id,
                date=tx_date,
                type=tx_type,
                quantity=quantity if tx_type.is_trade else None,
                price_per_unit=price_per_unit if tx_type.is_trade else None,
                amount=amount,
                fees=fees,
                funding_source=funding_source,
                notes=notes,
                created_at=datetime.utcnow(),
            )
            if tx_type.is_trade:
                await self._check_not_before_latest_sell(account_id, asset_id, tx_date)

            self.session.add(tx)
            await self.session.flush()  # Get transaction ID

            if tx_type == TransactionType.BUY:
                await self.tax_engine.process_buy(tx)
                if funding_source == FundingSource.EXTERNAL:
                    await self._record_auto_deposit(tx)
            elif tx_type == TransactionType.SELL:
                realized = await self.tax_engine.process_sell(tx)

            if tx_type.is_trade and self.validate_after_write:
                await LedgerInvariantService(self.session).validate_pair(account_id, asset_id)

            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.warning(
                f"Rejected {tx_type.value} for account={account_id} asset={asset_id}: {e}. "
                f"No state changed."
            )
            raise

        logger.info(
            f"Recorded transaction {tx.id}: {tx_type.value} account={account_id} "
            f"asset={asset_id} amount=${amount:.2f} fees=${fees:.2f}"
        )
        self._audit_recorded(tx, realized)

        return tx

    async def _latest_sell(self, account_id: str, asset_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(
                and_(
                    Transaction.account_id == account_id,
                    Transaction.asset_id == asset_id,
                    Transaction.type == TransactionType.SELL,
                )
            ).order_by(Transaction.date.desc(), Transaction.id.desc()).limit(1)
        )
        return result.scalar_one_or_none()

    async def _check_not_before_latest_sell(self, account_id: str, asset_id: str, tx_date: date) -> None:
        """A BUY or SELL dated before the pair's latest SELL would change that SELL's lots."""
        latest = await self._latest_sell(account_id, asset_id)
        if latest is not None and tx_date < latest.date:
            raise LedgerConflictError(
                f"Trade dated {tx_date} is before sell {latest.id} on {latest.date} "
                f"for account={account_id} asset={asset_id}; delete the later sells first"
            )

    async def _record_auto_deposit(self, buy: Transaction) -> Transaction:
        """Insert the deposit that funds an externally funded BUY."""
        deposit = Transaction(
            account_id=buy.account_id,
            asset_id=None,
            date=buy.date,
            type=TransactionType.DEPOSIT,
            amount=buy.amount + buy.fees,
            fees=0.0,
            notes=AUTO_DEPOSIT_NOTE,
            related_transaction_id=buy.id,
            created_at=datetime.utcnow(),
        )
        self.session.add(deposit)
        await self.session.flush()

        logger.info(f"Auto-deposit {deposit.id}: ${deposit.amount:.2f} for external buy {buy.id}")
        return deposit

    async def delete_transaction(self, transaction_id: int) -> None:
        """Delete a transaction and undo its ledger side effects.

        - SELL: allowed only for the pair's latest sell; depleted lots are
          restored (closed lots reopen)
        - BUY: allowed only while its lot has never been depleted;
          the lot and the auto-deposit go with it
        - Auto-deposit: refused (delete the BUY instead)

        Raises:
            TransactionNotFound: Unknown ID
            LedgerConflictError: Deletion would orphan ledger history
        """
        result = await self.session.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        tx = result.scalar_one_or_none()
        if not tx:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")

        if tx.is_auto_deposit:
            raise LedgerConflictError(
                f"Transaction {transaction_id} is the auto-deposit of buy "
                f"{tx.related_transaction_id}; delete the buy instead"
            )

        if tx.type.is_trade:
            async with self.locks.hold(tx.account_id, tx.asset_id):
                await self._delete(tx)
        else:
            await self._delete(tx)

    async def _delete(self, tx: Transaction) -> None:
        tx_id, tx_type, account_id, asset_id = tx.id, tx.type, tx.account_id, tx.asset_id
        snapshot = TransactionLogEntry(
            timestamp=datetime.utcnow(),
            action="deleted",
            transaction_id=tx.id,
            account_id=tx.account_id,
            asset_id=tx.asset_id,
            type=tx.type.value,
            date=tx.date,
            quantity=tx.quantity,
            price_per_unit=tx.price_per_unit,
            amount=tx.amount,
            fees=tx.fees,
        )

        try:
            if tx_type == TransactionType.SELL:
                await self._restore_sell(tx)
            elif tx_type == TransactionType.BUY:
                await self._remove_buy(tx)

            await self.session.delete(tx)
            await self.session.flush()

            if tx_type.is_trade and self.validate_after_write:
                await LedgerInvariantService(self.session).validate_pair(account_id, asset_id)

            await self.session.commit()

        except Exception as e:
            await self.session.rollback()
            logger.warning(f"Rejected delete of transaction {tx_id}: {e}. No state changed.")
            raise

        logger.info(f"Deleted transaction {tx_id}: {tx_type.value} account={account_id} asset={asset_id}")
        self._audit(account_id, snapshot)

    async def _restore_sell(self, tx: Transaction) -> None:
        later = await self.session.execute(
            select(Transaction.id).where(
                and_(
                    Transaction.account_id == tx.account_id,
                    Transaction.asset_id == tx.asset_id,
                    Transaction.type == TransactionType.SELL,
                    or_(
                        Transaction.date > tx.date,
                        and_(Transaction.date == tx.date, Transaction.id > tx.id),
                    ),
                )
            ).limit(1)
        )
        later_id = later.scalar_one_or_none()
        if later_id is not None:
            raise LedgerConflictError(
                f"Sell {tx.id} is followed by sell {later_id} on the same pair; "
                f"delete the later sells first"
            )

        result = await self.session.execute(
            select(LotDepletion).where(LotDepletion.sell_transaction_id == tx.id)
        )
        depletions = result.scalars().all()

        for depletion in depletions:
            lot_result = await self.session.execute(
                select(TaxLot).where(TaxLot.id == depletion.tax_lot_id)
            )
            lot = lot_result.scalar_one()
            lot.remaining_quantity = min(lot.quantity, lot.remaining_quantity + depletion.quantity)
            lot.closed_at = None
            await self.session.delete(depletion)

            logger.info(f"Restored {depletion.quantity:.8f} to lot {lot.id} (sell {tx.id} deleted)")

    async def _remove_buy(self, tx: Transaction) -> None:
        result = await self.session.execute(
            select(TaxLot).where(TaxLot.purchase_transaction_id == tx.id)
        )
        lot = result.scalar_one_or_none()

        if lot is not None:
            depleted = await self.session.execute(
                select(LotDepletion.id).where(LotDepletion.tax_lot_id == lot.id).limit(1)
            )
            if depleted.scalar_one_or_none() is not None:
                raise LedgerConflictError(
                    f"Lot {lot.id} of buy {tx.id} has been sold from; delete those sells first"
                )
            await self.session.delete(lot)

        deposits = await self.session.execute(
            select(Transaction).where(Transaction.related_transaction_id == tx.id)
        )
        for deposit in deposits.scalars().all():
            await self.session.delete(deposit)

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    def _audit(self, account_id: str, entry: TransactionLogEntry) -> None:
        if self.audit_dir is None:
            return
        LedgerAuditLogger(account_id, self.audit_dir).log_transaction(entry)

    def _audit_recorded(self, tx: Transaction, realized: Optional[DepletionResult]) -> None:
        if self.audit_dir is None:
            return

        audit = LedgerAuditLogger(tx.account_id, self.audit_dir)
        audit.log_transaction(TransactionLogEntry(
            timestamp=datetime.utcnow(),
            action="recorded",
            transaction_id=tx.id,
            account_id=tx.account_id,
            asset_id=tx.asset_id,
            type=tx.type.value,
            date=tx.date,
            quantity=tx.quantity,
            price_per_unit=tx.price_per_unit,
            amount=tx.amount,
            fees=tx.fees,
        ))

        if realized is not None:
            audit.log_realized_gain(RealizedGainLogEntry(
                sell_date=tx.date,
                transaction_id=tx.id,
                account_id=tx.account_id,
                asset_id=tx.asset_id,
                quantity=tx.quantity,
                price_per_unit=tx.price_per_unit,
                proceeds=tx.get_proceeds(),
                basis_sold=realized.basis_sold,
                realized_gain=tx.realized_gain,
                lots_touched=len(realized.entries),
            ))


REALIZED_GAIN_COLUMNS = [
    'account_id', 'asset_id', 'quantity', 'purchase_date', 'cost_basis_per_unit',
    'sell_date', 'sell_price', 'proceeds', 'cost_basis', 'gain_loss',
    'holding_period_days', 'term', 'sell_transaction_id', 'tax_lot_id',
]

TAX_LOT_COLUMNS = [
    'id', 'account_id', 'asset_id', 'purchase_date', 'quantity', 'cost_basis_per_unit',
    'remaining_quantity', 'total_cost_basis', 'closed_at', 'purchase_transaction_id',
]


class CSVExportService:
    """Service for exporting ledger data to CSV files.

    CRITICAL: CSV files are EXPORTS, not primary storage.
    - SQLite is the authoritative source
    - CSV files can be regenerated at any time
    """

    def __init__(self, session: AsyncSession):
        """Initialize CSV export service.

        Args:
            session: Database session
        """
        self.session = session

    async def realized_gain_rows(
        self,
        account_id: Optional[str] = None,
        year: Optional[int] = None,
    ) -> List[Dict]:
        """One row per lot depletion with its sell and lot details.

        Args:
            account_id: Filter by account
            year: Filter by sell year

        Returns:
            Rows keyed by REALIZED_GAIN_COLUMNS
        """
        query = (
            select(LotDepletion, TaxLot, Transaction)
            .join(TaxLot, LotDepletion.tax_lot_id == TaxLot.id)
            .join(Transaction, LotDepletion.sell_transaction_id == Transaction.id)
        )
        if account_id:
            query = query.where(Transaction.account_id == account_id)
        if year:
            query = query.where(
                and_(
                    Transaction.date >= date(year, 1, 1),
                    Transaction.date < date(year + 1, 1, 1),
                )
            )
        query = query.order_by(Transaction.date, Transaction.id, LotDepletion.id)

        result = await self.session.execute(query)

        rows = []
        for depletion, lot, sell in result.all():
            # Sell fees are allocated pro rata to the lots they touched
            fee_share = abs(sell.fees or 0.0) * (depletion.quantity / sell.quantity) if sell.quantity else 0.0
            proceeds = depletion.quantity * sell.price_per_unit - fee_share
            holding_days = (sell.date - lot.purchase_date).days

            rows.append({
                'account_id': sell.account_id,
                'asset_id': sell.asset_id,
                'quantity': depletion.quantity,
                'purchase_date': lot.purchase_date.isoformat(),
                'cost_basis_per_unit': lot.cost_basis_per_unit,
                'sell_date': sell.date.isoformat(),
                'sell_price': sell.price_per_unit,
                'proceeds': round(proceeds, 2),
                'cost_basis': round(depletion.cost_basis, 2),
                'gain_loss': round(proceeds - depletion.cost_basis, 2),
                'holding_period_days': holding_days,
                'term': 'Long-term' if holding_days > 365 else 'Short-term',
                'sell_transaction_id': sell.id,
                'tax_lot_id': lot.id,
            })
        return rows

    async def export_realized_gains_csv(
        self,
        output_path: Path,
        account_id: Optional[str] = None,
        year: Optional[int] = None,
    ) -> int:
        """Export realized gains to CSV.

        Args:
            output_path: Output file path
            account_id: Filter by account
            year: Filter by sell year

        Returns:
            Number of rows written
        """
        rows = await self.realized_gain_rows(account_id=account_id, year=year)
        self._write(output_path, REALIZED_GAIN_COLUMNS, rows)

        logger.info(f"Exported {len(rows)} realized gain rows to {output_path}")
        return len(rows)

    async def export_tax_lots_csv(
        self,
        output_path: Path,
        account_id: Optional[str] = None,
        open_only: bool = False,
    ) -> int:
        """Export tax lots to CSV.

        Args:
            output_path: Output file path
            account_id: Filter by account
            open_only: Only export lots with remaining quantity

        Returns:
            Number of lots exported
        """
        query = select(TaxLot)
        if account_id:
            query = query.where(TaxLot.account_id == account_id)
        if open_only:
            query = query.where(TaxLot.remaining_quantity > 0)
        query = query.order_by(TaxLot.purchase_date, TaxLot.id)

        result = await self.session.execute(query)
        lots = result.scalars().all()

        rows = [{column: lot.to_dict()[column] for column in TAX_LOT_COLUMNS} for lot in lots]
        self._write(output_path, TAX_LOT_COLUMNS, rows)

        logger.info(f"Exported {len(rows)} tax lots to {output_path}")
        return len(rows)

    @staticmethod
    def _write(output_path: Path, columns: List[str], rows: List[Dict]) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', newline='') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=columns)
            writer.writeheader()
            writer.writerows(rows)
