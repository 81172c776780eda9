"""Logging setup and per-account audit files for ledger events."""

import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Optional
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Base audit directory
AUDIT_BASE_DIR = Path(__file__).parent.parent.parent / "logs"

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO", fmt: Optional[str] = None) -> None:
    """Apply the `logging` config section to the root logger.

    Args:
        level: Log level name
        fmt: Log record format
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=fmt or DEFAULT_LOG_FORMAT)
    logging.getLogger().setLevel(level.upper())
    logger.info(f"Logging configured at {level.upper()}")


@dataclass
class TransactionLogEntry:
    """Represents a recorded or deleted transaction."""
    timestamp: datetime
    action: str              # "recorded" or "deleted"
    transaction_id: int
    account_id: str
    asset_id: Optional[str]
    type: str
    date: date
    quantity: Optional[float]
    price_per_unit: Optional[float]
    amount: float
    fees: float


@dataclass
class RealizedGainLogEntry:
    """Represents a realized gain/loss produced by a SELL."""
    sell_date: date
    transaction_id: int
    account_id: str
    asset_id: str
    quantity: float
    price_per_unit: float
    proceeds: float
    basis_sold: float
    realized_gain: float
    lots_touched: int


class LedgerAuditLogger:
    """Append-only CSV audit trail per account.

    Failures are logged and never raised: the database stays the source of
    truth, the audit files are a convenience copy.
    """

    def __init__(self, account_id: str, base_dir: Optional[Path] = None):
        """Initialize audit logger for an account.

        Args:
            account_id: The account ID
            base_dir: Audit root (defaults to backend/logs)
        """
        self.account_id = account_id
        self.account_dir = Path(base_dir or AUDIT_BASE_DIR) / str(account_id)

    def _ensure_directory(self) -> bool:
        try:
            self.account_dir.mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.error(f"Account {self.account_id}: Failed to create audit directory: {e}")
            return False

    def log_transaction(self, entry: TransactionLogEntry) -> None:
        """Append a transaction event to transactions.csv."""
        if not self._ensure_directory():
            return

        log_file = self.account_dir / "transactions.csv"
        write_header = not log_file.exists()

        try:
            with open(log_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow([
                        'timestamp', 'action', 'transaction_id', 'account_id', 'asset_id',
                        'type', 'date', 'quantity', 'price_per_unit', 'amount', 'fees',
                    ])

                writer.writerow([
                    entry.timestamp.isoformat(),
                    entry.action,
                    entry.transaction_id,
                    entry.account_id,
                    entry.asset_id or "",
                    entry.type,
                    entry.date.isoformat(),
                    f"{entry.quantity:.8f}" if entry.quantity is not None else "",
                    f"{entry.price_per_unit:.8f}" if entry.price_per_unit is not None else "",
                    f"{entry.amount:.2f}",
                    f"{entry.fees:.2f}",
                ])

            logger.debug(f"Account {self.account_id}: Logged transaction {entry.transaction_id} ({entry.action})")

        except OSError as e:
            logger.error(f"Account {self.account_id}: Failed to log transaction: {e}")

    def log_realized_gain(self, entry: RealizedGainLogEntry) -> None:
        """Append a realized gain to realized_<year>.csv."""
        if not self._ensure_directory():
            return

        gains_file = self.account_dir / f"realized_{entry.sell_date.year}.csv"
        write_header = not gains_file.exists()

        try:
            with open(gains_file, 'a', newline='', encoding='utf-8') as f:
                writer = csv.writer(f)

                if write_header:
                    writer.writerow([
                        'sell_date', 'transaction_id', 'asset_id', 'quantity',
                        'price_per_unit', 'proceeds', 'basis_sold', 'realized_gain',
                        'lots_touched',
                    ])

                writer.writerow([
                    entry.sell_date.isoformat(),
                    entry.transaction_id,
                    entry.asset_id,
                    f"{entry.quantity:.8f}",
                    f"{entry.price_per_unit:.8f}",
                    f"{entry.proceeds:.2f}",
                    f"{entry.basis_sold:.2f}",
                    f"{entry.realized_gain:.2f}",
                    entry.lots_touched,
                ])

            logger.debug(f"Account {self.account_id}: Logged realized gain for transaction {entry.transaction_id}")

        except OSError as e:
            logger.error(f"Account {self.account_id}: Failed to log realized gain: {e}")
