"""Performance aggregation engine.

CRITICAL: This module is the ONLY place where gains and returns are computed.
- aggregate() partitions transactions and lots by a lens and builds one
  PerformanceSnapshot per partition plus the portfolio total
- Every partition and the total go through the same normalizer, netter
  and IRR solver
- aggregate() is pure: it reads an immutable snapshot and performs no I/O

PerformanceService loads that snapshot from the database (including lot
state replayed to a past date) and builds single reports and time series.
"""

import calendar
import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import (
    Transaction, TransactionType, TaxLot, LotDepletion, Account, SubPortfolio, Asset,
)
from .cash_flows import build_cash_flow_series, calculate_cash_balances
from .errors import ValidationError, MissingPriceData
from .irr_solver import IRRSolver, calculate_irr, get_default_solver
from .price_service import PriceService, require_price
from .records import TransactionRecord, AssetInfo
from .tax_lot_ledger import LotState, lot_states_as_of
from .config import config_service

logger = logging.getLogger(__name__)

UNASSIGNED = "unassigned"
TOTAL_KEY = "portfolio"


class Lens(str, Enum):
    """Grouping dimension for a performance report."""
    ASSET = "asset"
    ACCOUNT = "account"
    SUB_PORTFOLIO = "sub_portfolio"
    ASSET_TYPE = "asset_type"
    ASSET_SUBTYPE = "asset_subtype"
    GEOGRAPHY = "geography"
    SIZE_TAG = "size_tag"
    FACTOR_TAG = "factor_tag"
    TOTAL = "total"

    @property
    def holds_cash(self) -> bool:
        """Partitions that own cash: Buy/Sell are internal, cash is part of the value."""
        return self in (Lens.ACCOUNT, Lens.TOTAL)


# Asset metadata attribute behind each tag lens
_ASSET_ATTRIBUTES = {
    Lens.SUB_PORTFOLIO: "sub_portfolio_id",
    Lens.ASSET_TYPE: "asset_type",
    Lens.ASSET_SUBTYPE: "asset_subtype",
    Lens.GEOGRAPHY: "geography",
    Lens.SIZE_TAG: "size_tag",
    Lens.FACTOR_TAG: "factor_tag",
}


def partition_key(
    lens: Lens,
    account_id: str,
    asset_id: Optional[str],
    assets: Dict[str, AssetInfo],
) -> Optional[str]:
    """Partition key of a transaction or lot under a lens.

    Returns None when the item belongs to no partition (cash-only
    transactions under an asset-keyed lens).
    """
    if lens == Lens.TOTAL:
        return TOTAL_KEY
    if lens == Lens.ACCOUNT:
        return account_id
    if not asset_id:
        return None
    if lens == Lens.ASSET:
        return asset_id

    info = assets.get(asset_id)
    value = getattr(info, _ASSET_ATTRIBUTES[lens]) if info else None
    return value or UNASSIGNED


@dataclass
class PerformanceSnapshot:
    """Derived performance of one partition (or the whole portfolio)."""
    key: str
    label: str
    current_value: float = 0.0
    cost_basis: float = 0.0
    total_cost_basis: float = 0.0
    unrealized_gain: float = 0.0
    realized_gain: float = 0.0
    income: float = 0.0
    fees: float = 0.0
    net_gain: float = 0.0
    total_return_pct: float = 0.0
    annualized_irr_pct: Optional[float] = None   # None == unavailable
    weight: float = 0.0
    cash_balance: float = 0.0
    missing_prices: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AggregationResult:
    """Per-partition snapshots plus the portfolio total."""
    lens: Lens
    as_of: date
    per_group: List[PerformanceSnapshot]
    total: PerformanceSnapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lens": self.lens.value,
            "as_of": self.as_of.isoformat(),
            "groups": [s.to_dict() for s in self.per_group],
            "total": self.total.to_dict(),
        }


# ============================================================================
# Pure aggregation
# ============================================================================

def _ticker(asset_id: str, assets: Dict[str, AssetInfo]) -> str:
    info = assets.get(asset_id)
    return info.ticker.upper() if info else asset_id


def _value_lots(
    lots: Iterable[LotState],
    prices: Dict[str, float],
    assets: Dict[str, AssetInfo],
    as_of: date,
    missing: Set[str],
) -> Tuple[float, float, float, float]:
    """(current_value, open cost basis, unrealized gain, total cost basis).

    Lots without a price are valued at 0 and left out of unrealized gain.
    """
    value = basis = unrealized = total_basis = 0.0
    for lot in lots:
        total_basis += lot.total_cost_basis
        if not lot.is_open:
            continue

        basis += lot.remaining_cost_basis
        ticker = _ticker(lot.asset_id, assets)
        try:
            price = require_price(prices, ticker, as_of)
        except MissingPriceData as e:
            if ticker not in missing:
                logger.warning(f"{e}; valuing {ticker} at 0")
            missing.add(ticker)
            continue

        lot_value = lot.remaining_quantity * price
        value += lot_value
        unrealized += lot_value - lot.remaining_cost_basis
    return value, basis, unrealized, total_basis


def _series_transactions(
    transactions: Sequence[TransactionRecord],
    holds_cash: bool,
    include_income: bool,
) -> List[TransactionRecord]:
    """Transactions that are flows of a partition's return series."""
    if not holds_cash:
        return list(transactions)
    return [
        tx for tx in transactions
        if tx.type.is_external or (include_income and tx.type.is_income)
    ]


def _build_snapshot(
    key: str,
    label: str,
    transactions: Sequence[TransactionRecord],
    lots: Sequence[LotState],
    prices: Dict[str, float],
    assets: Dict[str, AssetInfo],
    as_of: date,
    holds_cash: bool,
    include_income: bool,
    solver: IRRSolver,
    missing: Set[str],
) -> PerformanceSnapshot:
    partition_missing: Set[str] = set()
    value, basis, unrealized, total_basis = _value_lots(lots, prices, assets, as_of, partition_missing)
    missing.update(partition_missing)

    realized = sum(tx.realized_gain or 0.0 for tx in transactions if tx.type == TransactionType.SELL)
    income = sum(abs(tx.amount) for tx in transactions if tx.type.is_income)
    fees = sum(abs(tx.fees or 0.0) for tx in transactions)
    # BUY fees live in cost basis and SELL fees in realized gain
    other_fees = sum(abs(tx.fees or 0.0) for tx in transactions if not tx.type.is_trade)

    cash = 0.0
    if holds_cash:
        cash = sum(calculate_cash_balances(transactions).values())

    net_gain = unrealized + realized + income - other_fees
    total_return_pct = net_gain / total_basis * 100 if total_basis > 0 else 0.0

    net_flows, net_dates = build_cash_flow_series(
        _series_transactions(transactions, holds_cash, include_income),
        terminal_value=value + cash,
        as_of=as_of,
    )
    irr = calculate_irr(net_dates, net_flows, solver=solver)

    return PerformanceSnapshot(
        key=key,
        label=label,
        current_value=value,
        cost_basis=basis,
        total_cost_basis=total_basis,
        unrealized_gain=unrealized,
        realized_gain=realized,
        income=income,
        fees=fees,
        net_gain=net_gain,
        total_return_pct=total_return_pct,
        annualized_irr_pct=irr * 100 if irr is not None else None,
        cash_balance=cash,
        missing_prices=sorted(partition_missing),
    )


def aggregate(
    lens: Lens,
    transactions: Iterable[TransactionRecord],
    lots: Iterable[LotState],
    latest_prices: Dict[str, float],
    as_of: date,
    assets: Optional[Dict[str, AssetInfo]] = None,
    labels: Optional[Dict[str, str]] = None,
    include_income_in_total: bool = False,
    solver: Optional[IRRSolver] = None,
) -> AggregationResult:
    """Build per-partition snapshots and the portfolio total.

    Args:
        lens: Grouping dimension
        transactions: Transaction snapshot (later than as_of is ignored)
        lots: Lot state as of as_of (open and closed)
        latest_prices: Price per ticker as of as_of
        as_of: Valuation date (terminal flow date)
        assets: Asset metadata by asset_id
        labels: Display label by partition key
        include_income_in_total: Count Dividend/Interest as external flows
            of cash-holding partitions and the total
        solver: IRR solver (defaults to the shared one)

    Returns:
        AggregationResult
    """
    lens = Lens(lens)
    assets = assets or {}
    labels = labels or {}
    solver = solver or get_default_solver()

    transactions = sorted(
        (tx for tx in transactions if tx.date <= as_of),
        key=lambda tx: (tx.date, tx.id or 0),
    )
    lots = [lot for lot in lots if lot.purchase_date <= as_of]

    tx_groups: Dict[str, List[TransactionRecord]] = defaultdict(list)
    lot_groups: Dict[str, List[LotState]] = defaultdict(list)
    for tx in transactions:
        key = partition_key(lens, tx.account_id, tx.asset_id, assets)
        if key is not None:
            tx_groups[key].append(tx)
    for lot in lots:
        lot_groups[partition_key(lens, lot.account_id, lot.asset_id, assets)].append(lot)

    missing: Set[str] = set()

    total = _build_snapshot(
        TOTAL_KEY, labels.get(TOTAL_KEY, "Portfolio"),
        transactions, lots, latest_prices, assets, as_of,
        holds_cash=True, include_income=include_income_in_total,
        solver=solver, missing=missing,
    )
    total.weight = 1.0 if total.current_value > 0 else 0.0

    if lens == Lens.TOTAL:
        return AggregationResult(lens=lens, as_of=as_of, per_group=[total], total=total)

    per_group = []
    for key in sorted(set(tx_groups) | set(lot_groups)):
        label = labels.get(key) or ("Unassigned" if key == UNASSIGNED else key)
        per_group.append(_build_snapshot(
            key, label,
            tx_groups.get(key, []), lot_groups.get(key, []), latest_prices, assets, as_of,
            holds_cash=lens.holds_cash, include_income=include_income_in_total,
            solver=solver, missing=missing,
        ))

    value_sum = sum(s.current_value for s in per_group)
    for snapshot in per_group:
        snapshot.weight = snapshot.current_value / value_sum if value_sum > 0 else 0.0

    if missing:
        logger.warning(f"Performance as of {as_of} rendered without prices for: {', '.join(sorted(missing))}")

    return AggregationResult(lens=lens, as_of=as_of, per_group=per_group, total=total)


# ============================================================================
# Time series helpers
# ============================================================================

def build_report_dates(start: date, end: date, granularity: str = "monthly") -> List[date]:
    """Report dates between start and end (inclusive).

    - daily: every day
    - monthly: every month end in range, plus end

    Raises:
        ValidationError: If start > end or granularity is unknown
    """
    if start > end:
        raise ValidationError(f"start {start} is after end {end}")

    if granularity == "daily":
        return [start + timedelta(days=i) for i in range((end - start).days + 1)]

    if granularity != "monthly":
        raise ValidationError(f"Unknown granularity {granularity!r} (expected 'daily' or 'monthly')")

    dates = []
    year, month = start.year, start.month
    while True:
        month_end = date(year, month, calendar.monthrange(year, month)[1])
        if month_end >= end:
            break
        dates.append(month_end)
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    dates.append(end)
    return dates


def rebase_series_to_range(points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Express gains relative to the first point of a series.

    Unrealized, realized, income and net gain become changes since the
    first point; range_return_pct is the change in value (holdings + cash)
    since the first point. Input dicts are not modified.
    """
    if not points:
        return []

    base = points[0]
    base_value = base["current_value"] + base.get("cash_balance", 0.0)

    rebased = []
    for point in points:
        item = dict(point)
        for name in ("unrealized_gain", "realized_gain", "income"):
            item[name] = point[name] - base[name]
        # net gain of the range excludes fees charged before it started
        item["net_gain"] = point["net_gain"] - base["net_gain"]

        value = point["current_value"] + point.get("cash_balance", 0.0)
        item["range_return_pct"] = (value / base_value - 1) * 100 if base_value else 0.0
        rebased.append(item)
    return rebased


# ============================================================================
# Database-backed service
# ============================================================================

@dataclass
class PortfolioSnapshot:
    """Everything aggregate() needs, loaded once."""
    transactions: List[TransactionRecord]
    lots: List[TaxLot]
    depletions: List[LotDepletion]
    assets: Dict[str, AssetInfo]
    account_names: Dict[str, str]
    sub_portfolio_names: Dict[str, str]

    def lot_states(self, as_of: date) -> List[LotState]:
        return lot_states_as_of(self.lots, self.depletions, as_of)

    def labels(self, lens: Lens) -> Dict[str, str]:
        if lens == Lens.ASSET:
            return {asset_id: info.ticker for asset_id, info in self.assets.items()}
        if lens == Lens.ACCOUNT:
            return dict(self.account_names)
        if lens == Lens.SUB_PORTFOLIO:
            return dict(self.sub_portfolio_names)
        return {}

    def tickers(self) -> List[str]:
        return sorted({info.ticker.upper() for info in self.assets.values()})


class PerformanceService:
    """Service for building performance reports from the database."""

    def __init__(self, session: AsyncSession, solver: Optional[IRRSolver] = None):
        """Initialize performance service.

        Args:
            session: Database session
            solver: IRR solver (defaults to the shared one)
        """
        self.session = session
        self.prices = PriceService(session)
        self.solver = solver

    @property
    def include_income_in_total(self) -> bool:
        return bool(config_service.get("performance.total_includes_income", False))

    async def load(self, as_of: Optional[date] = None) -> PortfolioSnapshot:
        """Load transactions (up to as_of), lots, depletions and metadata."""
        query = select(Transaction).order_by(Transaction.date, Transaction.id)
        if as_of is not None:
            query = query.where(Transaction.date <= as_of)
        result = await self.session.execute(query)
        transactions = [TransactionRecord.from_model(tx) for tx in result.scalars().all()]

        result = await self.session.execute(select(TaxLot).order_by(TaxLot.id))
        lots = list(result.scalars().all())

        result = await self.session.execute(select(LotDepletion).order_by(LotDepletion.id))
        depletions = list(result.scalars().all())

        result = await self.session.execute(select(Asset))
        assets = {asset.id: AssetInfo.from_model(asset) for asset in result.scalars().all()}

        result = await self.session.execute(select(Account))
        account_names = {account.id: account.name for account in result.scalars().all()}

        result = await self.session.execute(select(SubPortfolio))
        sub_portfolio_names = {sp.id: sp.name for sp in result.scalars().all()}

        return PortfolioSnapshot(
            transactions=transactions,
            lots=lots,
            depletions=depletions,
            assets=assets,
            account_names=account_names,
            sub_portfolio_names=sub_portfolio_names,
        )

    def _aggregate(
        self,
        snapshot: PortfolioSnapshot,
        lens: Lens,
        as_of: date,
        prices: Dict[str, float],
        selected_values: Optional[Sequence[str]] = None,
    ) -> AggregationResult:
        result = aggregate(
            lens,
            snapshot.transactions,
            snapshot.lot_states(as_of),
            prices,
            as_of,
            assets=snapshot.assets,
            labels=snapshot.labels(lens),
            include_income_in_total=self.include_income_in_total,
            solver=self.solver,
        )
        if selected_values:
            wanted = set(selected_values)
            result.per_group = [s for s in result.per_group if s.key in wanted]
        return result

    async def get_performance(
        self,
        lens: Lens = Lens.ASSET,
        as_of: Optional[date] = None,
        selected_values: Optional[Sequence[str]] = None,
    ) -> AggregationResult:
        """Performance per lens value as of a date.

        Args:
            lens: Grouping dimension
            as_of: Valuation date (today when None)
            selected_values: Only report these partition keys (total is
                always portfolio-wide)

        Returns:
            AggregationResult
        """
        as_of = as_of or date.today()
        snapshot = await self.load(as_of)
        prices = await self.prices.latest_prices(snapshot.tickers(), as_of=as_of)

        result = self._aggregate(snapshot, Lens(lens), as_of, prices, selected_values)
        logger.info(
            f"Performance by {Lens(lens).value} as of {as_of}: {len(result.per_group)} group(s), "
            f"total value ${result.total.current_value:.2f}"
        )
        return result

    async def time_series(
        self,
        lens: Lens,
        start: date,
        end: date,
        granularity: str = "monthly",
        selected_values: Optional[Sequence[str]] = None,
        rebase: bool = False,
    ) -> Dict[str, Any]:
        """Performance per lens value at each report date.

        Each point is an independent aggregate() over the ledger replayed to
        that date with prices as of that date.

        Returns:
            {"lens", "granularity", "dates", "series": {key: [point, ...]}}
            where the total is under the "portfolio" key
        """
        lens = Lens(lens)
        dates = build_report_dates(start, end, granularity)
        snapshot = await self.load(end)
        tickers = snapshot.tickers()

        series: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for report_date in dates:
            prices = await self.prices.latest_prices(tickers, as_of=report_date)
            result = self._aggregate(snapshot, lens, report_date, prices, selected_values)

            groups = result.per_group if lens != Lens.TOTAL else []
            for item in groups:
                series[item.key].append({"date": report_date.isoformat(), **item.to_dict()})
            series[TOTAL_KEY].append({"date": report_date.isoformat(), **result.total.to_dict()})

        if rebase:
            series = {key: rebase_series_to_range(points) for key, points in series.items()}

        logger.info(
            f"Time series by {lens.value} {start}..{end} ({granularity}): "
            f"{len(dates)} date(s), {len(series)} series"
        )
        return {
            "lens": lens.value,
            "granularity": granularity,
            "dates": [d.isoformat() for d in dates],
            "series": dict(series),
        }
