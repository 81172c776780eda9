"""Rebalancing planner.

Targets are two-level: each sub-portfolio has a target share of the whole
portfolio, and each asset a target share within its sub-portfolio. The
implied overall target of an asset is the product of the two.

Drift is relative to the in-group target:

    drift % = (current in-group % - target in-group %) / target in-group % * 100

An asset whose drift reaches the sub-portfolio's upside threshold is a
SELL, one at or below minus the downside threshold is a BUY, anything in
between is a HOLD. The trade amount returns the asset to its exact target,
or in band mode only to the nearest edge of the threshold band.

plan_rebalance() is pure: it works on an asset-lens AggregationResult and
performs no I/O. RebalancingService loads the inputs and stores targets.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Asset, SubPortfolio, AssetTarget
from .errors import ValidationError, RecordNotFound
from .performance_engine import AggregationResult, Lens, PerformanceService, UNASSIGNED
from .records import AssetInfo

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 5.0


class RebalanceAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class GroupTarget:
    """Rebalancing settings of one sub-portfolio."""
    key: str
    label: str
    target_pct: float = 0.0
    upside_threshold: float = DEFAULT_THRESHOLD
    downside_threshold: float = DEFAULT_THRESHOLD
    band_mode: bool = False

    @classmethod
    def from_model(cls, sub_portfolio: SubPortfolio) -> "GroupTarget":
        return cls(
            key=sub_portfolio.id,
            label=sub_portfolio.name,
            target_pct=sub_portfolio.target_allocation or 0.0,
            upside_threshold=_threshold(sub_portfolio.upside_threshold),
            downside_threshold=_threshold(sub_portfolio.downside_threshold),
            band_mode=bool(sub_portfolio.band_mode),
        )


def _threshold(value: Optional[float]) -> float:
    return DEFAULT_THRESHOLD if value is None else value


@dataclass(frozen=True)
class RebalanceCalculation:
    implied_overall_target: float
    current_in_group_pct: float
    drift_pct: float
    action: RebalanceAction
    amount: float


def calculate_rebalance_action(
    current_value: float,
    total_value: float,
    target_in_group: float,
    group_target_pct: float,
    upside_threshold: float = DEFAULT_THRESHOLD,
    downside_threshold: float = DEFAULT_THRESHOLD,
    band_mode: bool = False,
) -> RebalanceCalculation:
    """Action and trade amount for one asset.

    Args:
        current_value: Market value of the asset
        total_value: Whole portfolio value (holdings + cash)
        target_in_group: Target share (%) of the asset within its group
        group_target_pct: Target share (%) of the group in the portfolio
        upside_threshold: Relative drift (%) that triggers a SELL
        downside_threshold: Relative drift (%) that triggers a BUY
        band_mode: Trade to the band edge instead of the exact target

    Returns:
        RebalanceCalculation
    """
    if current_value < 0 or total_value < 0:
        raise ValidationError("Values must not be negative")
    upside = abs(upside_threshold)
    downside = abs(downside_threshold)

    implied_overall_target = group_target_pct * target_in_group / 100
    # The group is measured against its target size, not its current size
    group_value = total_value * group_target_pct / 100
    current_in_group_pct = current_value / group_value * 100 if group_value > 0 else 0.0
    if target_in_group > 0:
        drift_pct = (current_in_group_pct - target_in_group) / target_in_group * 100
    else:
        drift_pct = 0.0

    action = RebalanceAction.HOLD
    if drift_pct >= upside:
        action = RebalanceAction.SELL
    elif drift_pct <= -downside:
        action = RebalanceAction.BUY

    amount = 0.0
    if action != RebalanceAction.HOLD:
        target_pct = target_in_group
        if band_mode:
            edge = upside if action == RebalanceAction.SELL else -downside
            target_pct = target_in_group * (1 + edge / 100)
        amount = abs(group_value * target_pct / 100 - current_value)

    return RebalanceCalculation(
        implied_overall_target=implied_overall_target,
        current_in_group_pct=current_in_group_pct,
        drift_pct=drift_pct,
        action=action,
        amount=amount,
    )


@dataclass
class FundingSuggestion:
    """Part of a BUY paid for by the proceeds of a SELL."""
    from_asset_id: str
    from_ticker: str
    amount: float


@dataclass
class AssetRebalance:
    asset_id: str
    ticker: str
    sub_portfolio_id: str
    sub_portfolio_label: str
    current_value: float
    current_pct: float
    target_in_group: float
    implied_overall_target: float
    current_in_group_pct: float
    drift_pct: float
    action: RebalanceAction
    amount: float
    funded_by: List[FundingSuggestion] = field(default_factory=list)


@dataclass
class GroupRebalance:
    key: str
    label: str
    current_value: float
    current_pct: float
    target_pct: float
    drift_pct: float        # percentage points, current - target


@dataclass
class RebalancePlan:
    as_of: date
    total_value: float
    cash_balance: float
    groups: List[GroupRebalance]
    assets: List[AssetRebalance]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat()
        for asset in data["assets"]:
            asset["action"] = RebalanceAction(asset["action"]).value
        return data


def plan_rebalance(
    result: AggregationResult,
    assets: Dict[str, AssetInfo],
    groups: Dict[str, GroupTarget],
    asset_targets: Dict[Tuple[str, str], float],
) -> RebalancePlan:
    """Rebalancing actions for every held or targeted asset.

    Args:
        result: Asset-lens aggregation
        assets: Asset metadata by asset_id
        groups: Settings by sub-portfolio id
        asset_targets: In-group target (%) by (asset_id, sub_portfolio_id)

    Returns:
        RebalancePlan; SELL proceeds are matched to BUYs, most underweight
        first, from the most overweight SELL down
    """
    if result.lens != Lens.ASSET:
        raise ValidationError(f"Rebalancing needs an asset-lens report, got {result.lens.value}")

    cash = result.total.cash_balance
    # Negative cash (buys without recorded deposits) does not shrink the base
    total_value = result.total.current_value + max(cash, 0.0)

    planned: List[AssetRebalance] = []
    group_values: Dict[str, float] = {}
    for snapshot in result.per_group:
        info = assets.get(snapshot.key)
        group_key = (info.sub_portfolio_id if info else None) or UNASSIGNED
        group = groups.get(group_key) or GroupTarget(key=group_key, label="Unassigned")
        target_in_group = asset_targets.get((snapshot.key, group_key), 0.0)
        if snapshot.current_value <= 0 and target_in_group <= 0:
            continue

        calc = calculate_rebalance_action(
            snapshot.current_value, total_value, target_in_group, group.target_pct,
            upside_threshold=group.upside_threshold,
            downside_threshold=group.downside_threshold,
            band_mode=group.band_mode,
        )
        group_values[group_key] = group_values.get(group_key, 0.0) + snapshot.current_value
        planned.append(AssetRebalance(
            asset_id=snapshot.key,
            ticker=info.ticker if info else snapshot.label,
            sub_portfolio_id=group_key,
            sub_portfolio_label=group.label,
            current_value=snapshot.current_value,
            current_pct=snapshot.current_value / total_value * 100 if total_value > 0 else 0.0,
            target_in_group=target_in_group,
            implied_overall_target=calc.implied_overall_target,
            current_in_group_pct=calc.current_in_group_pct,
            drift_pct=calc.drift_pct,
            action=calc.action,
            amount=calc.amount,
        ))

    _match_funding(planned)

    group_rows = []
    for key in sorted(group_values, key=lambda k: (groups[k].label if k in groups else "Unassigned", k)):
        group = groups.get(key) or GroupTarget(key=key, label="Unassigned")
        current_pct = group_values[key] / total_value * 100 if total_value > 0 else 0.0
        group_rows.append(GroupRebalance(
            key=key,
            label=group.label,
            current_value=group_values[key],
            current_pct=current_pct,
            target_pct=group.target_pct,
            drift_pct=current_pct - group.target_pct,
        ))

    return RebalancePlan(
        as_of=result.as_of,
        total_value=total_value,
        cash_balance=cash,
        groups=group_rows,
        assets=planned,
    )


def _match_funding(planned: List[AssetRebalance]) -> None:
    sells = sorted(
        (a for a in planned if a.action == RebalanceAction.SELL),
        key=lambda a: -a.drift_pct,
    )
    buys = sorted(
        (a for a in planned if a.action == RebalanceAction.BUY),
        key=lambda a: a.drift_pct,
    )
    left = {a.asset_id: a.amount for a in sells}

    for buy in buys:
        needed = buy.amount
        for sell in sells:
            if needed <= 0:
                break
            take = min(left[sell.asset_id], needed)
            if take <= 0:
                continue
            buy.funded_by.append(FundingSuggestion(sell.asset_id, sell.ticker, take))
            left[sell.asset_id] -= take
            needed -= take


def _check_percentage(name: str, value: float, maximum: Optional[float] = 100.0) -> None:
    if value is None or value < 0 or (maximum is not None and value > maximum):
        bounds = f"between 0 and {maximum:g}" if maximum is not None else "at least 0"
        raise ValidationError(f"{name} must be {bounds}, got {value}")


class RebalancingService:
    """Loads rebalancing inputs and stores allocation targets."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.performance = PerformanceService(session)

    async def get_plan(self, as_of: Optional[date] = None) -> RebalancePlan:
        """Rebalancing plan for the portfolio as of a date (today when None)."""
        result = await self.performance.get_performance(Lens.ASSET, as_of=as_of)

        rows = await self.session.execute(select(Asset))
        assets = {asset.id: AssetInfo.from_model(asset) for asset in rows.scalars().all()}

        rows = await self.session.execute(select(SubPortfolio))
        groups = {sp.id: GroupTarget.from_model(sp) for sp in rows.scalars().all()}

        rows = await self.session.execute(select(AssetTarget))
        targets = {(t.asset_id, t.sub_portfolio_id): t.target_percentage for t in rows.scalars().all()}

        plan = plan_rebalance(result, assets, groups, targets)
        trades = [a for a in plan.assets if a.action != RebalanceAction.HOLD]
        logger.info(
            f"Rebalancing as of {plan.as_of}: {len(trades)} of {len(plan.assets)} asset(s) "
            f"outside their band, portfolio value ${plan.total_value:.2f}"
        )
        return plan

    async def _sub_portfolio(self, sub_portfolio_id: str) -> SubPortfolio:
        sub_portfolio = await self.session.get(SubPortfolio, sub_portfolio_id)
        if sub_portfolio is None:
            raise RecordNotFound(f"Sub-portfolio {sub_portfolio_id} not found")
        return sub_portfolio

    async def set_sub_portfolio_target(self, sub_portfolio_id: str, target_percentage: float) -> SubPortfolio:
        """Set a sub-portfolio's target share of the whole portfolio."""
        _check_percentage("target_percentage", target_percentage)
        sub_portfolio = await self._sub_portfolio(sub_portfolio_id)
        sub_portfolio.target_allocation = target_percentage
        await self.session.commit()

        logger.info(f"Sub-portfolio {sub_portfolio.name} target set to {target_percentage:g}%")
        return sub_portfolio

    async def set_asset_target(
        self,
        asset_id: str,
        sub_portfolio_id: str,
        target_percentage: float,
    ) -> AssetTarget:
        """Create or replace an asset's target share within a sub-portfolio."""
        _check_percentage("target_percentage", target_percentage)
        await self._sub_portfolio(sub_portfolio_id)
        if await self.session.get(Asset, asset_id) is None:
            raise RecordNotFound(f"Asset {asset_id} not found")

        result = await self.session.execute(
            select(AssetTarget).where(
                AssetTarget.asset_id == asset_id,
                AssetTarget.sub_portfolio_id == sub_portfolio_id,
            )
        )
        target = result.scalar_one_or_none()
        if target is None:
            target = AssetTarget(asset_id=asset_id, sub_portfolio_id=sub_portfolio_id)
            self.session.add(target)
        target.target_percentage = target_percentage
        await self.session.commit()

        logger.info(f"Asset {asset_id} target in sub-portfolio {sub_portfolio_id} set to {target_percentage:g}%")
        return target

    async def set_thresholds(
        self,
        sub_portfolio_id: str,
        upside_threshold: float,
        downside_threshold: float,
        band_mode: bool = False,
    ) -> SubPortfolio:
        """Set a sub-portfolio's drift thresholds and trade mode."""
        _check_percentage("upside_threshold", upside_threshold, maximum=None)
        _check_percentage("downside_threshold", downside_threshold, maximum=None)
        sub_portfolio = await self._sub_portfolio(sub_portfolio_id)
        sub_portfolio.upside_threshold = upside_threshold
        sub_portfolio.downside_threshold = downside_threshold
        sub_portfolio.band_mode = band_mode
        await self.session.commit()

        logger.info(
            f"Sub-portfolio {sub_portfolio.name} thresholds set to +{upside_threshold:g}% / "
            f"-{downside_threshold:g}% (band mode {'on' if band_mode else 'off'})"
        )
        return sub_portfolio
