"""Cash-flow normalization, netting and cash balances.

CRITICAL: This module is the ONLY place where transaction sign logic lives.
Every lens, the portfolio total and the cash balance report go through it,
so two views of the same transactions can never disagree on direction.
"""

import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..models import TransactionType, FundingSource
from .errors import ValidationError

logger = logging.getLogger(__name__)


# Sign applied to abs(amount) when the transaction is seen as an investor
# cash flow: money going into the investment is negative.
FLOW_SIGNS: Dict[TransactionType, int] = {
    TransactionType.DEPOSIT: -1,
    TransactionType.WITHDRAWAL: 1,
    TransactionType.DIVIDEND: 1,
    TransactionType.INTEREST: 1,
    TransactionType.BUY: -1,
    TransactionType.SELL: 1,
}

# Effect of each transaction type on the account's cash balance.
# BUY depends on the funding source and is handled separately.
CASH_SIGNS: Dict[TransactionType, int] = {
    TransactionType.DEPOSIT: 1,
    TransactionType.WITHDRAWAL: -1,
    TransactionType.DIVIDEND: 1,
    TransactionType.INTEREST: 1,
    TransactionType.BUY: -1,
    TransactionType.SELL: 1,
}


DateLike = Union[date, datetime]


def normalize_transaction_flow(tx) -> float:
    """Map one transaction to a signed cash flow for a return calculation.

    Result is ``sign * abs(amount) - abs(fees)``: fees always reduce the
    flow, whatever the direction.

    Args:
        tx: Any object with ``type``, ``amount`` and ``fees`` attributes

    Returns:
        Signed flow (negative = money invested)

    Raises:
        ValidationError: If the transaction type has no flow mapping
    """
    try:
        sign = FLOW_SIGNS[TransactionType(tx.type)]
    except (KeyError, ValueError):
        raise ValidationError(f"No cash-flow mapping for transaction type {tx.type!r}")

    amount = abs(float(tx.amount or 0.0))
    fees = abs(float(tx.fees or 0.0))
    return sign * amount - fees


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def net_cash_flows_by_date(
    flows: Sequence[float],
    dates: Sequence[DateLike],
) -> Tuple[List[float], List[date]]:
    """Sum same-day flows into one chronological series.

    Time of day is ignored. The returned dates are strictly increasing.

    Args:
        flows: Signed flows
        dates: Date (or datetime) of each flow

    Returns:
        (net_flows, net_dates)
    """
    if len(flows) != len(dates):
        raise ValueError(
            f"flows and dates must have the same length ({len(flows)} != {len(dates)})"
        )

    by_day: Dict[date, float] = defaultdict(float)
    for flow, when in zip(flows, dates):
        by_day[_as_date(when)] += flow

    net_dates = sorted(by_day)
    net_flows = [by_day[d] for d in net_dates]
    return net_flows, net_dates


def build_cash_flow_series(
    transactions: Iterable,
    terminal_value: float = 0.0,
    as_of: Optional[date] = None,
) -> Tuple[List[float], List[date]]:
    """Normalize then net a group of transactions.

    A positive terminal_value is added as an inflow dated as_of (the
    value still held, as if liquidated that day).
    """
    flows: List[float] = []
    dates: List[date] = []
    for tx in transactions:
        flows.append(normalize_transaction_flow(tx))
        dates.append(tx.date)
    if terminal_value > 0:
        if as_of is None:
            raise ValueError("as_of is required with a terminal value")
        flows.append(terminal_value)
        dates.append(as_of)
    return net_cash_flows_by_date(flows, dates)


def cash_balance_delta(tx) -> float:
    """Change in the account's cash balance caused by one transaction.

    - BUY funded from cash: -(amount + fees); externally funded BUY: 0
    - SELL: amount - fees
    - DIVIDEND / INTEREST / DEPOSIT: +amount
    - WITHDRAWAL: -amount
    - Auto-deposits for external buys: 0 (the money went straight into the asset)
    """
    tx_type = TransactionType(tx.type)
    try:
        sign = CASH_SIGNS[tx_type]
    except KeyError:
        raise ValidationError(f"No cash-balance mapping for transaction type {tx.type!r}")

    if getattr(tx, "is_auto_deposit", False):
        return 0.0

    amount = abs(float(tx.amount or 0.0))
    fees = abs(float(tx.fees or 0.0))

    if tx_type == TransactionType.BUY:
        if tx.funding_source == FundingSource.CASH:
            return -(amount + fees)
        return 0.0
    if tx_type == TransactionType.SELL:
        return amount - fees
    return sign * amount


def calculate_cash_balances(transactions: Iterable) -> Dict[str, float]:
    """Cash balance per account, derived from the transaction stream.

    Args:
        transactions: Transactions (any order)

    Returns:
        Mapping of account_id to cash balance
    """
    balances: Dict[str, float] = defaultdict(float)
    for tx in transactions:
        balances[tx.account_id] += cash_balance_delta(tx)

    for account_id, balance in balances.items():
        if balance < -1e-9:
            logger.debug(f"Account {account_id}: negative cash balance {balance:.2f}")

    return dict(balances)
