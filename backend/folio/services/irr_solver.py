"""Money-weighted return (IRR) solver.

Finds the annual rate r such that

    sum(amount_i / (1 + r) ** t_i) == 0,   t_i = days(date_i - date_0) / 365.25

Newton-Raphson runs first from a ratio-based initial guess; when it does not
converge, a bounded bisection takes over. Both phases have a fixed iteration
budget, so the solver always terminates. A rate that cannot be found is
reported as unavailable, never as 0.

Every lens and the portfolio total use the same solver instance, so bounds,
guesses and iteration counts cannot drift between views.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional, Sequence, Union

from .errors import NumericNonConvergence, InsufficientCashFlowHistory

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365.25


@dataclass
class IRRResult:
    """Solver outcome."""
    rate: float
    method: str        # "newton" or "bisection"
    iterations: int


def _year_fractions(dates: Sequence[Union[date, datetime]]) -> List[float]:
    origin = dates[0]
    fractions = []
    for d in dates:
        delta = d - origin
        fractions.append((delta.days + delta.seconds / 86400.0) / DAYS_PER_YEAR)
    return fractions


def npv(rate: float, amounts: Sequence[float], times: Sequence[float]) -> float:
    """Net present value of dated flows at an annual rate."""
    base = 1.0 + rate
    return sum(cf / base ** t for cf, t in zip(amounts, times))


def npv_derivative(rate: float, amounts: Sequence[float], times: Sequence[float]) -> float:
    """d(NPV)/d(rate)."""
    base = 1.0 + rate
    return sum(-t * cf / base ** (t + 1.0) for cf, t in zip(amounts, times))


class IRRSolver:
    """Bounded Newton-Raphson + bisection IRR solver."""

    DERIVATIVE_EPSILON = 1e-12

    def __init__(
        self,
        max_newton_iterations: int = 100,
        max_bisection_iterations: int = 200,
        tolerance: float = 1e-10,
        lower_bound: float = -0.99,
        upper_bound: float = 20.0,
        fallback_guess: float = 0.10,
    ):
        """Initialize solver.

        Args:
            max_newton_iterations: Newton phase budget
            max_bisection_iterations: Bisection phase budget
            tolerance: Convergence threshold on |NPV| and on step size
            lower_bound: Lowest plausible rate (must be > -1)
            upper_bound: Highest plausible rate
            fallback_guess: Initial guess when the ratio guess is unusable
        """
        if lower_bound <= -1.0:
            raise ValueError("lower_bound must be greater than -1")
        if upper_bound <= lower_bound:
            raise ValueError("upper_bound must be greater than lower_bound")

        self.max_newton_iterations = max_newton_iterations
        self.max_bisection_iterations = max_bisection_iterations
        self.tolerance = tolerance
        self.lower_bound = lower_bound
        self.upper_bound = upper_bound
        self.fallback_guess = fallback_guess

    def initial_guess(self, amounts: Sequence[float], times: Sequence[float]) -> float:
        """(sum of inflows / sum of outflows) ** (1 / span) - 1, or the fallback."""
        inflows = sum(a for a in amounts if a > 0)
        outflows = -sum(a for a in amounts if a < 0)
        span = times[-1] if times else 0.0

        if outflows <= 0 or span <= 0:
            return self.fallback_guess

        ratio = inflows / outflows
        if ratio <= 0 or not math.isfinite(ratio):
            return self.fallback_guess

        try:
            guess = ratio ** (1.0 / span) - 1.0
        except OverflowError:
            return self.fallback_guess

        if not math.isfinite(guess) or not (self.lower_bound < guess < self.upper_bound):
            return self.fallback_guess
        return guess

    def solve(
        self,
        dates: Sequence[Union[date, datetime]],
        amounts: Sequence[float],
    ) -> IRRResult:
        """Solve for the annualized IRR of a netted, chronological series.

        Args:
            dates: Strictly increasing dates; dates[0] is t=0
            amounts: Signed flow per date

        Returns:
            IRRResult

        Raises:
            InsufficientCashFlowHistory: Fewer than two dated flows, or no sign change
            NumericNonConvergence: Neither phase converged
        """
        if len(dates) != len(amounts):
            raise ValueError("dates and amounts must have the same length")
        if len(dates) < 2 or len(set(dates)) < 2:
            raise InsufficientCashFlowHistory(
                f"IRR needs at least two distinct dates, got {len(set(dates))}"
            )
        if not any(a > 0 for a in amounts) or not any(a < 0 for a in amounts):
            raise InsufficientCashFlowHistory("IRR needs both inflows and outflows")

        times = _year_fractions(dates)

        result = self._newton(amounts, times)
        if result is not None:
            return result

        result = self._bisection(amounts, times)
        if result is not None:
            return result

        raise NumericNonConvergence(
            f"IRR did not converge within [{self.lower_bound}, {self.upper_bound}] "
            f"after {self.max_newton_iterations} Newton and "
            f"{self.max_bisection_iterations} bisection iterations"
        )

    def _newton(self, amounts: Sequence[float], times: Sequence[float]) -> Optional[IRRResult]:
        rate = self.initial_guess(amounts, times)

        for iteration in range(1, self.max_newton_iterations + 1):
            try:
                value = npv(rate, amounts, times)
                slope = npv_derivative(rate, amounts, times)
            except (OverflowError, ZeroDivisionError):
                logger.debug(f"Newton overflow at rate={rate}")
                return None

            if abs(value) < self.tolerance:
                return IRRResult(rate=rate, method="newton", iterations=iteration)

            if abs(slope) < self.DERIVATIVE_EPSILON:
                logger.debug(f"Newton aborted: flat derivative at rate={rate}")
                return None

            step = value / slope
            rate -= step

            if not math.isfinite(rate) or not (self.lower_bound < rate < self.upper_bound):
                logger.debug(f"Newton left the plausible band: rate={rate}")
                return None

            if abs(step) < self.tolerance:
                return IRRResult(rate=rate, method="newton", iterations=iteration)

        logger.debug(f"Newton exhausted {self.max_newton_iterations} iterations")
        return None

    def _bisection(self, amounts: Sequence[float], times: Sequence[float]) -> Optional[IRRResult]:
        low, high = self.lower_bound, self.upper_bound
        try:
            value_low = npv(low, amounts, times)
            value_high = npv(high, amounts, times)
        except (OverflowError, ZeroDivisionError):
            return None

        if value_low == 0:
            return IRRResult(rate=low, method="bisection", iterations=0)
        if value_high == 0:
            return IRRResult(rate=high, method="bisection", iterations=0)
        if (value_low > 0) == (value_high > 0):
            logger.debug("Bisection skipped: NPV has no sign change over the bracket")
            return None

        for iteration in range(1, self.max_bisection_iterations + 1):
            mid = (low + high) / 2.0
            value_mid = npv(mid, amounts, times)

            if abs(value_mid) < self.tolerance or (high - low) / 2.0 < self.tolerance:
                return IRRResult(rate=mid, method="bisection", iterations=iteration)

            if (value_mid > 0) == (value_low > 0):
                low, value_low = mid, value_mid
            else:
                high = mid

        logger.debug(f"Bisection exhausted {self.max_bisection_iterations} iterations")
        return None


_default_solver = IRRSolver()


def get_default_solver() -> IRRSolver:
    """Shared solver used by every lens and the portfolio total."""
    return _default_solver


def configure_default_solver(**settings) -> IRRSolver:
    """Replace the shared solver (called once at startup from config)."""
    global _default_solver
    _default_solver = IRRSolver(**settings)
    logger.info(f"IRR solver configured: {settings}")
    return _default_solver


def calculate_irr(
    dates: Sequence[Union[date, datetime]],
    amounts: Sequence[float],
    solver: Optional[IRRSolver] = None,
) -> Optional[float]:
    """Annualized IRR as a decimal, or None when unavailable.

    Args:
        dates: Netted, strictly increasing dates
        amounts: Netted flows
        solver: Solver to use (defaults to the shared one)

    Returns:
        Rate (0.10 == 10%) or None
    """
    solver = solver or get_default_solver()
    try:
        return solver.solve(dates, amounts).rate
    except NumericNonConvergence as e:
        logger.debug(f"IRR unavailable: {e}")
        return None
