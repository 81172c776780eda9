# Business Logic Services

from .errors import (
    PortfolioError,
    ValidationError,
    InsufficientInventory,
    NumericNonConvergence,
    InsufficientCashFlowHistory,
    MissingPriceData,
    TransactionNotFound,
    RecordNotFound,
    LedgerConflictError,
    InvariantViolationError,
    LotBoundsError,
    InventoryConservationError,
    RealizedGainMismatchError,
    FIFOOrderError,
)
from .cash_flows import (
    normalize_transaction_flow,
    net_cash_flows_by_date,
    build_cash_flow_series,
    calculate_cash_balances,
)
from .irr_solver import (
    IRRSolver,
    IRRResult,
    calculate_irr,
    get_default_solver,
    configure_default_solver,
)
from .tax_lot_ledger import (
    TaxLotLedger,
    LotState,
    DepletionResult,
    compute_realized_gain,
)
from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
)
from .logging_service import (
    configure_logging,
    LedgerAuditLogger,
    TransactionLogEntry,
    RealizedGainLogEntry,
)
from .ledger_invariants import LedgerInvariantService
from .accounting import (
    TransactionRecorderService,
    FIFOTaxEngine,
    CSVExportService,
    PairLockRegistry,
    pair_locks,
)
from .price_service import PriceService
from .performance_engine import (
    Lens,
    PerformanceSnapshot,
    AggregationResult,
    PerformanceService,
    aggregate,
    build_report_dates,
    rebase_series_to_range,
)
from .rebalancing import (
    RebalanceAction,
    GroupTarget,
    RebalancePlan,
    RebalancingService,
    calculate_rebalance_action,
    plan_rebalance,
)

__all__ = [
    # Errors
    "PortfolioError",
    "ValidationError",
    "InsufficientInventory",
    "NumericNonConvergence",
    "InsufficientCashFlowHistory",
    "MissingPriceData",
    "TransactionNotFound",
    "RecordNotFound",
    "LedgerConflictError",
    "InvariantViolationError",
    "LotBoundsError",
    "InventoryConservationError",
    "RealizedGainMismatchError",
    "FIFOOrderError",
    # Cash flows
    "normalize_transaction_flow",
    "net_cash_flows_by_date",
    "build_cash_flow_series",
    "calculate_cash_balances",
    # IRR
    "IRRSolver",
    "IRRResult",
    "calculate_irr",
    "get_default_solver",
    "configure_default_solver",
    # Tax lots
    "TaxLotLedger",
    "LotState",
    "DepletionResult",
    "compute_realized_gain",
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    # Logging
    "configure_logging",
    "LedgerAuditLogger",
    "TransactionLogEntry",
    "RealizedGainLogEntry",
    # Ledger
    "LedgerInvariantService",
    "TransactionRecorderService",
    "FIFOTaxEngine",
    "CSVExportService",
    "PairLockRegistry",
    "pair_locks",
    # Prices & performance
    "PriceService",
    "Lens",
    "PerformanceSnapshot",
    "AggregationResult",
    "PerformanceService",
    "aggregate",
    "build_report_dates",
    "rebase_series_to_range",
    # Rebalancing
    "RebalanceAction",
    "GroupTarget",
    "RebalancePlan",
    "RebalancingService",
    "calculate_rebalance_action",
    "plan_rebalance",
]
