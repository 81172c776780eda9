# API Routers

from . import health, transactions, ledger, prices, performance, rebalancing

__all__ = ["health", "transactions", "ledger", "prices", "performance", "rebalancing"]
