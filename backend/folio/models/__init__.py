# Database Models

from .database import Base, engine, async_session_maker, get_session, init_db
from .account import Account, SubPortfolio, Asset, AssetTarget
from .asset_price import AssetPrice
from .transaction import Transaction, TransactionType, FundingSource, AUTO_DEPOSIT_NOTE
from .tax_lot import TaxLot, LotDepletion

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "Account",
    "SubPortfolio",
    "Asset",
    "AssetTarget",
    "AssetPrice",
    "Transaction",
    "TransactionType",
    "FundingSource",
    "AUTO_DEPOSIT_NOTE",
    "TaxLot",
    "LotDepletion",
]
