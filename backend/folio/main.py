"""Folio FastAPI Application.

Portfolio ledger (FIFO tax lots) and performance reports (gains, IRR)
grouped by account, asset, sub-portfolio or asset tag.
"""

import sys
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .models import init_db
from .routers import health, transactions, ledger, prices, performance, rebalancing
from .services.config import config_service, ConfigValidationException
from .services.irr_solver import configure_default_solver
from .services.logging_service import configure_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        print(f"FATAL: {e}")
        print("Server cannot start with invalid configuration.")
        sys.exit(1)

    configure_logging(
        config_service.get("logging.level", "INFO"),
        config_service.get("logging.format"),
    )
    logger.info("Configuration validated successfully")

    # One solver for every lens and the portfolio total
    configure_default_solver(**config_service.irr_settings())

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutdown complete")


app = FastAPI(
    title="Folio API",
    description="Portfolio ledger and performance API",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(transactions.router, prefix="/api/transactions", tags=["Transactions"])
app.include_router(ledger.router, prefix="/api", tags=["Ledger"])
app.include_router(prices.router, prefix="/api/prices", tags=["Prices"])
app.include_router(performance.router, prefix="/api/performance", tags=["Performance"])
app.include_router(rebalancing.router, prefix="/api/rebalancing", tags=["Rebalancing"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "Folio API", "docs": "/docs"}
