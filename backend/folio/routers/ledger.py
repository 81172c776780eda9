"""Ledger and accounting API endpoints.

These endpoints provide read-only access to the tax-lot ledger.
All data comes from the authoritative SQLite database.
"""

import csv
import io
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, TaxLot, LotDepletion
from ..services.accounting import CSVExportService, REALIZED_GAIN_COLUMNS
from ..services.errors import InvariantViolationError
from ..services.ledger_invariants import LedgerInvariantService

router = APIRouter(prefix="/ledger", tags=["ledger"])


# =====================================================================
# TAX LOT ENDPOINTS
# =====================================================================

@router.get("/lots")
async def get_tax_lots(
    account_id: Optional[str] = None,
    asset_id: Optional[str] = None,
    open_only: bool = False,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    """Get tax lots in FIFO order.

    Args:
        account_id: Filter by account
        asset_id: Filter by asset
        open_only: Only lots with remaining quantity
        limit: Maximum lots to return
        offset: Pagination offset

    Returns:
        List of tax lots
    """
    query = select(TaxLot)

    if account_id:
        query = query.where(TaxLot.account_id == account_id)
    if asset_id:
        query = query.where(TaxLot.asset_id == asset_id)
    if open_only:
        query = query.where(TaxLot.remaining_quantity > 0)

    query = query.order_by(TaxLot.purchase_date, TaxLot.id)
    query = query.limit(limit).offset(offset)

    result = await session.execute(query)
    lots = result.scalars().all()

    return [lot.to_dict() for lot in lots]


@router.get("/lots/{lot_id}/depletions")
async def get_lot_depletions(
    lot_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Get the depletion history of one lot.

    Returns:
        Lot and its depletions, oldest first
    """
    result = await session.execute(select(TaxLot).where(TaxLot.id == lot_id))
    lot = result.scalar_one_or_none()
    if not lot:
        raise HTTPException(status_code=404, detail="Tax lot not found")

    result = await session.execute(
        select(LotDepletion)
        .where(LotDepletion.tax_lot_id == lot_id)
        .order_by(LotDepletion.depleted_at, LotDepletion.id)
    )
    depletions = result.scalars().all()

    return {
        "lot": lot.to_dict(),
        "depletions": [d.to_dict() for d in depletions],
    }


# =====================================================================
# VALIDATION & EXPORT
# =====================================================================

@router.get("/validate/{account_id}/{asset_id}")
async def validate_pair(
    account_id: str,
    asset_id: str,
    session: AsyncSession = Depends(get_session),
):
    """Run the ledger invariants for one (account, asset) pair.

    Returns:
        Validation result
    """
    validator = LedgerInvariantService(session)
    try:
        await validator.validate_pair(account_id, asset_id)
    except InvariantViolationError as e:
        return {
            "account_id": account_id,
            "asset_id": asset_id,
            "is_valid": False,
            "error": type(e).__name__,
            "detail": str(e),
        }

    return {
        "account_id": account_id,
        "asset_id": asset_id,
        "is_valid": True,
    }


@router.get("/export/realized-gains")
async def export_realized_gains(
    account_id: Optional[str] = None,
    year: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
):
    """Export realized gains (one row per lot depletion) to CSV."""
    if year is not None and (year < 1900 or year > 2100):
        raise HTTPException(status_code=400, detail="Invalid year")

    service = CSVExportService(session)
    rows = await service.realized_gain_rows(account_id=account_id, year=year)

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=REALIZED_GAIN_COLUMNS)
    writer.writeheader()
    writer.writerows(rows)
    output.seek(0)

    filename = f"realized_gains_{year}.csv" if year else "realized_gains.csv"

    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
