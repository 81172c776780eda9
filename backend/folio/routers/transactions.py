"""Transaction router.

Recording and deleting go through TransactionRecorderService; a refused
write always answers with state_changed = false.
"""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import get_session, Transaction, TransactionType, FundingSource
from ..services.accounting import TransactionRecorderService
from ..services.errors import (
    ValidationError,
    InsufficientInventory,
    LedgerConflictError,
    TransactionNotFound,
    InvariantViolationError,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# Pydantic schemas
class TransactionCreate(BaseModel):
    """Schema for recording a transaction."""
    account_id: str = Field(..., min_length=1, max_length=36)
    type: TransactionType
    date: date
    asset_id: Optional[str] = Field(default=None, max_length=36)
    quantity: Optional[float] = None
    price_per_unit: Optional[float] = None
    amount: Optional[float] = None
    fees: float = Field(default=0.0, ge=0)
    funding_source: Optional[FundingSource] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class TransactionResponse(BaseModel):
    """Schema for transaction response."""
    id: int
    account_id: str
    asset_id: Optional[str]
    date: date
    type: TransactionType
    quantity: Optional[float]
    price_per_unit: Optional[float]
    amount: float
    fees: float
    funding_source: Optional[FundingSource]
    notes: Optional[str]
    realized_gain: Optional[float]
    related_transaction_id: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


def refused(status_code: int, error: Exception, **extra) -> JSONResponse:
    """Error body for a write that was rolled back."""
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(error), "state_changed": False, **extra},
    )


@router.post("", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def create_transaction(
    payload: TransactionCreate,
    session: AsyncSession = Depends(get_session),
):
    """Record a transaction (BUY creates a lot, SELL depletes lots FIFO)."""
    recorder = TransactionRecorderService(session)
    try:
        tx = await recorder.record_transaction(**payload.model_dump())
    except ValidationError as e:
        return refused(status.HTTP_422_UNPROCESSABLE_ENTITY, e)
    except InsufficientInventory as e:
        return refused(
            status.HTTP_409_CONFLICT, e,
            requested=e.requested,
            available=e.available,
        )
    except LedgerConflictError as e:
        return refused(status.HTTP_409_CONFLICT, e)
    except InvariantViolationError as e:
        return refused(status.HTTP_500_INTERNAL_SERVER_ERROR, e)

    return tx


@router.get("", response_model=List[TransactionResponse])
async def list_transactions(
    account_id: Optional[str] = None,
    asset_id: Optional[str] = None,
    type: Optional[TransactionType] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    limit: int = Query(100, le=1000),
    offset: int = 0,
    session: AsyncSession = Depends(get_session),
):
    """List transactions with filters, most recent first."""
    query = select(Transaction)

    if account_id:
        query = query.where(Transaction.account_id == account_id)
    if asset_id:
        query = query.where(Transaction.asset_id == asset_id)
    if type:
        query = query.where(Transaction.type == type)
    if start:
        query = query.where(Transaction.date >= start)
    if end:
        query = query.where(Transaction.date <= end)

    query = query.order_by(desc(Transaction.date), desc(Transaction.id))
    query = query.limit(limit).offset(offset)

    result = await session.execute(query)
    return result.scalars().all()


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Get one transaction."""
    result = await session.execute(
        select(Transaction).where(Transaction.id == transaction_id)
    )
    tx = result.scalar_one_or_none()
    if not tx:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Transaction {transaction_id} not found",
        )
    return tx


@router.delete("/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_transaction(
    transaction_id: int,
    session: AsyncSession = Depends(get_session),
):
    """Delete a transaction and undo its lot changes."""
    recorder = TransactionRecorderService(session)
    try:
        await recorder.delete_transaction(transaction_id)
    except TransactionNotFound as e:
        return refused(status.HTTP_404_NOT_FOUND, e)
    except LedgerConflictError as e:
        return refused(status.HTTP_409_CONFLICT, e)
    except InvariantViolationError as e:
        return refused(status.HTTP_500_INTERNAL_SERVER_ERROR, e)

    return None
