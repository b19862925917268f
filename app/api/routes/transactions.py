"""
Transaction API Routes
"""
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.schemas import (
    BatchSyncRequest,
    TransactionCreate,
    TransactionStatusUpdate,
    history_out,
    ok,
    paginated,
    parse_date_param,
    ticket_out,
    transaction_out,
)
from app.core.exceptions import ValidationException
from app.db.database import get_db
from app.db.models.transaction import TransactionStatus
from app.domain.services.transaction_service import TransactionService

router = APIRouter()


@router.get("", summary="רשימת עסקאות")
async def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    payer_email: Optional[str] = Query(None),
    merchant_email: Optional[str] = Query(None),
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    min_amount: Optional[float] = Query(None, ge=0),
    max_amount: Optional[float] = Query(None, ge=0),
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows, total = await TransactionService(db).list_transactions(
        status=status_filter,
        payer_email=payer_email,
        merchant_email=merchant_email,
        currency=currency,
        min_amount=Decimal(str(min_amount)) if min_amount is not None else None,
        max_amount=Decimal(str(max_amount)) if max_amount is not None else None,
        date_from=parse_date_param(date_from, "date_from"),
        date_to=parse_date_param(date_to, "date_to", end_of_day=True),
        page=page,
        limit=limit,
    )
    return ok(paginated("transactions", [transaction_out(t) for t in rows], page, limit, total))


@router.get("/stats", summary="סטטיסטיקות עסקאות")
async def transaction_stats(db: AsyncSession = Depends(get_db)) -> dict:
    return ok(await TransactionService(db).get_stats())


@router.get("/{transaction_id}", summary="עסקה לפי מזהה חיצוני או פנימי")
async def get_transaction(transaction_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    result = await TransactionService(db).get_transaction(transaction_id)
    return ok({
        "transaction": transaction_out(result["transaction"]),
        "statusHistory": history_out(result["status_history"]),
        "ticket": ticket_out(result["ticket"]),
    })


@router.post("", status_code=status.HTTP_201_CREATED, summary="יצירת עסקה")
async def create_transaction(body: TransactionCreate, db: AsyncSession = Depends(get_db)) -> dict:
    transaction = await TransactionService(db).create_transaction(
        transaction_id=body.transaction_id,
        payer_email=body.payer_email,
        amount=body.amount,
        merchant_email=body.merchant_email,
        currency=body.currency,
        status=body.status,
        payment_method=body.payment_method,
        metadata=body.metadata,
    )
    return ok(transaction_out(transaction), "Transaction created successfully")


@router.put("/{transaction_id}/status", summary="עדכון סטטוס ידני")
async def update_transaction_status(
    transaction_id: str,
    body: TransactionStatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> dict:
    transaction = await TransactionService(db).manual_status_update(
        transaction_id,
        body.status,
        reason=body.reason,
        updated_by=body.updated_by,
    )
    return ok(transaction_out(transaction), "Transaction status updated successfully")


@router.post("/batch-update", summary="סנכרון מרובה מה-API החיצוני")
async def batch_update(body: BatchSyncRequest, db: AsyncSession = Depends(get_db)) -> dict:
    if not body.transaction_ids:
        raise ValidationException("Transaction IDs array is required", field="transaction_ids")

    updated = await TransactionService(db).batch_sync(body.transaction_ids)
    return ok(
        {
            "updated_count": len(updated),
            "transactions": [transaction_out(t) for t in updated],
        },
        f"Updated {len(updated)} transactions",
    )


@router.post("/{transaction_id}/refresh", summary="רענון סטטוס מה-API החיצוני")
async def refresh_transaction(transaction_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    transaction = await TransactionService(db).refresh(transaction_id)
    return ok(transaction_out(transaction), "Transaction status refreshed successfully")
