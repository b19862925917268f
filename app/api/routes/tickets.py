"""
Ticket API Routes
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.routes.schemas import (
    TicketCreate,
    TicketUpdate,
    history_out,
    ok,
    paginated,
    parse_date_param,
    ticket_out,
    transaction_out,
)
from app.db.database import get_db
from app.db.models.ticket import TicketPriority, TicketStatus
from app.domain.services.ticket_service import TicketService

router = APIRouter()


@router.get("", summary="רשימת פניות")
async def list_tickets(
    status_filter: Optional[TicketStatus] = Query(None, alias="status"),
    priority: Optional[TicketPriority] = Query(None),
    customer_email: Optional[str] = Query(None),
    merchant_email: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    transaction_id: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, description="YYYY-MM-DD"),
    date_to: Optional[str] = Query(None, description="YYYY-MM-DD"),
    search: Optional[str] = Query(None, max_length=200),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """Filtered, paginated ticket list, newest first"""
    rows, total = await TicketService(db).list_tickets(
        status=status_filter,
        priority=priority,
        customer_email=customer_email,
        merchant_email=merchant_email,
        assigned_to=assigned_to,
        transaction_id=transaction_id,
        date_from=parse_date_param(date_from, "date_from"),
        date_to=parse_date_param(date_to, "date_to", end_of_day=True),
        search=search,
        page=page,
        limit=limit,
    )
    return ok(paginated("tickets", [ticket_out(t) for t in rows], page, limit, total))


@router.get("/stats", summary="סטטיסטיקות פניות")
async def ticket_stats(db: AsyncSession = Depends(get_db)) -> dict:
    return ok(await TicketService(db).get_stats())


@router.get("/{ticket_id}", summary="פנייה לפי מזהה או מספר פנייה")
async def get_ticket(ticket_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    result = await TicketService(db).get_ticket(ticket_id)
    return ok({
        "ticket": ticket_out(result["ticket"]),
        "statusHistory": history_out(result["status_history"]),
        "transaction": transaction_out(result["transaction"]),
    })


@router.post("", status_code=status.HTTP_201_CREATED, summary="יצירת פנייה")
async def create_ticket(body: TicketCreate, db: AsyncSession = Depends(get_db)) -> dict:
    ticket = await TicketService(db).create_ticket(
        customer_email=body.customer_email,
        subject=body.subject,
        description=body.description,
        priority=body.priority or TicketPriority.MEDIUM,
        transaction_id=body.transaction_id,
        merchant_email=body.merchant_email,
        tags=body.tags,
        metadata=body.metadata,
    )
    return ok(ticket_out(ticket), "Ticket created successfully")


@router.put("/{ticket_id}", summary="עדכון פנייה")
async def update_ticket(
    ticket_id: str,
    body: TicketUpdate,
    db: AsyncSession = Depends(get_db),
) -> dict:
    ticket = await TicketService(db).update_ticket(
        ticket_id,
        status=body.status,
        priority=body.priority,
        assigned_to=body.assigned_to,
        tags=body.tags,
        metadata=body.metadata,
        resolution=body.resolution,
        updated_by=body.updated_by,
    )
    return ok(ticket_out(ticket), "Ticket updated successfully")


@router.delete("/{ticket_id}", summary="סגירת פנייה (מחיקה רכה)")
async def close_ticket(ticket_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    ticket = await TicketService(db).close_ticket(ticket_id)
    return ok(ticket_out(ticket), "Ticket closed successfully")
