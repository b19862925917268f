"""
Query Helpers - פונקציות עזר לשאילתות רשימה (סינון + עימוד).

שימוש:
    stmt = apply_date_range(select(Ticket), Ticket.created_at, date_from, date_to)
    rows, total = await paginate(db, stmt.order_by(Ticket.created_at.desc()), page, limit)
"""
import math
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession


def contains_ci(column, value: str):
    """התאמה חלקית ללא תלות ברישיות"""
    return func.lower(column).contains(value.lower(), autoescape=True)


def apply_date_range(stmt, column, date_from: datetime | None, date_to: datetime | None):
    if date_from is not None:
        stmt = stmt.where(column >= date_from)
    if date_to is not None:
        stmt = stmt.where(column <= date_to)
    return stmt


async def paginate(
    db: AsyncSession,
    stmt,
    page: int,
    limit: int,
) -> tuple[list[Any], int]:
    """שורות העמוד המבוקש + סה"כ שורות שתואמות לסינון (לפני עימוד)."""
    total = await db.scalar(
        select(func.count()).select_from(stmt.order_by(None).subquery())
    )
    result = await db.execute(stmt.offset((page - 1) * limit).limit(limit))
    return list(result.scalars().all()), int(total or 0)


def pagination_meta(page: int, limit: int, total: int) -> dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }
