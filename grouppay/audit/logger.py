"""
Immutable audit trail for group payment operations.

Every workflow step gets an append-only audit log entry with:
  - Order ID (which payment order)
  - Action (what happened)
  - Details (bank status, attempt counts, error messages)
  - Timestamp (UTC)

Entries are never modified or deleted. The DoPayment trail in particular
is what operations uses to prove a batch was executed at most once.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grouppay.models.records import AuditLog

logger = logging.getLogger("grouppay.audit")


async def log_event(
    session: AsyncSession,
    action: str,
    order_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Create an immutable audit log entry.

    Args:
        session: Database session.
        action: What happened (e.g. "order_registered", "execute_attempted").
        order_id: The payment order this event relates to.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    serialized = json.dumps(details, default=str) if details else None
    entry = AuditLog(
        order_id=order_id,
        action=action,
        details=serialized,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | order=%s action=%s | %s",
        order_id or "-",
        action,
        serialized[:200] if serialized else "",
    )
    return entry


async def get_trail(session: AsyncSession, order_id: str) -> list[AuditLog]:
    """All audit entries for an order, oldest first."""
    result = await session.execute(
        select(AuditLog)
        .where(AuditLog.order_id == order_id)
        .order_by(AuditLog.timestamp.asc(), AuditLog.id.asc())
    )
    return list(result.scalars().all())


def append_note(existing_notes: Optional[str], message: str) -> str:
    """Append a timestamped line to an order's running notes."""
    prefix = f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}] "
    new_note = prefix + message
    if not existing_notes:
        return new_note
    return f"{existing_notes}\n{new_note}"
