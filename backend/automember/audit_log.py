"""Append-only audit trail for staging records."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from automember.metrics import AUDIT_ENTRIES_TOTAL
from automember.models.staging import AuditAction, AuditEntry

DEFAULT_ACTOR = "staff"


def append_audit(
    session: AsyncSession,
    *,
    staging_id: str,
    action: AuditAction,
    actor: str | None = None,
    diff: dict[str, Any] | None = None,
) -> AuditEntry:
    """Stage an audit row on ``session``; committed with the caller's transaction."""
    row = AuditEntry(
        staging_id=staging_id,
        action=action.value,
        actor=(actor or "").strip() or DEFAULT_ACTOR,
        diff_json=diff,
        created_at=datetime.now(timezone.utc),
    )
    session.add(row)
    AUDIT_ENTRIES_TOTAL.labels(action=action.value).inc()
    return row


async def list_audit(session: AsyncSession, staging_id: str, *, limit: int = 100) -> list[AuditEntry]:
    rows = await session.execute(
        select(AuditEntry)
        .where(AuditEntry.staging_id == staging_id)
        .order_by(AuditEntry.audit_id.asc())
        .limit(limit)
    )
    return list(rows.scalars().all())
