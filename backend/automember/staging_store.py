"""Staging record persistence helpers.

Centralizes reads of ``automember_staging`` and the guarded status
transition: a record only leaves ``Pending`` through ``transition_status``,
whose UPDATE matches on ``status = 'Pending'`` and on the approval claim.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from automember.config import settings
from automember.metrics import STAGING_RECORDS_CREATED_TOTAL, STAGING_TRANSITIONS_TOTAL
from automember.models.staging import StagingRecord, StagingStatus


def status_value(value: StagingStatus | str) -> str:
    if isinstance(value, StagingStatus):
        return value.value
    raw = str(value)
    if raw.startswith("StagingStatus."):
        return StagingStatus[raw.split(".", 1)[1]].value
    return raw


def is_pending(record: StagingRecord) -> bool:
    return status_value(record.status) == StagingStatus.PENDING.value


async def add_staging_batch(session: AsyncSession, records: Sequence[StagingRecord]) -> int:
    """Insert every record of one order in a single transaction, or none."""
    if not records:
        return 0
    async with session.begin():
        session.add_all(records)
    STAGING_RECORDS_CREATED_TOTAL.inc(len(records))
    return len(records)


async def get_staging(session: AsyncSession, staging_id: str) -> StagingRecord | None:
    return (
        await session.execute(select(StagingRecord).where(StagingRecord.staging_id == staging_id))
    ).scalar()


async def list_staging(
    session: AsyncSession,
    *,
    status: StagingStatus | str = StagingStatus.PENDING,
    limit: int = 200,
) -> list[StagingRecord]:
    rows = await session.execute(
        select(StagingRecord)
        .where(StagingRecord.status == status_value(status))
        .order_by(StagingRecord.created_at.desc(), StagingRecord.order_id.desc())
        .limit(limit)
    )
    return list(rows.scalars().all())


def _claim_free(now: datetime, ttl_seconds: int | None = None):
    ttl = settings.APPROVAL_CLAIM_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    return or_(
        StagingRecord.claim_token.is_(None),
        StagingRecord.claimed_at < now - timedelta(seconds=ttl),
    )


async def claim_staging(
    session: AsyncSession,
    *,
    staging_id: str,
    token: str,
    now: datetime | None = None,
    ttl_seconds: int | None = None,
) -> bool:
    """Reserve a Pending record for one approval attempt.

    The claim is committed on its own so no staging write transaction stays
    open while the registry is called. A claim older than the TTL is treated
    as abandoned and can be taken over.
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        update(StagingRecord)
        .where(
            StagingRecord.staging_id == staging_id,
            StagingRecord.status == StagingStatus.PENDING.value,
            _claim_free(now, ttl_seconds),
        )
        .values(claim_token=token, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_claim(session: AsyncSession, *, staging_id: str, token: str) -> bool:
    result = await session.execute(
        update(StagingRecord)
        .where(
            StagingRecord.staging_id == staging_id,
            StagingRecord.claim_token == token,
        )
        .values(claim_token=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_status(
    session: AsyncSession,
    *,
    staging_id: str,
    new_status: StagingStatus,
    notes: str | None = None,
    claim_token: str | None = None,
) -> bool:
    """Compare-and-swap ``Pending`` → ``new_status``.

    With ``claim_token`` the swap only succeeds for the holder of that claim;
    without it, only while nobody holds a live claim. Returns ``True`` when
    this call won the transition. Nothing is committed here; the caller owns
    the transaction.
    """
    now = datetime.now(timezone.utc)
    values: dict = {
        "status": new_status.value,
        "updated_at": now,
        "claim_token": None,
        "claimed_at": None,
    }
    if notes is not None:
        values["notes"] = notes
    guard = (
        StagingRecord.claim_token == claim_token
        if claim_token is not None
        else _claim_free(now)
    )
    result = await session.execute(
        update(StagingRecord)
        .where(
            StagingRecord.staging_id == staging_id,
            StagingRecord.status == StagingStatus.PENDING.value,
            guard,
        )
        .values(**values)
        .execution_options(synchronize_session="fetch")
    )
    won = result.rowcount == 1
    if won:
        STAGING_TRANSITIONS_TOTAL.labels(
            from_status=StagingStatus.PENDING.value,
            to_status=new_status.value,
        ).inc()
    return won
