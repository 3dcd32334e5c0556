"""Approval engine: moves staging records out of Pending.

``Pending → Approved`` commits a renewal or a new enrollment to the registry;
``Pending → Rejected`` touches nothing outside the staging store.

An approval runs in three short staging transactions so the staging store is
never write-locked across a registry round trip:

1. claim: stamp the Pending row with a claim token and commit;
2. call the registry with no staging transaction open;
3. finish: swap ``Pending → Approved`` for the claim holder and append the
   audit entry in one transaction. A failed registry call instead releases
   the claim, leaves the record Pending and appends an ``Error`` entry.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automember.audit_log import DEFAULT_ACTOR, append_audit, list_audit
from automember.candidate_matcher import Candidate, MatchCriteria, find_candidates
from automember.config import settings
from automember.errors import (
    AutoMemberError,
    NotPending,
    StagingNotFound,
    ValidationError,
)
from automember.locks import KeyedLocks
from automember.metrics import APPROVALS_TOTAL
from automember.models.staging import AuditAction, AuditEntry, StagingRecord, StagingStatus
from automember.registry_client import NewCustomer, RegistryClient, RenewalOutcome
from automember.staging_store import (
    claim_staging,
    get_staging,
    is_pending,
    list_staging,
    release_claim,
    status_value,
    transition_status,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StagingDetail:
    staging: StagingRecord
    candidates: list[Candidate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "staging": self.staging.to_dict(),
            "candidates": [c.to_dict() for c in self.candidates],
        }


class ApprovalEngine:
    def __init__(
        self,
        staging_session_factory: async_sessionmaker[AsyncSession],
        registry: RegistryClient,
        *,
        candidate_limit: int | None = None,
    ) -> None:
        self._staging_session_factory = staging_session_factory
        self._registry = registry
        self._candidate_limit = candidate_limit or settings.CANDIDATE_LIMIT
        self._staging_locks = KeyedLocks()

    # ── Operator queries ──

    async def list_records(
        self,
        *,
        status: StagingStatus | str = StagingStatus.PENDING,
        limit: int | None = None,
    ) -> list[StagingRecord]:
        wanted = status_value(status)
        if wanted not in {s.value for s in StagingStatus}:
            raise ValidationError(f"Unknown staging status '{status}'")
        limit = max(1, min(int(limit or settings.STAGING_LIST_MAX), settings.STAGING_LIST_MAX))
        async with self._staging_session_factory() as session:
            return await list_staging(session, status=wanted, limit=limit)

    async def get_detail(self, staging_id: str) -> StagingDetail:
        async with self._staging_session_factory() as session:
            record = await get_staging(session, staging_id)
        if record is None:
            raise StagingNotFound(staging_id)
        candidates = await find_candidates(
            self._registry,
            MatchCriteria.from_staging(record),
            limit=self._candidate_limit,
        )
        return StagingDetail(staging=record, candidates=candidates)

    async def audit_trail(self, staging_id: str) -> list[AuditEntry]:
        async with self._staging_session_factory() as session:
            return await list_audit(session, staging_id)

    # ── Transitions ──

    async def approve(
        self,
        staging_id: str,
        *,
        chosen_customer_id: int | None = None,
        create_new: bool = False,
        provided_card_no: str | None = None,
        actor: str | None = None,
        today: date | None = None,
    ) -> RenewalOutcome:
        """Approve a Pending record against an existing or a new customer."""
        if not create_new and chosen_customer_id is None:
            raise ValidationError("chosenCustomerId required (or set createNew)")
        if not create_new:
            try:
                chosen_customer_id = int(chosen_customer_id)
            except (TypeError, ValueError):
                raise ValidationError(f"chosenCustomerId must be an integer, got {chosen_customer_id!r}")
        path = "create_new" if create_new else "renewal"
        actor = actor or DEFAULT_ACTOR

        async with self._staging_locks.hold(staging_id):
            token = str(uuid.uuid4())
            record = await self._claim(staging_id, token)
            try:
                outcome = await self._commit_to_registry(
                    record,
                    chosen_customer_id=chosen_customer_id,
                    create_new=create_new,
                    provided_card_no=provided_card_no,
                    today=today,
                )
            except Exception as exc:
                await self._record_error(staging_id, actor, exc, path=path, token=token)
                APPROVALS_TOTAL.labels(path=path, outcome=getattr(exc, "kind", "Error")).inc()
                raise
            await self._finish(staging_id, token, actor, outcome, path=path, create_new=create_new)

        APPROVALS_TOTAL.labels(path=path, outcome="Approved").inc()
        logger.info(
            "Staging %s approved by %s: customer=%s card=%s expiry=%s",
            staging_id,
            actor,
            outcome.customer_id,
            outcome.card_no,
            outcome.new_expiry.isoformat(),
        )
        return outcome

    async def reject(
        self,
        staging_id: str,
        *,
        reason: str | None = None,
        actor: str | None = None,
    ) -> StagingRecord:
        actor = actor or DEFAULT_ACTOR
        async with self._staging_locks.hold(staging_id):
            async with self._staging_session_factory() as session:
                record = await self._pending_record(session, staging_id)
                if not await transition_status(
                    session,
                    staging_id=staging_id,
                    new_status=StagingStatus.REJECTED,
                    notes=(reason or "").strip() or None,
                ):
                    await session.rollback()
                    raise NotPending(staging_id, status_value(record.status))
                append_audit(
                    session,
                    staging_id=staging_id,
                    action=AuditAction.REJECTED,
                    actor=actor,
                    diff={"reason": (reason or "").strip()},
                )
                await session.commit()
        logger.info("Staging %s rejected by %s", staging_id, actor)
        return record

    # ── Internals ──

    @staticmethod
    async def _pending_record(session: AsyncSession, staging_id: str) -> StagingRecord:
        record = await get_staging(session, staging_id)
        if record is None:
            raise StagingNotFound(staging_id)
        if not is_pending(record):
            raise NotPending(staging_id, status_value(record.status))
        return record

    async def _claim(self, staging_id: str, token: str) -> StagingRecord:
        async with self._staging_session_factory() as session:
            record = await self._pending_record(session, staging_id)
            if not await claim_staging(session, staging_id=staging_id, token=token):
                await session.rollback()
                # Another worker is mid-approval, or just finished.
                raise NotPending(staging_id, status_value(record.status))
            await session.commit()
        return record

    async def _finish(
        self,
        staging_id: str,
        token: str,
        actor: str,
        outcome: RenewalOutcome,
        *,
        path: str,
        create_new: bool,
    ) -> None:
        issued = outcome.to_dict()
        async with self._staging_session_factory() as session:
            won = await transition_status(
                session,
                staging_id=staging_id,
                new_status=StagingStatus.APPROVED,
                claim_token=token,
            )
            if not won:
                await session.rollback()
                exc = NotPending(staging_id)
                # The registry already holds the card; name it for reconciliation.
                await self._record_error(staging_id, actor, exc, path=path, extra=issued)
                APPROVALS_TOTAL.labels(path=path, outcome=exc.kind).inc()
                raise exc
            append_audit(
                session,
                staging_id=staging_id,
                action=AuditAction.UPSERTED if create_new else AuditAction.RENEWED,
                actor=actor,
                diff=issued,
            )
            try:
                await session.commit()
            except Exception:
                logger.exception(
                    "Card %s issued to customer %s but staging %s could not be marked Approved",
                    outcome.card_no,
                    outcome.customer_id,
                    staging_id,
                )
                raise

    async def _commit_to_registry(
        self,
        record: StagingRecord,
        *,
        chosen_customer_id: int | None,
        create_new: bool,
        provided_card_no: str | None,
        today: date | None,
    ) -> RenewalOutcome:
        term_months = int(record.term_months or settings.DEFAULT_TERM_MONTHS)
        if create_new:
            return await self._registry.create_customer_and_approve(
                NewCustomer(
                    first_name=record.first_name,
                    last_name=record.last_name,
                    email=record.email,
                    phone=record.phone,
                    dob=record.dob,
                ),
                term_months=term_months,
                provided_card_no=provided_card_no,
                today=today,
            )
        return await self._registry.approve_renewal(
            int(chosen_customer_id),
            term_months=term_months,
            provided_card_no=provided_card_no,
            today=today,
        )

    async def _record_error(
        self,
        staging_id: str,
        actor: str,
        exc: Exception,
        *,
        path: str,
        token: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if isinstance(exc, AutoMemberError):
            diff = {"path": path, **exc.to_dict()}
        else:
            diff = {"path": path, "error": str(exc), "kind": type(exc).__name__}
        if extra:
            diff.update(extra)
        logger.warning("Approval of staging %s failed: %s", staging_id, diff)
        async with self._staging_session_factory() as session:
            if token is not None:
                await release_claim(session, staging_id=staging_id, token=token)
            append_audit(
                session,
                staging_id=staging_id,
                action=AuditAction.ERROR,
                actor=actor,
                diff=diff,
            )
            await session.commit()
