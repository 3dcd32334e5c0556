from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from automember.approval_engine import ApprovalEngine
from automember.errors import (
    DuplicateCardNumber,
    NotPending,
    OrphanedCustomer,
    RegistryUnavailable,
    StagingNotFound,
    ValidationError,
)
from automember.ingestion import stage_order
from automember.models.registry import Customer, LoyaltyCard
from automember.models.staging import AuditEntry, StagingRecord
from automember.registry_client import RegistryClient
from automember.renewal import add_months, utc_today
from conftest import add_card, add_customer, cards_of, count_rows, membership_item, order_payload

TODAY = date(2025, 2, 1)


async def _stage_one(staging_factory, **item_kwargs) -> str:
    async with staging_factory() as session:
        records = await stage_order(session, order_payload(items=[membership_item(**item_kwargs)]))
    assert len(records) == 1
    return records[0].staging_id


async def _status(engine: ApprovalEngine, staging_id: str) -> str:
    return (await engine.get_detail(staging_id)).staging.status


async def _actions(engine: ApprovalEngine, staging_id: str) -> list[str]:
    return [row.action for row in await engine.audit_trail(staging_id)]


class FlakyRegistry(RegistryClient):
    """Fails the first renewal with a connectivity error, then behaves."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.failures_left = 1

    async def approve_renewal(self, customer_id, **kwargs):
        if self.failures_left:
            self.failures_left -= 1
            raise RegistryUnavailable("Registry unavailable during approve_renewal: timeout")
        return await super().approve_renewal(customer_id, **kwargs)


@pytest.mark.asyncio
async def test_order_to_new_member_end_to_end(staging_factory, registry_factory, engine) -> None:
    staging_id = await _stage_one(staging_factory, term_months="12", total="49.99")
    detail = await engine.get_detail(staging_id)
    assert detail.staging.status == "Pending"
    assert detail.staging.term_months == 12
    assert detail.staging.price_paid == pytest.approx(49.99)

    today = utc_today()
    outcome = await engine.approve(staging_id, create_new=True, actor="ops@example.com")

    assert outcome.new_expiry == add_months(today, 12)
    assert await _status(engine, staging_id) == "Approved"
    trail = await engine.audit_trail(staging_id)
    assert [row.action for row in trail] == ["Upserted"]
    assert trail[0].actor == "ops@example.com"
    assert trail[0].diff_json["customerId"] == outcome.customer_id
    assert trail[0].diff_json["cardNo"] == outcome.card_no
    assert await count_rows(registry_factory, Customer) == 1
    assert await count_rows(registry_factory, LoyaltyCard) == 1


@pytest.mark.asyncio
async def test_renewal_against_existing_customer(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace", email="ada@example.com")
    await add_card(registry_factory, customer, "CSC-2024-000123", date(2025, 3, 1))
    staging_id = await _stage_one(staging_factory)

    detail = await engine.get_detail(staging_id)
    assert [c.customer_id for c in detail.candidates] == [customer]
    assert detail.candidates[0].member_number == "CSC-2024-000123"

    outcome = await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert outcome.start_date == date(2025, 3, 2)
    assert outcome.new_expiry == date(2026, 3, 1)
    assert await _status(engine, staging_id) == "Approved"
    assert await _actions(engine, staging_id) == ["Renewed"]


@pytest.mark.asyncio
async def test_term_months_from_staging_drives_window(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory, term_months="24")

    outcome = await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert outcome.new_expiry == date(2027, 2, 1)


@pytest.mark.asyncio
async def test_second_approval_is_not_pending(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)
    await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    with pytest.raises(NotPending):
        await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)
    with pytest.raises(NotPending):
        await engine.reject(staging_id, reason="too late")

    assert await count_rows(registry_factory, LoyaltyCard) == 1
    assert await _actions(engine, staging_id) == ["Renewed"]


@pytest.mark.asyncio
async def test_reject_is_terminal_and_audited(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    record = await engine.reject(staging_id, reason="duplicate order", actor="ops@example.com")

    assert record.status == "Rejected"
    assert record.notes == "duplicate order"
    trail = await engine.audit_trail(staging_id)
    assert [row.action for row in trail] == ["Rejected"]
    assert trail[0].diff_json == {"reason": "duplicate order"}
    with pytest.raises(NotPending):
        await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)
    assert await count_rows(registry_factory, LoyaltyCard) == 0


@pytest.mark.asyncio
async def test_reject_without_actor_defaults_to_staff(staging_factory, engine) -> None:
    staging_id = await _stage_one(staging_factory)
    await engine.reject(staging_id)
    trail = await engine.audit_trail(staging_id)
    assert trail[0].actor == "staff"
    assert trail[0].diff_json == {"reason": ""}


@pytest.mark.asyncio
async def test_failed_registry_write_keeps_record_pending_and_retry_succeeds(
    staging_factory, registry_factory
) -> None:
    engine = ApprovalEngine(staging_factory, FlakyRegistry(registry_factory))
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    with pytest.raises(RegistryUnavailable):
        await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert await _status(engine, staging_id) == "Pending"
    trail = await engine.audit_trail(staging_id)
    assert [row.action for row in trail] == ["Error"]
    assert trail[0].diff_json["kind"] == "RegistryUnavailable"
    assert await count_rows(registry_factory, LoyaltyCard) == 0

    outcome = await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert outcome.customer_id == customer
    assert await _status(engine, staging_id) == "Approved"
    assert await _actions(engine, staging_id) == ["Error", "Renewed"]


@pytest.mark.asyncio
async def test_duplicate_card_number_leaves_everything_unchanged(staging_factory, registry_factory, engine) -> None:
    owner = await add_customer(registry_factory, first_name="Owner", surname="One")
    await add_card(registry_factory, owner, "TAKEN-1", date(2025, 6, 1))
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    with pytest.raises(DuplicateCardNumber):
        await engine.approve(staging_id, chosen_customer_id=customer, provided_card_no="TAKEN-1", today=TODAY)

    assert await _status(engine, staging_id) == "Pending"
    assert await _actions(engine, staging_id) == ["Error"]
    assert await count_rows(registry_factory, LoyaltyCard) == 1


@pytest.mark.asyncio
async def test_orphaned_customer_is_surfaced_with_its_id(staging_factory, registry_factory) -> None:
    def broken_factory() -> str:
        raise RuntimeError("card numbering offline")

    engine = ApprovalEngine(staging_factory, RegistryClient(registry_factory, card_number_factory=broken_factory))
    staging_id = await _stage_one(staging_factory)

    with pytest.raises(OrphanedCustomer) as excinfo:
        await engine.approve(staging_id, create_new=True, today=TODAY)

    assert await _status(engine, staging_id) == "Pending"
    trail = await engine.audit_trail(staging_id)
    assert [row.action for row in trail] == ["Error"]
    assert trail[0].diff_json["kind"] == "OrphanedCustomer"
    assert trail[0].diff_json["orphanedCustomerId"] == excinfo.value.customer_id

    # The operator retries against the customer that now exists.
    retry = ApprovalEngine(staging_factory, RegistryClient(registry_factory))
    outcome = await retry.approve(staging_id, chosen_customer_id=excinfo.value.customer_id, today=TODAY)
    assert outcome.customer_id == excinfo.value.customer_id
    assert await count_rows(registry_factory, Customer) == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_of_one_record_succeed_once(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    results = await asyncio.gather(
        engine.approve(staging_id, chosen_customer_id=customer, today=TODAY),
        engine.approve(staging_id, chosen_customer_id=customer, today=TODAY),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], NotPending)
    assert await count_rows(registry_factory, LoyaltyCard) == 1
    assert await _actions(engine, staging_id) == ["Renewed"]


@pytest.mark.asyncio
async def test_missing_customer_choice_is_a_validation_error(staging_factory, engine) -> None:
    staging_id = await _stage_one(staging_factory)
    with pytest.raises(ValidationError):
        await engine.approve(staging_id)
    assert await _status(engine, staging_id) == "Pending"
    assert await count_rows(staging_factory, AuditEntry) == 0


@pytest.mark.asyncio
async def test_unknown_staging_record(engine) -> None:
    with pytest.raises(StagingNotFound):
        await engine.approve("missing", create_new=True)
    with pytest.raises(StagingNotFound):
        await engine.reject("missing")
    with pytest.raises(StagingNotFound):
        await engine.get_detail("missing")


@pytest.mark.asyncio
async def test_list_records_filters_by_status(staging_factory, engine) -> None:
    first = await _stage_one(staging_factory)
    second = await _stage_one(staging_factory, product_id=78)
    await engine.reject(first)

    pending = await engine.list_records()
    rejected = await engine.list_records(status="Rejected")

    assert [r.staging_id for r in pending] == [second]
    assert [r.staging_id for r in rejected] == [first]
    with pytest.raises(ValidationError):
        await engine.list_records(status="Bogus")


@pytest.mark.asyncio
async def test_concurrent_approvals_from_two_workers_succeed_once(staging_factory, registry_factory) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)
    first = ApprovalEngine(staging_factory, RegistryClient(registry_factory))
    second = ApprovalEngine(staging_factory, RegistryClient(registry_factory))

    results = await asyncio.gather(
        first.approve(staging_id, chosen_customer_id=customer, today=TODAY),
        second.approve(staging_id, chosen_customer_id=customer, today=TODAY),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], NotPending)
    assert await count_rows(registry_factory, LoyaltyCard) == 1
    assert await _actions(first, staging_id) == ["Renewed"]
    assert await _status(first, staging_id) == "Approved"


class GatedRegistry(RegistryClient):
    """Holds every renewal until the test opens the gate."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def approve_renewal(self, customer_id, **kwargs):
        self.entered.set()
        await self.gate.wait()
        return await super().approve_renewal(customer_id, **kwargs)


@pytest.mark.asyncio
async def test_staging_writes_proceed_while_a_registry_call_is_in_flight(
    staging_factory, registry_factory
) -> None:
    registry = GatedRegistry(registry_factory)
    engine = ApprovalEngine(staging_factory, registry)
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)
    other_id = await _stage_one(staging_factory, product_id=78)

    approval = asyncio.create_task(engine.approve(staging_id, chosen_customer_id=customer, today=TODAY))
    await asyncio.wait_for(registry.entered.wait(), timeout=2)

    async with staging_factory() as session:
        staged = await asyncio.wait_for(
            stage_order(session, order_payload(order_id=2002)),
            timeout=2,
        )
    rejected = await asyncio.wait_for(engine.reject(other_id, reason="duplicate"), timeout=2)
    in_flight = (await engine.get_detail(staging_id)).staging

    registry.gate.set()
    outcome = await asyncio.wait_for(approval, timeout=5)

    assert len(staged) == 1
    assert rejected.status == "Rejected"
    assert in_flight.status == "Pending"
    assert in_flight.to_dict()["approvalInProgress"] is True
    assert outcome.customer_id == customer
    assert await _status(engine, staging_id) == "Approved"
    assert (await engine.get_detail(staging_id)).staging.claim_token is None


@pytest.mark.asyncio
async def test_reject_is_refused_while_another_worker_holds_the_claim(staging_factory, registry_factory) -> None:
    registry = GatedRegistry(registry_factory)
    approving = ApprovalEngine(staging_factory, registry)
    rejecting = ApprovalEngine(staging_factory, RegistryClient(registry_factory))
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    approval = asyncio.create_task(approving.approve(staging_id, chosen_customer_id=customer, today=TODAY))
    await asyncio.wait_for(registry.entered.wait(), timeout=2)

    with pytest.raises(NotPending):
        await rejecting.reject(staging_id, reason="changed mind")

    registry.gate.set()
    await asyncio.wait_for(approval, timeout=5)
    assert await _actions(approving, staging_id) == ["Renewed"]


@pytest.mark.asyncio
async def test_abandoned_claim_expires_and_record_can_be_approved(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)
    async with staging_factory() as session:
        await session.execute(
            update(StagingRecord)
            .where(StagingRecord.staging_id == staging_id)
            .values(claim_token="crashed-worker", claimed_at=datetime.now(timezone.utc) - timedelta(hours=1))
        )
        await session.commit()

    outcome = await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert outcome.customer_id == customer
    assert await _status(engine, staging_id) == "Approved"


class TakeoverRegistry(RegistryClient):
    """Issues the card, but another worker takes the claim over meanwhile."""

    def __init__(self, staging_factory, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._staging_factory = staging_factory

    async def approve_renewal(self, customer_id, **kwargs):
        outcome = await super().approve_renewal(customer_id, **kwargs)
        async with self._staging_factory() as session:
            await session.execute(update(StagingRecord).values(claim_token="other-worker"))
            await session.commit()
        return outcome


@pytest.mark.asyncio
async def test_lost_claim_after_registry_write_names_the_issued_card(staging_factory, registry_factory) -> None:
    engine = ApprovalEngine(staging_factory, TakeoverRegistry(staging_factory, registry_factory))
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)

    with pytest.raises(NotPending):
        await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert await _status(engine, staging_id) == "Pending"
    trail = await engine.audit_trail(staging_id)
    assert [row.action for row in trail] == ["Error"]
    card = (await cards_of(registry_factory, customer))[0]
    assert trail[0].diff_json["kind"] == "NotPending"
    assert trail[0].diff_json["cardNo"] == card.card_no
    assert trail[0].diff_json["customerId"] == customer


@pytest.mark.asyncio
async def test_out_of_range_term_fails_with_validation_kind(staging_factory, registry_factory, engine) -> None:
    customer = await add_customer(registry_factory, first_name="Ada", surname="Lovelace")
    staging_id = await _stage_one(staging_factory)
    async with staging_factory() as session:
        await session.execute(
            update(StagingRecord).where(StagingRecord.staging_id == staging_id).values(term_months=100_000)
        )
        await session.commit()

    with pytest.raises(ValidationError):
        await engine.approve(staging_id, chosen_customer_id=customer, today=TODAY)

    assert await _status(engine, staging_id) == "Pending"
    trail = await engine.audit_trail(staging_id)
    assert trail[-1].diff_json["kind"] == "ValidationError"
    assert await count_rows(registry_factory, LoyaltyCard) == 0
