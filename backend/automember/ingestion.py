"""Order ingestion: one Pending staging record per membership line item."""
from __future__ import annotations

import json
import logging
import math
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from automember.config import settings
from automember.errors import ValidationError
from automember.models.staging import StagingRecord, StagingStatus
from automember.schemas.order import LineItem, OrderEvent
from automember.staging_store import add_staging_batch

logger = logging.getLogger(__name__)

_DOB_KEYS = ("date_of_birth", "dob")
_MEMBER_HINT_KEYS = ("member_number", "card_no")


def parse_order(payload: Any) -> OrderEvent:
    """Validate a decoded webhook body; raw ``bytes``/``str`` are decoded first."""
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Order payload is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Order payload must be a JSON object")
    try:
        return OrderEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Malformed order payload",
            errors=[
                {"loc": list(err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ],
        ) from exc


def is_membership_item(
    item: LineItem,
    *,
    slugs: list[str] | None = None,
    category_ids: list[int] | None = None,
) -> bool:
    wanted = {s.strip().lower() for s in (settings.MEMBERSHIP_CATEGORY_SLUGS if slugs is None else slugs)}
    ids = set(settings.MEMBERSHIP_CATEGORY_IDS if category_ids is None else category_ids)
    for category in item.categories:
        if category.id is not None and category.id in ids:
            return True
        for label in (category.slug, category.name):
            if label and label.strip().lower() in wanted:
                return True
    return False


def term_months_of(item: LineItem, default: int | None = None) -> int:
    """Membership term from item metadata; anything outside 1..MAX_TERM_MONTHS falls back."""
    default = default or settings.DEFAULT_TERM_MONTHS
    raw = item.meta("term_months")
    try:
        months = int(float(str(raw).strip()))
    except (TypeError, ValueError, OverflowError):
        return default
    return months if 0 < months <= settings.MAX_TERM_MONTHS else default


def price_of(item: LineItem) -> float:
    try:
        price = float(item.total)
    except (TypeError, ValueError):
        return 0.0
    return price if math.isfinite(price) else 0.0


def _parse_dob(value: Any) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _blank_to_none(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def build_staging_records(
    order: OrderEvent,
    *,
    now: datetime | None = None,
    id_factory: Callable[[], str] | None = None,
) -> list[StagingRecord]:
    now = now or datetime.now(timezone.utc)
    id_factory = id_factory or (lambda: str(uuid.uuid4()))
    created = order.date_created_gmt or now
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)

    billing = order.billing
    order_dob = _parse_dob(next((order.meta(k) for k in _DOB_KEYS if order.meta(k)), None))
    renewal_guess = any(order.meta(k) for k in _MEMBER_HINT_KEYS)

    records: list[StagingRecord] = []
    for item in order.line_items:
        if not is_membership_item(item):
            continue
        item_dob = _parse_dob(next((item.meta(k) for k in _DOB_KEYS if item.meta(k)), None))
        records.append(
            StagingRecord(
                staging_id=id_factory(),
                order_id=order.id,
                order_created_at=created,
                first_name=(billing.first_name or "").strip(),
                last_name=(billing.last_name or "").strip(),
                email=_blank_to_none(billing.email),
                phone=_blank_to_none(billing.phone),
                dob=item_dob or order_dob,
                address_line1=_blank_to_none(billing.address_1),
                address_line2=_blank_to_none(billing.address_2),
                city=_blank_to_none(billing.city),
                postcode=_blank_to_none(billing.postcode),
                membership_product_id=item.product_id,
                membership_product_name=item.name or "",
                term_months=term_months_of(item),
                price_paid=price_of(item),
                is_renewal_guess=renewal_guess,
                status=StagingStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
        )
    return records


async def stage_order(
    session: AsyncSession,
    payload: Any,
    *,
    now: datetime | None = None,
    id_factory: Callable[[], str] | None = None,
) -> list[StagingRecord]:
    """Stage every membership line item of one order atomically.

    Raises ``ValidationError`` for a malformed payload; nothing is written.
    """
    order = parse_order(payload)
    records = build_staging_records(order, now=now, id_factory=id_factory)
    if not records:
        logger.info("Order %s has no membership line items", order.id)
        return []
    await add_staging_batch(session, records)
    logger.info("Staged %d membership item(s) for order %s", len(records), order.id)
    return records
