from __future__ import annotations

import os
from datetime import date, datetime, time, timezone

# Module-level engines must never point at real infrastructure during tests.
os.environ.setdefault("STAGING_DATABASE_URL", "sqlite+aiosqlite:///./data/test-staging.sqlite")
os.environ.setdefault("REGISTRY_DATABASE_URL", "sqlite+aiosqlite:///./data/test-registry.sqlite")

import pytest_asyncio
from sqlalchemy import func, select

import automember.models  # noqa: F401,E402
from automember.approval_engine import ApprovalEngine
from automember.db import Base, RegistryBase, build_engine, build_session_factory
from automember.models.registry import Customer, LoyaltyCard
from automember.registry_client import RegistryClient


@pytest_asyncio.fixture
async def staging_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'staging.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def registry_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'registry.sqlite'}")
    async with engine.begin() as conn:
        await conn.run_sync(RegistryBase.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def registry(registry_factory) -> RegistryClient:
    return RegistryClient(registry_factory)


@pytest_asyncio.fixture
async def engine(staging_factory, registry) -> ApprovalEngine:
    return ApprovalEngine(staging_factory, registry)


async def add_customer(factory, **fields) -> int:
    now = datetime.now(timezone.utc)
    values = {
        "first_name": "",
        "surname": "",
        "is_active": True,
        "balance": 0,
        "created_at": now,
        "updated_at": now,
    }
    values.update(fields)
    async with factory() as session:
        customer = Customer(**values)
        session.add(customer)
        await session.commit()
        return customer.id


async def add_card(
    factory,
    customer_id: int,
    card_no: str,
    expiry: date,
    *,
    created_at: datetime | None = None,
    is_revoked: bool = False,
) -> int:
    created = created_at or datetime.now(timezone.utc)
    async with factory() as session:
        card = LoyaltyCard(
            customer_id=customer_id,
            card_no=card_no,
            expires_at=datetime.combine(expiry, time(23, 59, 59), tzinfo=timezone.utc),
            is_active=not is_revoked,
            is_revoked=is_revoked,
            revoked_at=created if is_revoked else None,
            created_at=created,
            updated_at=created,
        )
        session.add(card)
        await session.commit()
        return card.id


async def count_rows(factory, model) -> int:
    async with factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def get_customer(factory, customer_id: int) -> Customer | None:
    async with factory() as session:
        return await session.get(Customer, customer_id)


async def cards_of(factory, customer_id: int) -> list[LoyaltyCard]:
    async with factory() as session:
        rows = await session.execute(
            select(LoyaltyCard)
            .where(LoyaltyCard.customer_id == customer_id)
            .order_by(LoyaltyCard.expires_at.desc(), LoyaltyCard.id.desc())
        )
        return list(rows.scalars().all())


async def current_card(factory, customer_id: int) -> LoyaltyCard | None:
    live = [card for card in await cards_of(factory, customer_id) if not card.is_revoked]
    return live[0] if live else None


def order_payload(
    *,
    order_id: int = 1001,
    items: list[dict] | None = None,
    billing: dict | None = None,
    meta_data: list[dict] | None = None,
) -> dict:
    return {
        "id": order_id,
        "date_created_gmt": "2025-01-10T09:30:00",
        "billing": billing
        or {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "phone": "+44 7700 900123",
            "address_1": "12 St James's Square",
            "city": "London",
            "postcode": "SW1Y 4JH",
        },
        "line_items": items if items is not None else [membership_item()],
        "meta_data": meta_data or [],
    }


def membership_item(
    *,
    product_id: int = 77,
    name: str = "Annual Membership",
    total: object = "49.99",
    term_months: object | None = "12",
) -> dict:
    meta = [] if term_months is None else [{"key": "term_months", "value": term_months}]
    return {
        "product_id": product_id,
        "name": name,
        "total": total,
        "categories": [{"id": 15, "name": "Membership", "slug": "membership"}],
        "meta_data": meta,
    }


def other_item(*, product_id: int = 90) -> dict:
    return {
        "product_id": product_id,
        "name": "Tote bag",
        "total": "12.00",
        "categories": [{"id": 3, "name": "Merchandise", "slug": "merch"}],
        "meta_data": [],
    }
