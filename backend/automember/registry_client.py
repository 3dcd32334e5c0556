"""Customer registry client.

All reads and writes against the external customer-and-card registry go
through ``RegistryClient``. Card issuance for one customer is serialized by a
process-local per-customer lock plus ``SELECT ... FOR UPDATE`` on the
customer row, held across read-current-card, window computation, card number
resolution and insert.
"""
from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Iterator

from sqlalchemy import Select, or_, select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automember.errors import (
    CustomerNotFound,
    DuplicateCardNumber,
    OrphanedCustomer,
    RegistryUnavailable,
)
from automember.locks import KeyedLocks
from automember.metrics import (
    CARD_NUMBER_COLLISIONS_TOTAL,
    ORPHANED_CUSTOMERS_TOTAL,
    REGISTRY_LATENCY_SECONDS,
)
from automember.models.registry import Customer, LoyaltyCard
from automember.renewal import (
    RenewalWindow,
    compute_renewal_window,
    generate_card_number,
    normalize_card_number,
    utc_today,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RenewalOutcome:
    customer_id: int
    card_no: str
    new_expiry: date
    start_date: date
    created_customer: bool = False

    def to_dict(self) -> dict:
        return {
            "customerId": self.customer_id,
            "cardNo": self.card_no,
            "newExpiry": self.new_expiry.isoformat(),
            "startDate": self.start_date.isoformat(),
        }


@dataclass(slots=True)
class NewCustomer:
    first_name: str
    last_name: str
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    dob: date | None = None


class _GeneratedCardCollision(Exception):
    """A generated card number lost an insert race on the unique constraint."""


@contextmanager
def _registry_errors(operation: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error("Registry %s failed: %s", operation, exc)
        raise RegistryUnavailable(f"Registry unavailable during {operation}: {exc.orig or exc}") from exc
    except OSError as exc:
        logger.error("Registry %s failed: %s", operation, exc)
        raise RegistryUnavailable(f"Registry unavailable during {operation}: {exc}") from exc
    finally:
        REGISTRY_LATENCY_SECONDS.labels(operation=operation).observe(time.perf_counter() - started)


class RegistryClient:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        card_number_factory: Callable[[], str] = generate_card_number,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._card_number_factory = card_number_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._customer_locks = KeyedLocks()

    # ── Reads ──

    async def fetch_rows(self, stmt: Select, *, operation: str = "query") -> list:
        with _registry_errors(operation):
            async with self._session_factory() as session:
                return list((await session.execute(stmt)).all())

    async def card_exists(self, card_no: str) -> bool:
        with _registry_errors("card_exists"):
            async with self._session_factory() as session:
                return await self._card_exists(session, card_no)

    @staticmethod
    async def _card_exists(session: AsyncSession, card_no: str) -> bool:
        found = (
            await session.execute(
                select(LoyaltyCard.id).where(LoyaltyCard.card_no == card_no).limit(1)
            )
        ).scalar()
        return found is not None

    @staticmethod
    async def _current_card(session: AsyncSession, customer_id: int) -> LoyaltyCard | None:
        return (
            await session.execute(
                select(LoyaltyCard)
                .where(
                    LoyaltyCard.customer_id == customer_id,
                    or_(LoyaltyCard.is_revoked.is_(False), LoyaltyCard.is_revoked.is_(None)),
                )
                .order_by(
                    LoyaltyCard.expires_at.desc(),
                    LoyaltyCard.created_at.desc(),
                    LoyaltyCard.id.desc(),
                )
                .limit(1)
            )
        ).scalar()

    # ── Writes ──

    async def approve_renewal(
        self,
        customer_id: int,
        *,
        term_months: int = 12,
        provided_card_no: str | None = None,
        today: date | None = None,
    ) -> RenewalOutcome:
        """Issue the next card for an existing customer.

        Raises ``CustomerNotFound``, ``DuplicateCardNumber`` or
        ``RegistryUnavailable``; the registry is unchanged on any of them.
        """
        provided = normalize_card_number(provided_card_no)
        async with self._customer_locks.hold(customer_id):
            while True:
                try:
                    with _registry_errors("approve_renewal"):
                        return await self._attach_card(
                            customer_id,
                            term_months=term_months,
                            provided=provided,
                            today=today,
                        )
                except _GeneratedCardCollision:
                    CARD_NUMBER_COLLISIONS_TOTAL.inc()
                    logger.info("Generated card number collided at insert; retrying for customer %s", customer_id)

    async def _attach_card(
        self,
        customer_id: int,
        *,
        term_months: int,
        provided: str | None,
        today: date | None,
    ) -> RenewalOutcome:
        async with self._session_factory() as session:
            async with session.begin():
                customer = (
                    await session.execute(
                        select(Customer).where(Customer.id == customer_id).with_for_update()
                    )
                ).scalar()
                if customer is None:
                    raise CustomerNotFound(customer_id)

                current = await self._current_card(session, customer_id)
                current_expiry = _as_date(current.expires_at) if current else None
                window = compute_renewal_window(current_expiry, term_months, today=today or utc_today())
                card_no = await self._resolve_card_number(session, provided)

                now = self._clock()
                session.add(
                    LoyaltyCard(
                        customer_id=customer_id,
                        card_no=card_no,
                        expires_at=window.expires_at,
                        revoked_at=None,
                        is_active=True,
                        is_revoked=False,
                        created_at=now,
                        updated_at=now,
                    )
                )
                try:
                    await session.flush()
                except IntegrityError as exc:
                    if provided:
                        raise DuplicateCardNumber(provided) from exc
                    raise _GeneratedCardCollision(card_no) from exc

        logger.info(
            "Issued card %s to customer %s (%s → %s)",
            card_no,
            customer_id,
            window.start.isoformat(),
            window.end.isoformat(),
        )
        return _outcome(customer_id, card_no, window)

    async def _resolve_card_number(self, session: AsyncSession, provided: str | None) -> str:
        if provided:
            if await self._card_exists(session, provided):
                raise DuplicateCardNumber(provided)
            return provided
        while True:
            candidate = self._card_number_factory()
            if not await self._card_exists(session, candidate):
                return candidate
            CARD_NUMBER_COLLISIONS_TOTAL.inc()

    async def create_customer(self, applicant: NewCustomer) -> int:
        with _registry_errors("create_customer"):
            async with self._session_factory() as session:
                async with session.begin():
                    now = self._clock()
                    customer = Customer(
                        first_name=applicant.first_name or "",
                        surname=applicant.last_name or "",
                        tel_no=applicant.phone,
                        mobile=applicant.mobile or applicant.phone,
                        email=applicant.email,
                        birthday=applicant.dob,
                        is_active=True,
                        balance=0,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(customer)
                    await session.flush()
                    customer_id = customer.id
        logger.info("Created registry customer %s", customer_id)
        return customer_id

    async def create_customer_and_approve(
        self,
        applicant: NewCustomer,
        *,
        term_months: int = 12,
        provided_card_no: str | None = None,
        today: date | None = None,
    ) -> RenewalOutcome:
        """Enroll a new member: insert the customer, then attach a first card.

        The two writes are not compensating. When the attach step fails the
        customer stays behind and ``OrphanedCustomer`` names it.
        """
        provided = normalize_card_number(provided_card_no)
        if provided and await self.card_exists(provided):
            raise DuplicateCardNumber(provided)

        customer_id = await self.create_customer(applicant)
        try:
            outcome = await self.approve_renewal(
                customer_id,
                term_months=term_months,
                provided_card_no=provided,
                today=today,
            )
        except Exception as exc:
            ORPHANED_CUSTOMERS_TOTAL.inc()
            logger.error("Card attach failed for new customer %s: %s", customer_id, exc)
            raise OrphanedCustomer(customer_id, exc) from exc
        outcome.created_customer = True
        return outcome


def _as_date(value: datetime | date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _outcome(customer_id: int, card_no: str, window: RenewalWindow) -> RenewalOutcome:
    return RenewalOutcome(
        customer_id=customer_id,
        card_no=card_no,
        new_expiry=window.end,
        start_date=window.start,
    )
