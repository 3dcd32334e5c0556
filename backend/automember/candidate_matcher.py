"""Candidate matching against the customer registry.

Finds registry customers that plausibly match a staged applicant. The
predicate is a disjunction of independent branches; an empty input disables
its branch instead of matching everything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from sqlalchemy import Select, case, false, func, or_, select

from automember.models.registry import Customer, LoyaltyCard
from automember.models.staging import StagingRecord

logger = logging.getLogger(__name__)

_PHONE_NOISE = ("+", " ", "-")


def normalize_email(value: str | None) -> str | None:
    cleaned = (value or "").strip().lower()
    return cleaned or None


def normalize_phone(value: str | None) -> str | None:
    cleaned = value or ""
    for ch in _PHONE_NOISE:
        cleaned = cleaned.replace(ch, "")
    return cleaned or None


def _clean(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


@dataclass(slots=True, frozen=True)
class MatchCriteria:
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    dob: date | None = None

    @classmethod
    def build(
        cls,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        dob: date | None = None,
    ) -> "MatchCriteria":
        return cls(
            first_name=_clean(first_name),
            last_name=_clean(last_name),
            email=normalize_email(email),
            phone=normalize_phone(phone),
            dob=dob,
        )

    @classmethod
    def from_staging(cls, record: StagingRecord) -> "MatchCriteria":
        return cls.build(
            first_name=record.first_name,
            last_name=record.last_name,
            email=record.email,
            phone=record.phone,
            dob=record.dob,
        )

    @property
    def is_empty(self) -> bool:
        return not (self.email or self.phone or self.dob or (self.first_name and self.last_name))


@dataclass(slots=True)
class Candidate:
    customer_id: int
    first_name: str
    last_name: str
    email: str | None
    tel_no: str | None
    mobile: str | None
    dob: date | None
    member_number: str | None
    expiry: datetime | None
    email_match: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "memberNumber": self.member_number,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "telNo": self.tel_no,
            "mobile": self.mobile,
            "dob": self.dob,
            "expiryDate": self.expiry,
            "emailMatch": self.email_match,
        }


def _registry_phone():
    expr = func.coalesce(Customer.mobile, Customer.tel_no)
    for ch in _PHONE_NOISE:
        expr = func.replace(expr, ch, "")
    return expr


def build_candidate_query(criteria: MatchCriteria, *, limit: int = 5) -> Select:
    """Ranked candidate SELECT: exact-email matches first, then by customer id."""
    latest_card = (
        select(
            LoyaltyCard.customer_id.label("customer_id"),
            LoyaltyCard.card_no.label("card_no"),
            LoyaltyCard.expires_at.label("expires_at"),
            func.row_number()
            .over(
                partition_by=LoyaltyCard.customer_id,
                order_by=(
                    LoyaltyCard.expires_at.desc(),
                    LoyaltyCard.created_at.desc(),
                    LoyaltyCard.id.desc(),
                ),
            )
            .label("rn"),
        )
    ).subquery("latest_card")

    email_match = (
        func.lower(func.trim(Customer.email)) == criteria.email
        if criteria.email
        else false()
    )

    branches = []
    if criteria.email:
        branches.append(func.lower(func.trim(Customer.email)) == criteria.email)
    if criteria.phone:
        branches.append(_registry_phone() == criteria.phone)
    if criteria.dob:
        branches.append(Customer.birthday == criteria.dob)
    if criteria.first_name and criteria.last_name:
        branches.append(
            (Customer.first_name == criteria.first_name)
            & (Customer.surname == criteria.last_name)
        )

    stmt = (
        select(
            Customer,
            latest_card.c.card_no,
            latest_card.c.expires_at,
            email_match.label("email_match"),
        )
        .outerjoin(
            latest_card,
            (latest_card.c.customer_id == Customer.id) & (latest_card.c.rn == 1),
        )
        .order_by(
            case((email_match, 1), else_=2),
            Customer.id.asc(),
        )
        .limit(limit)
    )
    if branches:
        stmt = stmt.where(or_(*branches))
    else:
        stmt = stmt.where(false())
    return stmt


async def find_candidates(registry, criteria: MatchCriteria, *, limit: int = 5) -> list[Candidate]:
    """Read-only candidate lookup through the registry client."""
    if criteria.is_empty:
        return []
    rows = await registry.fetch_rows(build_candidate_query(criteria, limit=limit), operation="find_candidates")
    candidates = [
        Candidate(
            customer_id=customer.id,
            first_name=customer.first_name,
            last_name=customer.surname,
            email=customer.email,
            tel_no=customer.tel_no,
            mobile=customer.mobile,
            dob=customer.birthday,
            member_number=card_no,
            expiry=expires_at,
            email_match=bool(email_match),
        )
        for customer, card_no, expires_at, email_match in rows
    ]
    logger.debug("Candidate lookup returned %d rows", len(candidates))
    return candidates
