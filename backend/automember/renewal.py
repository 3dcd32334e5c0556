"""Renewal window and card number rules.

Pure functions shared by the registry client; no I/O here.
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from dateutil.relativedelta import relativedelta

from automember.config import settings
from automember.errors import ValidationError

END_OF_DAY = time(23, 59, 59)


@dataclass(slots=True, frozen=True)
class RenewalWindow:
    start: date
    end: date

    @property
    def expires_at(self) -> datetime:
        """Stored expiry: the final second of the end date."""
        return datetime.combine(self.end, END_OF_DAY, tzinfo=timezone.utc)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def add_months(value: date, months: int) -> date:
    """Calendar month arithmetic, clamped to the last day of the target month."""
    return value + relativedelta(months=months)


def compute_renewal_window(
    current_expiry: date | None,
    term_months: int,
    *,
    today: date | None = None,
) -> RenewalWindow:
    """Back-to-back extension when the current card is still valid, else start today.

    Raises ``ValidationError`` for a term outside ``1..MAX_TERM_MONTHS`` or a
    window that runs past the calendar.
    """
    if not 1 <= term_months <= settings.MAX_TERM_MONTHS:
        raise ValidationError(
            f"term_months must be between 1 and {settings.MAX_TERM_MONTHS}, got {term_months}",
            termMonths=term_months,
        )
    today = today or utc_today()
    if current_expiry is not None and current_expiry >= today:
        start, anchor = current_expiry + timedelta(days=1), current_expiry
    else:
        start, anchor = today, today
    try:
        end = add_months(anchor, term_months)
    except (ValueError, OverflowError) as exc:
        raise ValidationError(f"Renewal window out of range: {exc}", termMonths=term_months) from exc
    return RenewalWindow(start=start, end=end)


def generate_card_number(*, year: int | None = None, prefix: str | None = None) -> str:
    """Human-facing, year-scoped card number: ``CSC-2025-048213``."""
    year = year or datetime.now(timezone.utc).year
    prefix = prefix or settings.CARD_PREFIX
    return f"{prefix}-{year:04d}-{secrets.randbelow(1_000_000):06d}"


def normalize_card_number(card_no: str | None) -> str | None:
    value = (card_no or "").strip()
    return value or None
