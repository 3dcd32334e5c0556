"""StagingRecord and AuditEntry models: the local staging store."""
from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from automember.db import Base


class StagingStatus(str, enum.Enum):
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class AuditAction(str, enum.Enum):
    UPSERTED = "Upserted"
    RENEWED = "Renewed"
    REJECTED = "Rejected"
    ERROR = "Error"


class StagingRecord(Base):
    """One prospective membership action awaiting operator review."""

    __tablename__ = "automember_staging"

    staging_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    order_created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    first_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    dob: Mapped[date | None] = mapped_column(Date, nullable=True)
    address_line1: Mapped[str | None] = mapped_column(String(256), nullable=True)
    address_line2: Mapped[str | None] = mapped_column(String(256), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    postcode: Mapped[str | None] = mapped_column(String(32), nullable=True)

    membership_product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    membership_product_name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    term_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    price_paid: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_renewal_guess: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[StagingStatus] = mapped_column(
        String(16), default=StagingStatus.PENDING, nullable=False, index=True
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set while an approval is talking to the registry; cleared on every exit.
    claim_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def to_dict(self) -> dict:
        return {
            "stagingId": self.staging_id,
            "orderId": self.order_id,
            "orderCreatedAt": self.order_created_at,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "dob": self.dob,
            "addressLine1": self.address_line1,
            "addressLine2": self.address_line2,
            "city": self.city,
            "postcode": self.postcode,
            "membershipProductId": self.membership_product_id,
            "membershipProductName": self.membership_product_name,
            "termMonths": self.term_months,
            "pricePaid": self.price_paid,
            "isRenewalGuess": self.is_renewal_guess,
            "status": _enum_value(self.status),
            "notes": self.notes,
            "approvalInProgress": self.claim_token is not None,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"<StagingRecord id={self.staging_id} order={self.order_id} status={self.status}>"


class AuditEntry(Base):
    """Append-only trail of staging transitions and approval failures."""

    __tablename__ = "automember_audit"

    audit_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    staging_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    action: Mapped[AuditAction] = mapped_column(
        String(16), nullable=False, comment="Upserted | Renewed | Rejected | Error"
    )
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    diff_json: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def to_dict(self) -> dict:
        return {
            "auditId": self.audit_id,
            "stagingId": self.staging_id,
            "action": _enum_value(self.action),
            "actor": self.actor,
            "diff": self.diff_json,
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<AuditEntry id={self.audit_id} staging={self.staging_id} action={self.action}>"


def _enum_value(value: enum.Enum | str) -> str:
    if isinstance(value, enum.Enum):
        return value.value
    return str(value)
