"""Customer registry tables (external system of record)."""
from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from automember.db import RegistryBase


class Customer(RegistryBase):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column("CustomerID", Integer, primary_key=True, autoincrement=True)
    title: Mapped[str | None] = mapped_column("Title", String(32), nullable=True)
    first_name: Mapped[str] = mapped_column("FirstName", String(128), nullable=False, default="")
    surname: Mapped[str] = mapped_column("Surname", String(128), nullable=False, default="")
    address: Mapped[str | None] = mapped_column("Address", String(256), nullable=True)
    city: Mapped[str | None] = mapped_column("City", String(128), nullable=True)
    county: Mapped[str | None] = mapped_column("County", String(128), nullable=True)
    post_code: Mapped[str | None] = mapped_column("PostCode", String(32), nullable=True)
    country_code: Mapped[str | None] = mapped_column("CountryCode", String(8), nullable=True)
    tel_no: Mapped[str | None] = mapped_column("TelNo", String(64), nullable=True)
    mobile: Mapped[str | None] = mapped_column("Mobile", String(64), nullable=True)
    email: Mapped[str | None] = mapped_column("Email", String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column("IsActive", Boolean, nullable=False, default=True)
    balance: Mapped[float] = mapped_column("Balance", Numeric(12, 2, asdecimal=False), nullable=False, default=0)
    birthday: Mapped[date | None] = mapped_column("Birthday", Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        "DTCreated", DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        "DTUpdated", DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<Customer id={self.id} {self.first_name} {self.surname}>"


class LoyaltyCard(RegistryBase):
    """Membership card; the registry keeps every card ever issued."""

    __tablename__ = "customer_loyalty_cards"

    id: Mapped[int] = mapped_column("CardID", Integer, primary_key=True, autoincrement=True)
    customer_id: Mapped[int] = mapped_column(
        "CustomerID", Integer, ForeignKey("customers.CustomerID"), nullable=False, index=True
    )
    card_no: Mapped[str] = mapped_column("CardNo", String(50), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column("DTExpiry", DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column("DTRevoked", DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column("IsActive", Boolean, nullable=False, default=True)
    is_revoked: Mapped[bool | None] = mapped_column("IsRevoked", Boolean, nullable=True, default=False)
    created_at: Mapped[datetime] = mapped_column("DTCreated", DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column("DTUpdated", DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<LoyaltyCard {self.card_no} customer={self.customer_id} expires={self.expires_at}>"
