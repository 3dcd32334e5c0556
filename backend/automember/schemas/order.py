"""WooCommerce order payload: only the fields ingestion consumes."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class MetaItem(BaseModel):
    key: Optional[str] = None
    value: Any = None


class Category(BaseModel):
    id: Optional[int] = None
    name: Optional[str] = None
    slug: Optional[str] = None


class Billing(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address_1: Optional[str] = None
    address_2: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None


class LineItem(BaseModel):
    product_id: int
    name: Optional[str] = None
    total: Any = None
    categories: list[Category] = Field(default_factory=list)
    meta_data: list[MetaItem] = Field(default_factory=list)

    def meta(self, key: str) -> Any:
        return _find_meta(self.meta_data, key)


class OrderEvent(BaseModel):
    id: int
    date_created_gmt: Optional[datetime] = None
    billing: Billing = Field(default_factory=Billing)
    line_items: list[LineItem] = Field(default_factory=list)
    meta_data: list[MetaItem] = Field(default_factory=list)

    @field_validator("date_created_gmt", mode="before")
    @classmethod
    def blank_date_is_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    def meta(self, key: str) -> Any:
        return _find_meta(self.meta_data, key)


def _find_meta(items: list[MetaItem], key: str) -> Any:
    for item in items:
        if item.key == key:
            return item.value
    return None
