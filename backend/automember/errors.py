"""Domain errors raised by the staging, registry and approval layers.

Every error carries a stable ``kind`` so callers can tell them apart without
parsing messages, and an ``http_status`` the API layer maps onto responses.
"""
from __future__ import annotations

from typing import Any


class AutoMemberError(Exception):
    kind = "Error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "kind": self.kind, **self.details}


class ValidationError(AutoMemberError):
    """Malformed input or missing required field."""

    kind = "ValidationError"
    http_status = 422


class NotPending(AutoMemberError):
    kind = "NotPending"
    http_status = 400

    def __init__(self, staging_id: str, status: str | None = None) -> None:
        super().__init__(
            f"Staging record {staging_id} is not pending",
            stagingId=staging_id,
            status=status,
        )


class StagingNotFound(AutoMemberError):
    kind = "StagingNotFound"
    http_status = 404

    def __init__(self, staging_id: str) -> None:
        super().__init__(f"Staging record {staging_id} not found", stagingId=staging_id)


class CustomerNotFound(AutoMemberError):
    kind = "CustomerNotFound"
    http_status = 404

    def __init__(self, customer_id: int) -> None:
        super().__init__(f"Customer {customer_id} not found", customerId=customer_id)


class DuplicateCardNumber(AutoMemberError):
    kind = "DuplicateCardNumber"
    http_status = 409

    def __init__(self, card_no: str) -> None:
        super().__init__(f"Provided card number {card_no} already exists", cardNo=card_no)


class RegistryUnavailable(AutoMemberError):
    """The external registry could not be reached or rejected the round trip."""

    kind = "RegistryUnavailable"
    http_status = 502


class OrphanedCustomer(AutoMemberError):
    """A new customer was created but attaching the card failed.

    The customer row is left in place; the operator retries approval against
    ``customer_id`` instead of creating another customer.
    """

    kind = "OrphanedCustomer"
    http_status = 502

    def __init__(self, customer_id: int, cause: BaseException) -> None:
        cause_kind = getattr(cause, "kind", type(cause).__name__)
        super().__init__(
            f"Customer {customer_id} was created but card attach failed: {cause}",
            orphanedCustomerId=customer_id,
            cause=cause_kind,
        )
        self.customer_id = customer_id
        self.cause = cause
