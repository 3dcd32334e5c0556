"""Models package: re-export all ORM classes for metadata creation."""
from automember.models.staging import AuditAction, AuditEntry, StagingRecord, StagingStatus  # noqa: F401
from automember.models.registry import Customer, LoyaltyCard  # noqa: F401
