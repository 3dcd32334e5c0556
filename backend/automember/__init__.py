"""AutoMember: membership renewal reconciliation and approval service."""

__version__ = "0.1.0"
