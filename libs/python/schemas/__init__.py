"""Shared schema exports."""

from .account import Account, AccountAuditEvent

__all__ = [
    "Account",
    "AccountAuditEvent",
]
