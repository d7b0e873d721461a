"""Errors raised by account lifecycle workflows and the identity store."""

from __future__ import annotations


class AccountError(Exception):
    """Base class for account service failures."""


class LoginAlreadyUsed(AccountError):
    def __init__(self) -> None:
        super().__init__("login already used")


class EmailAlreadyUsed(AccountError):
    def __init__(self) -> None:
        super().__init__("email already used")


class InvalidPassword(AccountError):
    def __init__(self) -> None:
        super().__init__("incorrect password")


class StoreFailure(AccountError):
    """Raised by the identity store when persistence fails."""


class UniquenessConflict(StoreFailure):
    """Raised by the identity store when a login or email is already taken."""


class UnknownRole(AccountError):
    def __init__(self, roles: set[str]) -> None:
        super().__init__(f"unknown authorities: {', '.join(sorted(roles))}")
        self.roles = roles
