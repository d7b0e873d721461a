from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(slots=True)
class UserAccount:
    """Aggregate root for a user account and its role membership."""

    id: str
    login: str
    email: str
    password_hash: str
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    lang_key: str | None = None
    activated: bool = False
    activation_key: str | None = None
    reset_key: str | None = None
    reset_date: datetime | None = None
    roles: set[str] = field(default_factory=set)
    created_at: datetime | None = None

    def __str__(self) -> str:
        return f"UserAccount(login={self.login!r}, email={self.email!r}, activated={self.activated})"
