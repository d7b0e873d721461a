"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class UserInput:
    """Account fields supplied by the admin and registration paths."""

    login: str
    email: str
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    lang_key: str | None = None
    activated: bool = False
    roles: set[str] = field(default_factory=set)


@dataclass(slots=True)
class ProfileUpdate:
    """Self-service profile fields an account holder may change."""

    email: str
    first_name: str | None = None
    last_name: str | None = None
    lang_key: str | None = None
    image_url: str | None = None
