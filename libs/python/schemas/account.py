"""Account-related DTOs shared across services."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, EmailStr, Field


class Account(BaseModel):
    id: str
    login: str
    email: EmailStr
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    lang_key: str | None = None
    activated: bool = False
    authorities: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class AccountAuditEvent(BaseModel):
    """One entry of the account lifecycle audit trail."""

    audit_id: int
    account_id: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
