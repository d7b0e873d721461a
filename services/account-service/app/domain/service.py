"""Account lifecycle workflows: creation, registration, activation, resets and roles."""

from __future__ import annotations

import json
import logging
from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Tuple

from .account import UserAccount
from .contracts import ProfileUpdate, UserInput
from .errors import EmailAlreadyUsed, InvalidPassword, LoginAlreadyUsed, UnknownRole
from ..config import get_settings
from ..metrics import LIFECYCLE_EVENTS
from ..repository import AuditLogRecord, IdentityStore
from ..security.keys import generate_activation_key, generate_password, generate_reset_key

logger = logging.getLogger(__name__)

RESET_KEY_TTL = timedelta(seconds=86400)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AccountLifecycleManager:
    """Account workflows delegating persistence and hashing to the identity store.

    Operations that act on behalf of the caller take the caller's login as an
    explicit argument; resolving it from a request is left to the HTTP layer.
    """

    def __init__(self, store: IdentityStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def create_user(self, user_input: UserInput, actor: str | None = None) -> UserAccount:
        """Create an activated account that must go through a password reset before first use.

        Duplicate logins or emails are not checked here; the store rejects them
        with :class:`~app.domain.errors.UniquenessConflict`.
        """
        self._check_roles(user_input.roles)
        account = UserAccount(
            id="",
            login=user_input.login.lower(),
            email=user_input.email.lower(),
            password_hash=self._store.hash_password(generate_password()),
            first_name=user_input.first_name,
            last_name=user_input.last_name,
            image_url=user_input.image_url,
            lang_key=user_input.lang_key or get_settings().default_lang_key,
            activated=True,
            reset_key=generate_reset_key(),
            reset_date=self._clock(),
        )
        account = self._store.create(account)
        for role in user_input.roles:
            self._store.add_role_to_user(account, role)
        account.roles = set(user_input.roles)
        logger.debug("Created information for user %s", account)
        self._audit(account, "account.created", actor, {"roles": sorted(account.roles)})
        return account

    def register_user(self, user_input: UserInput, password: str) -> UserAccount:
        """Register an inactive account, reclaiming abandoned unconfirmed registrations."""
        login = user_input.login.lower()
        email = user_input.email.lower()

        existing = self._store.find_by_login(login)
        if existing is not None and not self._remove_non_activated(existing):
            raise LoginAlreadyUsed()

        existing = self._store.find_by_email(email)
        if existing is not None and not self._remove_non_activated(existing):
            raise EmailAlreadyUsed()

        account = UserAccount(
            id="",
            login=login,
            email=email,
            password_hash=self._store.hash_password(password),
            first_name=user_input.first_name,
            last_name=user_input.last_name,
            image_url=user_input.image_url,
            lang_key=user_input.lang_key,
            activated=False,
            activation_key=generate_activation_key(),
        )
        account = self._store.create(account)
        logger.debug("Created information for user %s", account)
        self._audit(account, "account.registered", account.login)
        return account

    def activate_registration(self, key: str) -> UserAccount | None:
        logger.debug("Activating user for activation key %s", key)
        account = self._store.find_by_activation_key(key)
        if account is None:
            return None
        account.activated = True
        account.activation_key = None
        self._store.update(account)
        logger.debug("Activated user %s", account)
        self._audit(account, "account.activated", account.login)
        return account

    def request_password_reset(self, email: str) -> UserAccount | None:
        """Issue a fresh reset key, replacing any reset already in flight."""
        account = self._store.find_by_email(email.lower())
        if account is None:
            return None
        account.reset_key = generate_reset_key()
        account.reset_date = self._clock()
        self._store.update(account)
        self._audit(account, "password.reset_requested", account.login)
        return account

    def complete_password_reset(self, new_password: str, key: str) -> UserAccount | None:
        """Consume a reset key issued less than 24 hours ago and store the new password."""
        logger.debug("Reset user password for reset key %s", key)
        account = self._store.find_by_reset_key(key)
        if account is None or account.reset_date is None:
            return None
        if account.reset_date <= self._clock() - RESET_KEY_TTL:
            return None
        account.password_hash = self._store.hash_password(new_password)
        account.reset_key = None
        account.reset_date = None
        self._store.update(account)
        self._audit(account, "password.reset_completed", account.login)
        return account

    def change_password(self, login: str, current_password: str, new_password: str) -> UserAccount | None:
        """Replace the password of ``login`` after verifying the current one.

        Raises
        ------
        InvalidPassword
            When ``current_password`` does not match; the stored hash is left untouched.
        """
        account = self._store.find_by_login(login)
        if account is None:
            return None
        if not self._store.verify_password(current_password, account.password_hash):
            raise InvalidPassword()
        account.password_hash = self._store.hash_password(new_password)
        self._store.update(account)
        logger.debug("Changed password for user %s", account)
        self._audit(account, "password.changed", account.login)
        return account

    def update_user(self, user_input: UserInput, actor: str | None = None) -> UserAccount | None:
        """Overwrite an account's profile and reconcile its roles with ``user_input.roles``."""
        if user_input.id is None:
            return None
        account = self._store.find_by_id(user_input.id)
        if account is None:
            return None
        self._check_roles(user_input.roles)
        account.login = user_input.login.lower()
        account.first_name = user_input.first_name
        account.last_name = user_input.last_name
        account.email = user_input.email.lower()
        account.image_url = user_input.image_url
        account.activated = user_input.activated
        if account.activated:
            account.activation_key = None
        account.lang_key = user_input.lang_key
        self._store.update(account)
        removed, added = self._reconcile_roles(account, user_input.roles)
        logger.debug("Changed information for user %s", account)
        self._audit(
            account,
            "account.updated",
            actor,
            {"roles_removed": sorted(removed), "roles_added": sorted(added)},
        )
        return account

    def update_profile(self, login: str, update: ProfileUpdate) -> UserAccount | None:
        account = self._store.find_by_login(login)
        if account is None:
            return None
        account.first_name = update.first_name
        account.last_name = update.last_name
        account.email = update.email.lower()
        account.lang_key = update.lang_key
        account.image_url = update.image_url
        self._store.update(account)
        logger.debug("Changed information for user %s", account)
        self._audit(account, "account.profile_updated", account.login)
        return account

    def delete_user(self, login: str, actor: str | None = None) -> None:
        """Remove an account and its role memberships; unknown logins are ignored."""
        account = self._store.find_by_login(login)
        if account is None:
            return
        for role in self._store.get_roles_for_user(account):
            self._store.remove_role_from_user(account, role)
        self._store.delete(account)
        logger.debug("Deleted user %s", account)
        self._audit(account, "account.deleted", actor)

    def get_authorities(self) -> list[str]:
        return sorted(self._store.list_roles())

    def get_user(self, login: str) -> UserAccount | None:
        return self._load_with_roles(self._store.find_by_login(login))

    def get_user_with_roles(self, login: str | None) -> UserAccount | None:
        """Return the acting account with its roles, or ``None`` when unauthenticated."""
        if login is None:
            return None
        return self.get_user(login)

    def list_users(self, *, limit: int = 50, offset: int = 0) -> list[UserAccount]:
        accounts = self._store.list_users(limit=limit, offset=offset)
        for account in accounts:
            account.roles = set(self._store.get_roles_for_user(account))
        return accounts

    def authenticate(self, login: str, password: str) -> UserAccount | None:
        """Return the activated account matching the credentials, else ``None``."""
        account = self._store.find_by_login(login)
        if account is None or not account.activated:
            return None
        if not self._store.verify_password(password, account.password_hash):
            return None
        return self._load_with_roles(account)

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records with optional filters and cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._store.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        return records, self._encode_cursor(next_cursor_tuple)

    def _check_roles(self, roles: Iterable[str]) -> None:
        """Reject role names missing from the catalog before anything is written."""
        unknown = set(roles) - set(self._store.list_roles())
        if unknown:
            raise UnknownRole(unknown)

    def _remove_non_activated(self, account: UserAccount) -> bool:
        if account.activated:
            return False
        self._store.delete(account)
        self._audit(account, "account.reclaimed", None)
        return True

    def _reconcile_roles(self, account: UserAccount, desired: Iterable[str]) -> tuple[set[str], set[str]]:
        current = set(self._store.get_roles_for_user(account))
        wanted = set(desired)
        to_remove = current - wanted
        to_add = wanted - current
        for role in to_remove:
            self._store.remove_role_from_user(account, role)
        for role in to_add:
            self._store.add_role_to_user(account, role)
        account.roles = wanted
        return to_remove, to_add

    def _load_with_roles(self, account: UserAccount | None) -> UserAccount | None:
        if account is None:
            return None
        account.roles = set(self._store.get_roles_for_user(account))
        return account

    def _audit(
        self,
        account: UserAccount,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        self._store.write_audit_event(
            account_id=account.id,
            event_type=event_type,
            actor=actor,
            metadata=metadata,
        )
        LIFECYCLE_EVENTS.labels(event_type=event_type).inc()

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            return datetime.fromisoformat(data["created_at"]), int(data["audit_id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc
