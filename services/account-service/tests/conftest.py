from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from app.domain.account import UserAccount
from app.domain.errors import StoreFailure, UniquenessConflict
from app.domain.service import AccountLifecycleManager
from app.repository import AuditLogRecord
from app.security import passwords


class FakeIdentityStore:
    """In-memory identity store mimicking the Postgres-backed behaviors.

    Every mutating call is appended to ``calls`` so tests can assert ordering.
    Deleting an account does not cascade role memberships; the memberships left
    at deletion time are recorded instead.
    """

    def __init__(self, roles: tuple[str, ...] = ("ROLE_ADMIN", "ROLE_USER")) -> None:
        self.accounts: dict[str, UserAccount] = {}
        self.user_roles: dict[str, set[str]] = {}
        self.roles = set(roles)
        self.calls: list[tuple] = []
        self.audit_log: list[AuditLogRecord] = []
        self._audit_seq = 0

    def _copy(self, account: UserAccount) -> UserAccount:
        return replace(account, roles=set(account.roles))

    def _find(self, predicate) -> UserAccount | None:
        for account in self.accounts.values():
            if predicate(account):
                return self._copy(account)
        return None

    def _check_unique(self, account: UserAccount) -> None:
        for other in self.accounts.values():
            if other.id == account.id:
                continue
            if other.login.lower() == account.login.lower() or other.email.lower() == account.email.lower():
                raise UniquenessConflict("duplicate key value violates unique constraint")

    def find_by_id(self, account_id: str):
        return self._find(lambda a: a.id == account_id)

    def find_by_login(self, login: str):
        return self._find(lambda a: a.login.lower() == login.lower())

    def find_by_email(self, email: str):
        return self._find(lambda a: a.email.lower() == email.lower())

    def find_by_activation_key(self, key: str):
        return self._find(lambda a: a.activation_key is not None and a.activation_key == key)

    def find_by_reset_key(self, key: str):
        return self._find(lambda a: a.reset_key is not None and a.reset_key == key)

    def list_users(self, *, limit: int = 50, offset: int = 0):
        ordered = sorted(self.accounts.values(), key=lambda a: a.login)
        return [self._copy(a) for a in ordered[offset : offset + limit]]

    def create(self, account: UserAccount) -> UserAccount:
        self._check_unique(account)
        account.id = account.id or str(uuid.uuid4())
        account.created_at = datetime.now(timezone.utc)
        self.accounts[account.id] = self._copy(account)
        self.calls.append(("create", account.login))
        return account

    def update(self, account: UserAccount) -> UserAccount:
        if account.id not in self.accounts:
            raise StoreFailure(f"no row for {account.id}")
        self._check_unique(account)
        self.accounts[account.id] = self._copy(account)
        self.calls.append(("update", account.login))
        return account

    def delete(self, account: UserAccount) -> None:
        self.accounts.pop(account.id, None)
        memberships = frozenset(self.user_roles.get(account.id, set()))
        self.calls.append(("delete", account.login, memberships))

    def hash_password(self, password: str) -> str:
        return passwords.hash_password(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        return passwords.verify_password(password, password_hash)

    def list_roles(self) -> list[str]:
        return list(self.roles)

    def get_roles_for_user(self, account: UserAccount) -> set[str]:
        return set(self.user_roles.get(account.id, set()))

    def add_role_to_user(self, account: UserAccount, role: str) -> None:
        if role not in self.roles:
            raise StoreFailure(f"insert or update on table \"user_roles\" violates foreign key constraint: {role}")
        self.user_roles.setdefault(account.id, set()).add(role)
        self.calls.append(("add_role", account.login, role))

    def remove_role_from_user(self, account: UserAccount, role: str) -> None:
        self.user_roles.get(account.id, set()).discard(role)
        self.calls.append(("remove_role", account.login, role))

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        self._audit_seq += 1
        self.audit_log.append(
            AuditLogRecord(
                audit_id=self._audit_seq,
                account_id=account_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

    def list_audit_events(
        self,
        *,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ):
        results = list(self.audit_log)
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor


class RecordingNotifier:
    """Notifier keeping every account it was asked to mail."""

    def __init__(self) -> None:
        self.activations: list[UserAccount] = []
        self.creations: list[UserAccount] = []
        self.resets: list[UserAccount] = []

    def send_activation_email(self, account: UserAccount) -> None:
        self.activations.append(account)

    def send_creation_email(self, account: UserAccount) -> None:
        self.creations.append(account)

    def send_password_reset_email(self, account: UserAccount) -> None:
        self.resets.append(account)


class FrozenClock:
    """Clock returning a fixed instant that tests move forward explicitly."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store() -> FakeIdentityStore:
    return FakeIdentityStore()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def manager(store, clock) -> AccountLifecycleManager:
    return AccountLifecycleManager(store, clock=clock)
