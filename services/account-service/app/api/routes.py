"""HTTP route definitions for the account service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import jwt
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field

from schemas import Account, AccountAuditEvent

from ..config import get_settings
from ..domain.account import UserAccount
from ..domain.contracts import ProfileUpdate, UserInput
from ..domain.errors import (
    AccountError,
    EmailAlreadyUsed,
    InvalidPassword,
    LoginAlreadyUsed,
    UniquenessConflict,
    UnknownRole,
)
from ..domain.service import AccountLifecycleManager
from ..notifications import AccountNotifier
from ..security.rate_limiter import build_rate_limiter
from ..security.tokens import AUTHORITIES_CLAIM, decode_access_token, issue_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

ADMIN_ROLE = "ROLE_ADMIN"
PASSWORD_MIN_LENGTH = 4
PASSWORD_MAX_LENGTH = 100


class RegisterRequest(BaseModel):
    """Payload accepted by the public self-registration endpoint."""

    login: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    image_url: str | None = Field(default=None, max_length=256)
    lang_key: str | None = Field(default=None, max_length=10)


class ManagedUserRequest(BaseModel):
    """Account payload used by administrators to create or update users."""

    id: str | None = None
    login: str = Field(..., min_length=1, max_length=50)
    email: EmailStr
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    image_url: str | None = Field(default=None, max_length=256)
    lang_key: str | None = Field(default=None, max_length=10)
    activated: bool = False
    authorities: list[str] = Field(default_factory=list)

    def to_input(self) -> UserInput:
        return UserInput(
            id=self.id,
            login=self.login,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            image_url=self.image_url,
            lang_key=self.lang_key,
            activated=self.activated,
            roles=set(self.authorities),
        )


class ProfileRequest(BaseModel):
    """Profile fields an authenticated user may change on their own account."""

    email: EmailStr
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    lang_key: str | None = Field(default=None, max_length=10)
    image_url: str | None = Field(default=None, max_length=256)


class PasswordChangeRequest(BaseModel):
    """Current and replacement password of the authenticated user."""

    current_password: str
    new_password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class PasswordResetInitRequest(BaseModel):
    """Email address of the account whose password should be reset."""

    email: EmailStr


class PasswordResetFinishRequest(BaseModel):
    """Reset key received by mail together with the new password."""

    key: str
    new_password: str = Field(..., min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)


class AuthenticateRequest(BaseModel):
    """Credentials exchanged for a bearer token."""

    login: str
    password: str


class TokenResponse(BaseModel):
    """Bearer token issued after successful authentication."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class AuditLogResponse(BaseModel):
    """Envelope for paginated audit log data."""

    items: list[AccountAuditEvent]
    next_cursor: str | None = None


@dataclass(frozen=True)
class Principal:
    """Identity carried by a verified bearer token."""

    login: str
    authorities: frozenset[str]


settings = get_settings()
rate_limiter = build_rate_limiter(settings)
bearer_scheme = HTTPBearer(auto_error=False)


def get_service(request: Request) -> AccountLifecycleManager:
    """Resolve the `AccountLifecycleManager` stored on the FastAPI application state."""
    service: AccountLifecycleManager = request.app.state.account_manager
    return service


def get_notifier(request: Request) -> AccountNotifier:
    """Resolve the `AccountNotifier` stored on the FastAPI application state."""
    notifier: AccountNotifier = request.app.state.notifier
    return notifier


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal | None:
    """Return the caller's principal, or ``None`` for anonymous requests."""
    if credentials is None:
        return None
    try:
        claims = decode_access_token(credentials.credentials)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token") from exc
    return Principal(login=claims["sub"], authorities=frozenset(claims.get(AUTHORITIES_CLAIM, [])))


def require_principal(principal: Principal | None = Depends(get_principal)) -> Principal:
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return principal


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if ADMIN_ROLE not in principal.authorities:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")
    return principal


def _enforce_rate_limit(scope: str, subject: str) -> None:
    if not rate_limiter.allow(scope, subject.lower()):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


def _to_schema(account: UserAccount) -> Account:
    return Account(
        id=account.id,
        login=account.login,
        email=account.email,
        first_name=account.first_name,
        last_name=account.last_name,
        image_url=account.image_url,
        lang_key=account.lang_key,
        activated=account.activated,
        authorities=sorted(account.roles),
        created_at=account.created_at,
    )


@router.post("/register", response_model=Account, status_code=status.HTTP_201_CREATED)
def register_account(
    payload: RegisterRequest,
    service: AccountLifecycleManager = Depends(get_service),
    notifier: AccountNotifier = Depends(get_notifier),
) -> Account:
    """Register a new, not yet activated account."""
    _enforce_rate_limit("register", payload.login)
    user_input = UserInput(
        login=payload.login,
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        image_url=payload.image_url,
        lang_key=payload.lang_key,
    )
    try:
        account = service.register_user(user_input, payload.password)
    except (LoginAlreadyUsed, EmailAlreadyUsed, UniquenessConflict) as exc:
        raise _http_error_from_account_error(exc) from exc
    notifier.send_activation_email(account)
    return _to_schema(account)


@router.get("/activate", response_model=Account)
def activate_account(
    key: str = Query(...),
    service: AccountLifecycleManager = Depends(get_service),
) -> Account:
    """Activate the registration identified by the mailed activation key."""
    account = service.activate_registration(key)
    if account is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="no user was found for this activation key",
        )
    return _to_schema(account)


@router.post("/authenticate", response_model=TokenResponse)
def authenticate(
    payload: AuthenticateRequest,
    service: AccountLifecycleManager = Depends(get_service),
) -> TokenResponse:
    """Exchange valid credentials of an activated account for a bearer token."""
    _enforce_rate_limit("authenticate", payload.login)
    account = service.authenticate(payload.login, payload.password)
    if account is None:
        logger.info("authentication failed for login %s", payload.login)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="bad credentials")
    token, expires_in = issue_access_token(login=account.login, authorities=account.roles)
    return TokenResponse(access_token=token, expires_in=expires_in)


@router.get("/account", response_model=Account)
def get_account(
    principal: Principal | None = Depends(get_principal),
    service: AccountLifecycleManager = Depends(get_service),
) -> Account:
    """Return the caller's account together with its roles."""
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    account = service.get_user_with_roles(principal.login)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user could not be found")
    return _to_schema(account)


@router.post("/account", response_model=Account)
def save_account(
    payload: ProfileRequest,
    principal: Principal = Depends(require_principal),
    service: AccountLifecycleManager = Depends(get_service),
) -> Account:
    """Update the profile of the authenticated user."""
    update = ProfileUpdate(
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        lang_key=payload.lang_key,
        image_url=payload.image_url,
    )
    try:
        account = service.update_profile(principal.login, update)
    except UniquenessConflict as exc:
        raise _http_error_from_account_error(exc) from exc
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user could not be found")
    return _to_schema(account)


@router.post("/account/change-password", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def change_password(
    payload: PasswordChangeRequest,
    principal: Principal = Depends(require_principal),
    service: AccountLifecycleManager = Depends(get_service),
) -> Response:
    """Change the authenticated user's password after checking the current one."""
    try:
        account = service.change_password(principal.login, payload.current_password, payload.new_password)
    except InvalidPassword as exc:
        raise _http_error_from_account_error(exc) from exc
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user could not be found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/account/reset-password/init",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def request_password_reset(
    payload: PasswordResetInitRequest,
    service: AccountLifecycleManager = Depends(get_service),
    notifier: AccountNotifier = Depends(get_notifier),
) -> Response:
    """Issue a reset key and mail it to the account holder."""
    _enforce_rate_limit("reset-init", payload.email)
    account = service.request_password_reset(payload.email)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="email address not registered")
    notifier.send_password_reset_email(account)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/account/reset-password/finish",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
)
def finish_password_reset(
    payload: PasswordResetFinishRequest,
    service: AccountLifecycleManager = Depends(get_service),
) -> Response:
    """Set a new password using a reset key issued within the last 24 hours."""
    if service.complete_password_reset(payload.new_password, payload.key) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="no user was found for this reset key",
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users", response_model=Account, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: ManagedUserRequest,
    principal: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
    notifier: AccountNotifier = Depends(get_notifier),
) -> Account:
    """Create an activated account on behalf of an administrator."""
    if payload.id is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="a new user cannot already have an id")
    try:
        account = service.create_user(payload.to_input(), actor=principal.login)
    except (UniquenessConflict, UnknownRole) as exc:
        raise _http_error_from_account_error(exc) from exc
    notifier.send_creation_email(account)
    return _to_schema(account)


@router.put("/users", response_model=Account)
def update_user(
    payload: ManagedUserRequest,
    principal: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> Account:
    """Overwrite a user's profile and authorities."""
    try:
        account = service.update_user(payload.to_input(), actor=principal.login)
    except (UniquenessConflict, UnknownRole) as exc:
        raise _http_error_from_account_error(exc) from exc
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return _to_schema(account)


@router.get("/users", response_model=list[Account])
def list_users(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> list[Account]:
    """List accounts ordered by login."""
    return [_to_schema(account) for account in service.list_users(limit=limit, offset=offset)]


@router.get("/users/authorities", response_model=list[str])
def get_authorities(
    _: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> list[str]:
    """Return every role name defined in the catalog."""
    return service.get_authorities()


@router.get("/users/{login}", response_model=Account)
def get_user(
    login: str,
    _: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> Account:
    """Return a single account with its authorities."""
    account = service.get_user(login)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return _to_schema(account)


@router.delete("/users/{login}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
def delete_user(
    login: str,
    principal: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> Response:
    """Delete an account and its role memberships; unknown logins are ignored."""
    service.delete_user(login, actor=principal.login)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/audit/logs", response_model=AuditLogResponse)
def list_audit_logs(
    account_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
    created_after: datetime | None = Query(default=None),
    created_before: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=100),
    cursor: str | None = Query(default=None),
    _: Principal = Depends(require_admin),
    service: AccountLifecycleManager = Depends(get_service),
) -> AuditLogResponse:
    """Return paginated account lifecycle events with optional filtering."""
    try:
        records, next_cursor = service.list_audit_events(
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=cursor,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    items = [
        AccountAuditEvent(
            audit_id=record.audit_id,
            account_id=record.account_id,
            event_type=record.event_type,
            actor=record.actor,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record in records
    ]
    return AuditLogResponse(items=items, next_cursor=next_cursor)


def _http_error_from_account_error(exc: AccountError) -> HTTPException:
    if isinstance(exc, UniquenessConflict):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="login or email already in use")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
