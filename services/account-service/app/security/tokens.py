"""Utilities for issuing and validating bearer tokens that carry the principal."""

from __future__ import annotations

import time
from typing import Any, Iterable

import jwt

from ..config import get_settings

AUTHORITIES_CLAIM = "auth"


def issue_access_token(*, login: str, authorities: Iterable[str]) -> tuple[str, int]:
    """Create a signed JWT for an authenticated account.

    Parameters
    ----------
    login:
        Account login embedded in the token ``sub`` claim; it identifies the principal.
    authorities:
        Role names granted to the account, embedded in the ``auth`` claim.

    Returns
    -------
    tuple[str, int]
        A tuple containing the encoded JWT string and its TTL (in seconds).
    """

    settings = get_settings()
    now = int(time.time())
    expires_in = settings.jwt_ttl_seconds
    payload: dict[str, Any] = {
        "iss": settings.jwt_issuer,
        "sub": login,
        AUTHORITIES_CLAIM: sorted(authorities),
        "iat": now,
        "exp": now + expires_in,
    }

    token = jwt.encode(payload, settings.jwt_secret, algorithm="HS256")
    return token, expires_in


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify a JWT returning its payload.

    Raises
    ------
    jwt.PyJWTError
        Propagated when the token is invalid, expired, or signed by another issuer.
    """

    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=["HS256"],
        issuer=settings.jwt_issuer,
    )
