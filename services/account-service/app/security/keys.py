"""Random secrets handed out during account lifecycle workflows."""

from __future__ import annotations

import secrets
import string

_ALPHABET = string.ascii_letters + string.digits
KEY_LENGTH = 20


def _random_string(length: int = KEY_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_password() -> str:
    """Return a throwaway password for accounts created by an administrator."""
    return _random_string()


def generate_activation_key() -> str:
    """Return a one-time key proving control of a newly registered account."""
    return _random_string()


def generate_reset_key() -> str:
    """Return a one-time key authorizing a password reset."""
    return _random_string()
