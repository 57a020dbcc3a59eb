"""Key naming for the TTL session store.

Every component that touches the shared store builds its keys here so the
layout is visible in one place.
"""

from __future__ import annotations

import hashlib

REFRESH_PREFIX = "auth:refresh:"
BLACKLIST_PREFIX = "auth:blacklist:"
LOGIN_ATTEMPTS_PREFIX = "auth:attempts:"
GUEST_SESSION_PREFIX = "guest:session:"
VERIFY_CODE_PREFIX = "verify:code:"
VERIFY_LIMIT_PREFIX = "verify:limit:"
VERIFY_ATTEMPTS_PREFIX = "verify:attempts:"


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def refresh_key(raw_token: str) -> str:
    # Only the digest of the opaque value is ever stored
    return f"{REFRESH_PREFIX}{hash_token(raw_token)}"


def blacklist_key(jti: str) -> str:
    return f"{BLACKLIST_PREFIX}{jti}"


def login_attempts_key(email: str) -> str:
    return f"{LOGIN_ATTEMPTS_PREFIX}{email}"


def guest_session_key(guest_id: str) -> str:
    return f"{GUEST_SESSION_PREFIX}{guest_id}"


def verify_code_key(purpose: str, identifier: str) -> str:
    return f"{VERIFY_CODE_PREFIX}{purpose}:{identifier}"


def verify_limit_key(identifier: str) -> str:
    return f"{VERIFY_LIMIT_PREFIX}{identifier}"


def verify_attempts_key(identifier: str) -> str:
    return f"{VERIFY_ATTEMPTS_PREFIX}{identifier}"
