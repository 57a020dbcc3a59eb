from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from lexgate.logging import get_logger
from lexgate.service.errors import ErrorKind, ServiceError

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    role: str
    jti: str
    issuer: str
    issued_at: int
    not_before: int
    expires_at: int


class TokenCodec:
    """Signs and verifies HS256 access tokens and mints opaque refresh tokens.

    Access tokens are compact JWS strings; refresh tokens are random values
    whose only protection is being unguessable and single-use in the store.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        access_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing key is not configured")
        self._key = secret.encode("utf-8")
        self.issuer = issuer
        self.access_ttl_seconds = access_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def generate_access_token(self, user_id: str, role: str) -> str:
        now = int(self._clock())
        header = {"alg": JWT_ALGORITHM, "typ": "JWT"}
        payload = {
            "sub": user_id,
            "role": role,
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "iat": now,
            "nbf": now,
            "exp": now + self.access_ttl_seconds,
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def generate_refresh_token(self) -> str:
        return secrets.token_urlsafe(32)

    def parse_token(self, token: str) -> AccessClaims:
        """Verify ``token`` and return its claims.

        Raises ``ServiceError`` with ``TOKEN_EXPIRED``, ``TOKEN_INVALID`` or
        ``TOKEN_BAD_SIGNATURE``.
        """
        return self._decode(token, allow_expired=False)

    def get_token_id(self, token: str) -> str:
        """Return the jti of a correctly signed token, even when it has expired."""
        return self._decode(token, allow_expired=True).jti

    def _decode(self, token: str, *, allow_expired: bool) -> AccessClaims:
        if not token or not isinstance(token, str) or not token.isascii():
            raise ServiceError(ErrorKind.TOKEN_INVALID)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise ServiceError(ErrorKind.TOKEN_INVALID)

        # Reject anything but HMAC-SHA256 before looking at the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise ServiceError(ErrorKind.TOKEN_INVALID)
        if not isinstance(header, dict) or header.get("alg") != JWT_ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise ServiceError(ErrorKind.TOKEN_INVALID)

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise ServiceError(ErrorKind.TOKEN_BAD_SIGNATURE)

        try:
            payload: Any = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise ServiceError(ErrorKind.TOKEN_INVALID)
        if not isinstance(payload, dict):
            raise ServiceError(ErrorKind.TOKEN_INVALID)

        try:
            claims = AccessClaims(
                user_id=str(payload["sub"]),
                role=str(payload["role"]),
                jti=str(payload["jti"]),
                issuer=str(payload["iss"]),
                issued_at=int(payload["iat"]),
                not_before=int(payload["nbf"]),
                expires_at=int(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError):
            raise ServiceError(ErrorKind.TOKEN_INVALID)

        if claims.issuer != self.issuer:
            raise ServiceError(ErrorKind.TOKEN_INVALID)
        now = self._clock()
        if claims.not_before > now + self.leeway_seconds:
            raise ServiceError(ErrorKind.TOKEN_INVALID)
        if not allow_expired and claims.expires_at <= now - self.leeway_seconds:
            raise ServiceError(ErrorKind.TOKEN_EXPIRED)
        return claims
