from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from authkeep.logging import get_logger

logger = get_logger(__name__)

# 32 random bytes, i.e. 256 bits of entropy
OPAQUE_TOKEN_BYTES = 32


def generate_opaque_token() -> str:
    """Random url-safe value for refresh, reset and verification tokens."""
    return secrets.token_urlsafe(OPAQUE_TOKEN_BYTES)


class TokenError(Exception):
    """Access token could not be accepted."""


class TokenInvalid(TokenError):
    """Malformed token, bad signature, or unexpected claims."""


class TokenExpired(TokenError):
    """Signature is valid but the expiry has passed."""


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class AccessTokenCodec:
    """HS256 signer/verifier for short-lived access tokens.

    Tokens are stateless: validity depends only on the signature and the
    ``exp`` claim, so they cannot be revoked before they expire.
    """

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "authkeep",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("access token secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def sign(self, subject: str, ttl_seconds: int) -> str:
        issued_at = int(self._clock())
        payload: dict[str, Any] = {
            "sub": subject,
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
            "iss": self.issuer,
            "token_type": "access",
        }
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> AccessClaims:
        """Check the signature first, then the claims, then expiry.

        Raises ``TokenInvalid`` or ``TokenExpired``. Expiry is exact; no clock
        skew allowance is applied.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("malformed token")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenInvalid("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("access_token_invalid_algorithm")
            raise TokenInvalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("signature mismatch")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenInvalid("malformed payload")
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed payload")
        if payload.get("iss") != self.issuer or payload.get("token_type") != "access":
            raise TokenInvalid("unexpected claims")

        subject = payload.get("sub")
        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("missing timestamps")
        if not isinstance(subject, str) or not subject:
            raise TokenInvalid("missing subject")

        if self._clock() >= expires_at:
            raise TokenExpired("token expired")
        return AccessClaims(subject=subject, issued_at=issued_at, expires_at=expires_at)
