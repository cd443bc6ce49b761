from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol, Tuple

from authkeep.config import Settings
from authkeep.logging import get_logger
from authkeep.service import policy
from authkeep.service.email import EmailService
from authkeep.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    ValidationError,
)
from authkeep.service.passwords import PasswordHasher
from authkeep.service.tokens import (
    AccessTokenCodec,
    TokenError,
    TokenExpired,
    generate_opaque_token,
)
from authkeep.storage.errors import ConstraintViolation, StoreUnavailable
from authkeep.storage.models import User

logger = get_logger(__name__)

# Token classes share one keyspace; prefixes keep them apart.
REFRESH_TOKEN_PREFIX = "refresh_token:"
PASSWORD_RESET_PREFIX = "password_reset:"
EMAIL_VERIFY_PREFIX = "email_verify:"
USER_SESSIONS_PREFIX = "user_sessions:"


class CredentialStore(Protocol):
    def create_user(self, email: str, password_hash: str, name: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def mark_email_verified(self, email: str) -> Optional[User]: ...

    def update_password_by_email(self, email: str, password_hash: str) -> bool: ...

    def verify_connection(self) -> None: ...


class TokenStore(Protocol):
    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    async def add_member(self, set_key: str, member: str, ttl_seconds: int) -> None: ...

    async def remove_member(self, set_key: str, member: str) -> None: ...

    async def pop_members(self, set_key: str) -> List[str]: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...

    def verify_connection(self) -> None: ...


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthContext:
    """Authenticated principal resolved from a bearer access token."""

    user_id: str
    expires_at: int


class AuthService:
    """Registration, login and the token lifecycle.

    Holds no per-request state: every mutation goes through the credential
    store or the token store, so one instance is shared across requests.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: TokenStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        codec: Optional[AccessTokenCodec] = None,
        email_service: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or PasswordHasher(settings.password_hash_cost)
        self.codec = codec or AccessTokenCodec(
            settings.jwt_secret, issuer=settings.jwt_issuer
        )
        self.email_service = email_service
        self.logger = logger
        self.access_ttl_seconds = settings.access_token_ttl_minutes * 60
        self.refresh_ttl_seconds = settings.refresh_token_ttl_minutes * 60
        self.reset_ttl_seconds = settings.password_reset_ttl_minutes * 60
        self.verification_ttl_seconds = settings.email_verification_ttl_minutes * 60

    # registration and login

    async def register(
        self, email: str, password: str, name: str
    ) -> Tuple[User, SessionTokens]:
        normalized = policy.normalize_email(email)
        if not policy.is_valid_email(normalized):
            raise ValidationError("invalid email address", detail={"field": "email"})
        self._check_password_policy(password)
        display_name = policy.sanitize_name(name or "")
        if not display_name:
            raise ValidationError("name is required", detail={"field": "name"})

        password_hash = self.hasher.hash(password)
        try:
            user = self.store.create_user(normalized, password_hash, display_name)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id)

        await self.issue_email_verification(user.email)
        tokens = await self.issue_session(user)
        return user, tokens

    async def login(self, email: str, password: str) -> Tuple[User, SessionTokens]:
        normalized = policy.normalize_email(email)
        user = None
        if policy.is_valid_email(normalized):
            user = self.store.get_user_by_email(normalized)
        if user is None:
            # Same hashing work as a real check so timing does not reveal the miss
            self.hasher.dummy_verify(password)
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError("invalid email or password")
        if not self.hasher.verify(password, user.password_hash):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("invalid email or password")

        tokens = await self.issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    # sessions

    async def issue_session(self, user: User) -> SessionTokens:
        access_token = self.codec.sign(user.id, self.access_ttl_seconds)
        refresh_token = generate_opaque_token()
        await self.cache.set(
            REFRESH_TOKEN_PREFIX + refresh_token, user.id, self.refresh_ttl_seconds
        )
        await self.cache.add_member(
            USER_SESSIONS_PREFIX + user.id, refresh_token, self.refresh_ttl_seconds
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    async def rotate_session(self, refresh_token: str) -> Tuple[User, SessionTokens]:
        """Exchange a refresh token for a new session, consuming the old token.

        The owning user is resolved before the token is consumed so a failed
        lookup leaves it valid. Consumption is an atomic pop: of several
        concurrent rotations with the same token only one gets the mapping.
        """
        if not refresh_token:
            raise InvalidTokenError("invalid or expired refresh token")
        key = REFRESH_TOKEN_PREFIX + refresh_token

        user_id = await self.cache.get(key)
        if user_id is None:
            self.logger.info("refresh_rejected", reason="unknown_or_expired")
            raise InvalidTokenError("invalid or expired refresh token")
        user = self.store.get_user(user_id)
        if user is None:
            await self.cache.delete(key)
            self.logger.warning("refresh_rejected", reason="user_missing", user_id=user_id)
            raise InvalidTokenError("invalid or expired refresh token")

        if await self.cache.pop(key) != user_id:
            self.logger.warning("refresh_rejected", reason="already_consumed", user_id=user_id)
            raise InvalidTokenError("invalid or expired refresh token")
        await self.cache.remove_member(USER_SESSIONS_PREFIX + user_id, refresh_token)

        tokens = await self.issue_session(user)
        self.logger.info("session_rotated", user_id=user_id)
        return user, tokens

    async def terminate_session(self, refresh_token: Optional[str]) -> None:
        """Revoke a refresh token. Unknown or missing tokens are a no-op."""
        if not refresh_token:
            return
        user_id = await self.cache.pop(REFRESH_TOKEN_PREFIX + refresh_token)
        if user_id is None:
            return
        await self.cache.remove_member(USER_SESSIONS_PREFIX + user_id, refresh_token)
        self.logger.info("session_terminated", user_id=user_id)

    async def revoke_user_sessions(self, user_id: str) -> int:
        tokens = await self.cache.pop_members(USER_SESSIONS_PREFIX + user_id)
        for token in tokens:
            await self.cache.delete(REFRESH_TOKEN_PREFIX + token)
        return len(tokens)

    # password reset

    async def issue_password_reset(self, email: str) -> Optional[str]:
        """Create a reset token when the account exists.

        Returns None for unknown addresses; callers respond identically in
        both cases. Earlier outstanding tokens for the same email stay valid.
        """
        normalized = policy.normalize_email(email)
        if not policy.is_valid_email(normalized):
            return None
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return None

        token = generate_opaque_token()
        await self.cache.set(PASSWORD_RESET_PREFIX + token, user.email, self.reset_ttl_seconds)
        await self._deliver("password_reset", self._send_reset, user.email, token)
        self.logger.info("password_reset_issued", user_id=user.id)
        return token

    async def redeem_password_reset(self, token: str, new_password: str) -> None:
        """Set a new password for the email bound to ``token``.

        The token is claimed with an atomic pop after the policy check and
        hashing, so of several concurrent redemptions only one updates the
        password. A policy failure leaves the token untouched; a store
        failure during the update puts it back for retry.
        """
        if not token:
            raise InvalidTokenError("invalid or expired reset token")
        key = PASSWORD_RESET_PREFIX + token

        email = await self.cache.get(key)
        if email is None:
            raise InvalidTokenError("invalid or expired reset token")
        self._check_password_policy(new_password)
        password_hash = self.hasher.hash(new_password)

        if await self.cache.pop(key) != email:
            self.logger.warning("password_reset_rejected", reason="already_consumed")
            raise InvalidTokenError("invalid or expired reset token")
        try:
            updated = self.store.update_password_by_email(email, password_hash)
        except StoreUnavailable:
            await self.cache.set(key, email, self.reset_ttl_seconds)
            raise
        if not updated:
            raise InvalidTokenError("invalid or expired reset token")

        try:
            user = self.store.get_user_by_email(email)
            revoked = await self.revoke_user_sessions(user.id) if user else 0
        except StoreUnavailable as exc:
            self.logger.warning("password_reset_cleanup_failed", error=str(exc))
            return
        self.logger.info("password_reset_completed", revoked_sessions=revoked)

    # email verification

    async def issue_email_verification(self, email: str) -> str:
        normalized = policy.normalize_email(email)
        token = generate_opaque_token()
        await self.cache.set(
            EMAIL_VERIFY_PREFIX + token, normalized, self.verification_ttl_seconds
        )
        await self._deliver("email_verification", self._send_verification, normalized, token)
        return token

    async def redeem_email_verification(self, token: str) -> User:
        """Mark the address bound to ``token`` verified; the token is consumed atomically."""
        if not token:
            raise InvalidTokenError("invalid or expired verification token")
        key = EMAIL_VERIFY_PREFIX + token

        email = await self.cache.pop(key)
        if email is None:
            raise InvalidTokenError("invalid or expired verification token")
        try:
            user = self.store.mark_email_verified(email)
        except StoreUnavailable:
            await self.cache.set(key, email, self.verification_ttl_seconds)
            raise
        if user is None:
            raise InvalidTokenError("invalid or expired verification token")
        self.logger.info("email_verified", user_id=user.id)
        return user

    # bearer authentication

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("missing bearer token")
        try:
            claims = self.codec.verify(token)
        except TokenExpired:
            raise AuthenticationError("access token expired")
        except TokenError:
            raise AuthenticationError("invalid access token")
        return AuthContext(user_id=claims.subject, expires_at=claims.expires_at)

    def get_current_user(self, principal: AuthContext) -> User:
        user = self.store.get_user(principal.user_id)
        if user is None:
            raise AuthenticationError("user not found")
        return user

    # helpers

    def _check_password_policy(self, password: str) -> None:
        try:
            policy.validate_password(password or "")
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "password"}) from exc

    def _send_reset(self, email: str, token: str) -> bool:
        return self.email_service.send_password_reset(email, token)

    def _send_verification(self, email: str, token: str) -> bool:
        return self.email_service.send_email_verification(email, token)

    async def _deliver(
        self, kind: str, send: Callable[[str, str], bool], email: str, token: str
    ) -> None:
        if self.email_service is None:
            return
        sent = await asyncio.to_thread(send, email, token)
        if not sent:
            self.logger.warning("email_delivery_failed", kind=kind)
