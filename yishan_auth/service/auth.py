from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from yishan_auth.config import Settings
from yishan_auth.logging import get_logger
from yishan_auth.service.errors import (
    AuthenticationError,
    CredentialError,
    CredentialFailure,
    NotFoundError,
    TokenError,
    TokenFailure,
)
from yishan_auth.service.token_store import TokenStore
from yishan_auth.service.tokens import TokenIssuer
from yishan_auth.storage.models import LoginEvent, User, UserStatus

logger = get_logger(__name__)

DEFAULT_CLIENT_IP = "127.0.0.1"
PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        real_name: Optional[str] = None,
        status: UserStatus = UserStatus.ENABLED,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def set_user_status(self, user_id: int, status: UserStatus) -> Optional[User]: ...

    def record_login_success(
        self, user_id: int, login_time: datetime, client_ip: Optional[str]
    ) -> Optional[User]: ...

    def record_login_failure(self, user_id: int) -> int: ...

    def save_password(self, user_id: int, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: int) -> Optional[tuple[str, str]]: ...

    def record_login_event(
        self,
        username: str,
        success: bool,
        message: str,
        *,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginEvent: ...

    def assign_user_roles(self, user_id: int, role_ids: Sequence[int]) -> None: ...

    def get_user_role_ids(self, user_id: int) -> List[int]: ...


@dataclass
class AuthContext:
    user_id: int
    username: str
    role_ids: List[int] = field(default_factory=list)
    token_id: Optional[int] = None
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_token_expires_in: int
    refresh_token_expires_in: int
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    token_type: str = "Bearer"


class AuthService:
    """Login, bearer validation, refresh rotation and logout.

    Signature checks come from :class:`TokenIssuer`; session validity, revocation
    and rotation from :class:`TokenStore`; identity and status from the
    credential store. The user's *current* status is re-read on every validate
    and refresh so an administrator's disable or lock takes effect immediately.
    """

    def __init__(
        self,
        store: AuthStore,
        token_store: TokenStore,
        issuer: TokenIssuer,
        settings: Settings,
    ) -> None:
        self.store: AuthStore = store
        self.token_store = token_store
        self.issuer = issuer
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._decoy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        return datetime.now(timezone.utc)

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, PASSWORD_ALGO

    def _burn_password_check(self, password: str) -> None:
        # Spend the same argon2 work for unknown users as for real ones
        if self._decoy_hash is None:
            self._decoy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._decoy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            pass

    def verify_password(self, user_id: int, password: str) -> bool:
        """Verify a user's password against the stored salted hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            self._burn_password_check(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: int, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    def create_user(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        real_name: Optional[str] = None,
        role_ids: Sequence[int] = (),
        status: UserStatus = UserStatus.ENABLED,
    ) -> User:
        user = self.store.create_user(
            username, email=email, real_name=real_name, status=status
        )
        self.save_password(user.id, password)
        if role_ids:
            self.store.assign_user_roles(user.id, list(role_ids))
        self.logger.info("user_created", user_id=user.id, username=username)
        return user

    # -- status ------------------------------------------------------------

    @staticmethod
    def _check_status(user: User) -> None:
        if user.status == UserStatus.DISABLED:
            raise CredentialError(CredentialFailure.ACCOUNT_DISABLED)
        if user.status == UserStatus.LOCKED:
            raise CredentialError(CredentialFailure.ACCOUNT_LOCKED)

    def _current_user(self, user_id: int) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise CredentialError(CredentialFailure.USER_NOT_FOUND)
        self._check_status(user)
        return user

    async def set_user_status(self, user_id: int, status: UserStatus) -> User:
        user = self.store.set_user_status(user_id, status)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_status_changed", user_id=user_id, status=int(status))
        return user

    async def lock_user(self, user_id: int) -> int:
        """Lock the account and revoke every session it holds."""
        await self.set_user_status(user_id, UserStatus.LOCKED)
        return await self.token_store.revoke_all_for_user(user_id)

    # -- token issuance ----------------------------------------------------

    def _claims(self, user: User, token_type: str) -> dict[str, Any]:
        return {
            "sub": str(user.id),
            "userId": user.id,
            "username": user.username,
            "email": user.email,
            "status": int(user.status),
            "type": token_type,
        }

    def _ttls(self, remember_me: bool) -> tuple[int, int]:
        if remember_me:
            return (
                self.settings.remember_me_access_token_ttl_seconds,
                self.settings.remember_me_refresh_token_ttl_seconds,
            )
        return self.settings.access_token_ttl_seconds, self.settings.refresh_token_ttl_seconds

    def _mint_pair(self, user: User, access_ttl: int, refresh_ttl: int) -> TokenPair:
        now = self._now()
        return TokenPair(
            access_token=self.issuer.issue(self._claims(user, "access"), access_ttl),
            refresh_token=self.issuer.issue(self._claims(user, "refresh"), refresh_ttl),
            access_token_expires_in=access_ttl,
            refresh_token_expires_in=refresh_ttl,
            access_token_expires_at=now + timedelta(seconds=access_ttl),
            refresh_token_expires_at=now + timedelta(seconds=refresh_ttl),
        )

    def _record_login_event(
        self,
        username: str,
        success: bool,
        message: str,
        *,
        user_id: Optional[int],
        client_ip: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        try:
            self.store.record_login_event(
                username,
                success,
                message,
                user_id=user_id,
                ip_address=client_ip,
                user_agent=user_agent,
            )
        except Exception as exc:
            self.logger.warning("login_event_write_failed", user_id=user_id, error=str(exc))

    # -- operations --------------------------------------------------------

    async def login(
        self,
        identifier: str,
        password: str,
        client_ip: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> TokenPair:
        """Authenticate by username or email and persist a fresh token pair.

        Raises:
            CredentialError: unknown user or wrong password (same public
                message), disabled or locked account.
        """
        client_ip = client_ip or DEFAULT_CLIENT_IP
        user = self.store.get_user_by_identifier(identifier)
        if not user:
            self._burn_password_check(password)
            self._record_login_event(
                identifier, False, "user not found",
                user_id=None, client_ip=client_ip, user_agent=user_agent,
            )
            self.logger.info("login_rejected", reason=CredentialFailure.USER_NOT_FOUND.value)
            raise CredentialError(CredentialFailure.USER_NOT_FOUND)

        try:
            self._check_status(user)
        except CredentialError as exc:
            self._record_login_event(
                user.username, False, exc.message,
                user_id=user.id, client_ip=client_ip, user_agent=user_agent,
            )
            self.logger.info("login_rejected", user_id=user.id, reason=exc.reason.value)
            raise

        if not self.verify_password(user.id, password):
            failures = self.store.record_login_failure(user.id)
            message = "invalid password"
            limit = self.settings.max_login_failed_attempts
            if limit and failures >= limit:
                revoked = await self.lock_user(user.id)
                message = f"account locked after {failures} failed attempts"
                self.logger.warning(
                    "account_auto_locked", user_id=user.id, failures=failures, revoked=revoked
                )
            self._record_login_event(
                user.username, False, message,
                user_id=user.id, client_ip=client_ip, user_agent=user_agent,
            )
            self.logger.info(
                "login_rejected",
                user_id=user.id,
                reason=CredentialFailure.INVALID_PASSWORD.value,
                failures=failures,
            )
            raise CredentialError(CredentialFailure.INVALID_PASSWORD)

        login_time = self._now()
        self.store.record_login_success(user.id, login_time, client_ip)
        access_ttl, refresh_ttl = self._ttls(remember_me)
        pair = self._mint_pair(user, access_ttl, refresh_ttl)
        record = await self.token_store.create(
            user.id,
            pair.access_token,
            pair.refresh_token,
            pair.access_token_expires_at,
            pair.refresh_token_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        self._record_login_event(
            user.username, True, "login succeeded",
            user_id=user.id, client_ip=client_ip, user_agent=user_agent,
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, record_id=record.id, remember_me=remember_me
        )
        return pair

    async def validate(self, access_token: str) -> AuthContext:
        """Check store validity, then the signature, then the user's current status.

        Raises:
            TokenError: not found, revoked, expired, bad signature or not an
                access token.
            CredentialError: owner missing, disabled or locked.
        """
        record = (await self.token_store.validate_access(access_token)).raise_for_failure()
        claims = self.issuer.verify(access_token)
        if claims.get("type") != "access":
            raise TokenError(TokenFailure.WRONG_TOKEN_TYPE)
        if claims.get("sub") != str(record.user_id):
            raise TokenError(TokenFailure.INVALID_SIGNATURE, "token subject mismatch")
        user = self._current_user(record.user_id)
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role_ids=self.store.get_user_role_ids(user.id),
            token_id=record.id,
            claims=claims,
        )

    async def refresh(self, refresh_token: str, client_ip: Optional[str] = None) -> TokenPair:
        """Rotate the pair held by ``refresh_token``.

        The ``type`` claim is checked before the store lookup so an access
        token presented here reports ``wrong_token_type`` rather than
        ``not_found``. New tokens always use the default TTLs.
        """
        claims = self.issuer.verify(refresh_token)
        if claims.get("type") != "refresh":
            raise TokenError(TokenFailure.WRONG_TOKEN_TYPE)
        record = (await self.token_store.validate_refresh(refresh_token)).raise_for_failure()
        if claims.get("sub") != str(record.user_id):
            raise TokenError(TokenFailure.INVALID_SIGNATURE, "token subject mismatch")
        user = self._current_user(record.user_id)
        pair = self._mint_pair(
            user,
            self.settings.access_token_ttl_seconds,
            self.settings.refresh_token_ttl_seconds,
        )
        await self.token_store.rotate(
            refresh_token,
            pair.access_token,
            pair.refresh_token,
            pair.access_token_expires_at,
            pair.refresh_token_expires_at,
            client_ip=client_ip,
        )
        return pair

    async def logout(self, user_id: int, access_token: Optional[str] = None) -> None:
        """Revoke one session (or all of the user's) without ever raising."""
        try:
            if access_token:
                record = await self.token_store.revoke_by_access_token(
                    access_token, user_id=user_id
                )
                self.logger.info(
                    "logout", user_id=user_id, record_id=record.id if record else None
                )
            else:
                count = await self.token_store.revoke_all_for_user(user_id)
                self.logger.info("logout_all", user_id=user_id, count=count)
        except Exception as exc:
            self.logger.warning("logout_revoke_failed", user_id=user_id, error=str(exc))

    def identify(self, access_token: str) -> Optional[int]:
        """Return the user id of a genuine access token, ignoring expiry and revocation."""
        try:
            claims = self.issuer.verify(access_token, verify_expiry=False)
        except TokenError:
            return None
        if claims.get("type") != "access":
            return None
        try:
            return int(claims["sub"])
        except (KeyError, TypeError, ValueError):
            return None

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        # Scheme prefix is case-sensitive
        if not header or not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self.extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        return await self.validate(token)

    def get_profile(self, user_id: int) -> dict[str, Any]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "real_name": user.real_name,
            "status": int(user.status),
            "last_login_time": user.last_login_time,
            "last_login_ip": user.last_login_ip,
            "login_count": user.login_count,
            "role_ids": self.store.get_user_role_ids(user.id),
            "created_at": user.created_at,
        }
