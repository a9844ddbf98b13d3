from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from yishan_auth.logging import fingerprint, get_logger
from yishan_auth.service.errors import StoreError, TokenError, TokenFailure
from yishan_auth.storage.errors import ConstraintViolation
from yishan_auth.storage.models import TokenRecord, TokenStats, utcnow
from yishan_auth.storage.redis_cache import token_cache_key

logger = get_logger(__name__)

T = TypeVar("T")

ACCESS = "access"
REFRESH = "refresh"


class TokenRecordStore(Protocol):
    def create_token_record(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenRecord: ...

    def get_token_by_access(self, access_token: str) -> Optional[TokenRecord]: ...

    def get_token_by_refresh(self, refresh_token: str) -> Optional[TokenRecord]: ...

    def rotate_token_record(
        self,
        old_refresh_token: str,
        new_access_token: str,
        new_refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
    ) -> Optional[tuple[TokenRecord, str]]: ...

    def revoke_token_record(self, token_id: int) -> Optional[TokenRecord]: ...

    def revoke_user_tokens(self, user_id: int) -> List[TokenRecord]: ...

    def delete_expired_tokens(self, now: datetime) -> List[tuple[str, str]]: ...

    def token_stats(self, now: datetime, user_id: Optional[int] = None) -> TokenStats: ...


class TokenCache(Protocol):
    async def get_token_record(self, kind: str, token: str) -> Optional[dict]: ...

    async def set_token_record(
        self, kind: str, token: str, payload: dict, ttl_seconds: int
    ) -> None: ...

    async def delete_keys(self, *keys: str) -> int: ...


@dataclass
class TokenValidation:
    valid: bool
    reason: Optional[TokenFailure] = None
    record: Optional[TokenRecord] = None

    def raise_for_failure(self) -> TokenRecord:
        if not self.valid or self.record is None:
            raise TokenError(self.reason or TokenFailure.NOT_FOUND)
        return self.record


def record_to_cache(record: TokenRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "access_token": record.access_token,
        "refresh_token": record.refresh_token,
        "access_token_expires_at": record.access_token_expires_at.isoformat(),
        "refresh_token_expires_at": record.refresh_token_expires_at.isoformat(),
        "token_type": record.token_type,
        "client_ip": record.client_ip,
        "user_agent": record.user_agent,
        "is_revoked": record.is_revoked,
        "revoked_at": record.revoked_at.isoformat() if record.revoked_at else None,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
    }


def record_from_cache(data: dict[str, Any]) -> TokenRecord:
    revoked_at = data.get("revoked_at")
    return TokenRecord(
        id=int(data["id"]),
        user_id=int(data["user_id"]),
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        access_token_expires_at=datetime.fromisoformat(data["access_token_expires_at"]),
        refresh_token_expires_at=datetime.fromisoformat(data["refresh_token_expires_at"]),
        token_type=data.get("token_type", "Bearer"),
        client_ip=data.get("client_ip"),
        user_agent=data.get("user_agent"),
        is_revoked=bool(data.get("is_revoked", False)),
        revoked_at=datetime.fromisoformat(revoked_at) if revoked_at else None,
        created_at=datetime.fromisoformat(data["created_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


def _row_state(record: TokenRecord) -> tuple:
    return (
        record.id,
        record.access_token,
        record.refresh_token,
        record.access_token_expires_at,
        record.refresh_token_expires_at,
        record.is_revoked,
    )


class TokenStore:
    """Authoritative token-record lifecycle with an advisory read-through cache.

    Reads may be answered from the cache; every write deletes the affected
    cache entries before returning. Cache failures are logged and ignored,
    persistence failures surface as ``StoreError``.
    """

    def __init__(
        self,
        store: TokenRecordStore,
        cache: Optional[TokenCache] = None,
        *,
        cache_ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except ConstraintViolation:
            raise
        except Exception as exc:
            self.logger.error("token_store_failed", operation=operation, error=str(exc))
            raise StoreError("token store unavailable", detail={"operation": operation}) from exc

    # -- cache helpers -----------------------------------------------------

    async def _cache_get(self, kind: str, token: str) -> Optional[TokenRecord]:
        if not self.cache:
            return None
        try:
            payload = await self.cache.get_token_record(kind, token)
            if not payload:
                return None
            return record_from_cache(payload)
        except Exception as exc:
            self.logger.warning("token_cache_read_failed", kind=kind, error=str(exc))
            return None

    async def _cache_put(self, kind: str, token: str, record: TokenRecord) -> bool:
        if not self.cache or record.is_revoked:
            return False
        expires_at = (
            record.access_token_expires_at if kind == ACCESS else record.refresh_token_expires_at
        )
        remaining = int((expires_at - self._now()).total_seconds())
        ttl = min(self.cache_ttl_seconds, remaining)
        if ttl <= 0:
            return False
        try:
            await self.cache.set_token_record(kind, token, record_to_cache(record), ttl)
        except Exception as exc:
            self.logger.warning("token_cache_write_failed", kind=kind, error=str(exc))
            return False
        return True

    async def _invalidate(self, *pairs: tuple[str, str]) -> None:
        if not self.cache or not pairs:
            return
        keys = [token_cache_key(kind, token) for kind, token in pairs]
        try:
            await self.cache.delete_keys(*keys)
        except Exception as exc:
            self.logger.warning(
                "token_cache_invalidate_failed", key_count=len(keys), error=str(exc)
            )

    async def _invalidate_record(self, record: TokenRecord) -> None:
        await self._invalidate((ACCESS, record.access_token), (REFRESH, record.refresh_token))

    async def _lookup(self, kind: str, token: str) -> Optional[TokenRecord]:
        cached = await self._cache_get(kind, token)
        if cached is not None:
            return cached
        getter = (
            self.store.get_token_by_access if kind == ACCESS else self.store.get_token_by_refresh
        )
        record = self._call(f"get_by_{kind}", getter, token)
        if record is not None and await self._cache_put(kind, token, record):
            await self._confirm_cached(kind, token, record, getter)
        return record

    async def _confirm_cached(
        self,
        kind: str,
        token: str,
        record: TokenRecord,
        getter: Callable[[str], Optional[TokenRecord]],
    ) -> None:
        """Drop the entry just written if the row changed while the write was in flight.

        A revoke or rotate that lands between the store read and the cache
        write deletes its keys before this write arrives; re-reading afterwards
        catches that ordering.
        """
        try:
            current = getter(token)
        except Exception as exc:
            self.logger.warning("token_cache_confirm_failed", kind=kind, error=str(exc))
            current = None
        if current is None or _row_state(current) != _row_state(record):
            await self._invalidate((kind, token))

    # -- operations --------------------------------------------------------

    async def create(
        self,
        user_id: int,
        access_token: str,
        refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenRecord:
        return self._call(
            "create",
            self.store.create_token_record,
            user_id,
            access_token,
            refresh_token,
            access_token_expires_at,
            refresh_token_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )

    async def _validate(self, kind: str, token: str) -> TokenValidation:
        record = await self._lookup(kind, token)
        if record is None:
            return TokenValidation(False, TokenFailure.NOT_FOUND)
        if record.is_revoked:
            return TokenValidation(False, TokenFailure.REVOKED, record)
        expires_at = (
            record.access_token_expires_at if kind == ACCESS else record.refresh_token_expires_at
        )
        if self._now() > expires_at:
            return TokenValidation(False, TokenFailure.EXPIRED, record)
        return TokenValidation(True, None, record)

    async def validate_access(self, access_token: str) -> TokenValidation:
        return await self._validate(ACCESS, access_token)

    async def validate_refresh(self, refresh_token: str) -> TokenValidation:
        return await self._validate(REFRESH, refresh_token)

    async def rotate(
        self,
        old_refresh_token: str,
        new_access_token: str,
        new_refresh_token: str,
        access_token_expires_at: datetime,
        refresh_token_expires_at: datetime,
        *,
        client_ip: Optional[str] = None,
    ) -> TokenRecord:
        """Overwrite the pair held by ``old_refresh_token`` in place.

        Raises:
            TokenError: ``not_found`` when no live row holds the old value,
                which is what a replayed or concurrently rotated token sees.
        """
        result = self._call(
            "rotate",
            self.store.rotate_token_record,
            old_refresh_token,
            new_access_token,
            new_refresh_token,
            access_token_expires_at,
            refresh_token_expires_at,
            client_ip=client_ip,
        )
        if result is None:
            await self._invalidate((REFRESH, old_refresh_token))
            self.logger.warning(
                "token_rotation_miss", presented_fingerprint=fingerprint(old_refresh_token)
            )
            raise TokenError(TokenFailure.NOT_FOUND)
        record, previous_access = result
        await self._invalidate((ACCESS, previous_access), (REFRESH, old_refresh_token))
        self.logger.info(
            "token_rotated",
            record_id=record.id,
            user_id=record.user_id,
            superseded_fingerprint=fingerprint(old_refresh_token),
        )
        return record

    async def revoke(self, token_id: int) -> Optional[TokenRecord]:
        record = self._call("revoke", self.store.revoke_token_record, token_id)
        if record is not None:
            await self._invalidate_record(record)
        return record

    async def revoke_by_access_token(
        self, access_token: str, *, user_id: Optional[int] = None
    ) -> Optional[TokenRecord]:
        """Revoke the record holding ``access_token``; ``user_id`` restricts it to its owner."""
        record = self._call("get_by_access", self.store.get_token_by_access, access_token)
        if record is None or (user_id is not None and record.user_id != user_id):
            await self._invalidate((ACCESS, access_token))
            return None
        return await self.revoke(record.id)

    async def revoke_all_for_user(self, user_id: int) -> int:
        records = self._call("revoke_all", self.store.revoke_user_tokens, user_id)
        for record in records:
            await self._invalidate_record(record)
        if records:
            self.logger.info("user_tokens_revoked", user_id=user_id, count=len(records))
        return len(records)

    async def cleanup_expired(self) -> int:
        """Delete records whose access and refresh expiries have both passed."""
        removed = self._call("cleanup", self.store.delete_expired_tokens, self._now())
        for access_token, refresh_token in removed:
            await self._invalidate((ACCESS, access_token), (REFRESH, refresh_token))
        return len(removed)

    async def stats(self) -> TokenStats:
        return self._call("stats", self.store.token_stats, self._now())

    async def user_stats(self, user_id: int) -> TokenStats:
        return self._call("stats", self.store.token_stats, self._now(), user_id=user_id)
