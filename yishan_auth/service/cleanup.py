from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from yishan_auth.logging import get_logger
from yishan_auth.service.token_store import TokenStore

logger = get_logger(__name__)


@dataclass
class CleanupResult:
    deleted_count: int
    execution_time_ms: int
    timestamp: datetime


class TokenCleanupService:
    """Sweeps token records whose access and refresh expiries have both passed."""

    def __init__(self, token_store: TokenStore, *, environment: str = "development") -> None:
        self.token_store = token_store
        self.environment = environment
        self.last_cleanup_time: Optional[datetime] = None
        self.last_deleted_count: Optional[int] = None
        self._state_lock = threading.Lock()

    async def execute_cleanup(self) -> CleanupResult:
        started = time.perf_counter()
        deleted = await self.token_store.cleanup_expired()
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        finished_at = datetime.now(timezone.utc)
        with self._state_lock:
            self.last_cleanup_time = finished_at
            self.last_deleted_count = deleted
        logger.info("token_cleanup_completed", deleted_count=deleted, execution_time_ms=elapsed_ms)
        return CleanupResult(
            deleted_count=deleted, execution_time_ms=elapsed_ms, timestamp=finished_at
        )

    async def get_cleanup_stats(self) -> dict[str, Any]:
        stats = await self.token_store.stats()
        with self._state_lock:
            last_cleanup = self.last_cleanup_time
        return {
            "service_type": "token_cleanup",
            "environment": self.environment,
            "total_tokens": stats.total,
            "expired_tokens": stats.expired,
            "revoked_tokens": stats.revoked,
            "last_cleanup_time": last_cleanup,
        }

    async def health_check(self) -> dict[str, Any]:
        """Report whether the token table is reachable; never raises."""
        try:
            stats = await self.token_store.stats()
        except Exception as exc:
            logger.warning("token_cleanup_health_failed", error=str(exc))
            return {"healthy": False, "error": type(exc).__name__}
        return {"healthy": True, "total_tokens": stats.total}
