"""Serializes OAuth token refreshes per ``tenant:service``.

Both CRM and accounting providers rotate the refresh token on use, so two
concurrent refreshes for the same tenant would leave one of them holding an
invalidated token. Concurrent callers share the in-flight refresh; a new
refresh that starts too soon after the previous one completed is rejected.

This lock is process-local. Instances sharing a token store can still race.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from dealbridge.errors import RateLimitedError
from dealbridge.metrics import observe_token_refresh


logger = logging.getLogger("dealbridge.auth.refresh")

T = TypeVar("T")


class TokenRefreshManager(Generic[T]):
    def __init__(self, min_interval_seconds: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._in_flight: dict[str, asyncio.Task[T]] = {}
        self._last_completed: dict[str, float] = {}

    @staticmethod
    def key_for(tenant_id: str, service: str) -> str:
        return f"{tenant_id}:{service}"

    async def refresh(self, tenant_id: str, service: str, refresh_fn: Callable[[], Awaitable[T]]) -> T:
        key = self.key_for(tenant_id, service)

        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            logger.info("auth.refresh.joined", extra={"tenant_id": tenant_id, "service": service, "key": key})
            return await asyncio.shield(in_flight)

        last_completed = self._last_completed.get(key)
        if last_completed is not None:
            elapsed = self._clock() - last_completed
            if elapsed < self.min_interval_seconds:
                retry_after = max(1, math.ceil(self.min_interval_seconds - elapsed))
                logger.warning(
                    "auth.refresh.rate_limited",
                    extra={"tenant_id": tenant_id, "service": service, "key": key, "retry_after_seconds": retry_after},
                )
                observe_token_refresh(service, "rate_limited")
                raise RateLimitedError(
                    f"Token refresh rate limit exceeded. Please wait {retry_after} seconds.",
                    retry_after_seconds=retry_after,
                )

        logger.info("auth.refresh.started", extra={"tenant_id": tenant_id, "service": service, "key": key})
        task = asyncio.ensure_future(self._execute(key, service, refresh_fn))
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _execute(self, key: str, service: str, refresh_fn: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await refresh_fn()
        except Exception as exc:
            logger.error("auth.refresh.failed", extra={"key": key, "service": service, "error": str(exc)})
            observe_token_refresh(service, "failed")
            raise
        else:
            logger.info("auth.refresh.succeeded", extra={"key": key, "service": service})
            observe_token_refresh(service, "succeeded")
            return result
        finally:
            self._in_flight.pop(key, None)
            self._last_completed[key] = self._clock()

    def status(self) -> dict[str, Any]:
        now = self._clock()
        interval_ms = self.min_interval_seconds * 1000
        return {
            "active_refreshes": sorted(self._in_flight),
            "refresh_count": len(self._in_flight),
            "rate_limited_tokens": [
                {
                    "key": key,
                    "can_refresh_in_ms": max(0, round(interval_ms - (now - completed) * 1000)),
                }
                for key, completed in sorted(self._last_completed.items())
            ],
        }

    def clear(self) -> None:
        self._in_flight.clear()
        self._last_completed.clear()
