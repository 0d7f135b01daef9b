from __future__ import annotations

import asyncio

import pytest

from dealbridge.auth.refresh import TokenRefreshManager
from dealbridge.errors import RateLimitedError


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def manager(clock: FakeClock) -> TokenRefreshManager[str]:
    return TokenRefreshManager(min_interval_seconds=5.0, clock=clock)


def test_concurrent_refreshes_share_one_call(manager: TokenRefreshManager[str]) -> None:
    calls = 0

    async def refresh_fn() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return "new-token"

    async def scenario() -> list[str]:
        return await asyncio.gather(
            manager.refresh("company-1", "crm", refresh_fn),
            manager.refresh("company-1", "crm", refresh_fn),
        )

    assert asyncio.run(scenario()) == ["new-token", "new-token"]
    assert calls == 1


def test_refresh_within_interval_is_rate_limited(manager: TokenRefreshManager[str], clock: FakeClock) -> None:
    async def refresh_fn() -> str:
        return "token"

    asyncio.run(manager.refresh("company-1", "crm", refresh_fn))
    clock.advance(1.5)

    with pytest.raises(RateLimitedError) as exc_info:
        asyncio.run(manager.refresh("company-1", "crm", refresh_fn))
    assert exc_info.value.retry_after_seconds == 4
    assert exc_info.value.status_code == 429


def test_refresh_allowed_after_interval(manager: TokenRefreshManager[str], clock: FakeClock) -> None:
    results = iter(["first", "second"])

    async def refresh_fn() -> str:
        return next(results)

    assert asyncio.run(manager.refresh("company-1", "crm", refresh_fn)) == "first"
    clock.advance(5.0)
    assert asyncio.run(manager.refresh("company-1", "crm", refresh_fn)) == "second"


def test_keys_are_independent_per_tenant_and_service(manager: TokenRefreshManager[str]) -> None:
    async def refresh_fn() -> str:
        return "token"

    asyncio.run(manager.refresh("company-1", "crm", refresh_fn))
    assert asyncio.run(manager.refresh("company-1", "accounting", refresh_fn)) == "token"
    assert asyncio.run(manager.refresh("company-2", "crm", refresh_fn)) == "token"


def test_failure_reaches_every_waiter_and_still_records_completion(
    manager: TokenRefreshManager[str],
    clock: FakeClock,
) -> None:
    calls = 0

    async def refresh_fn() -> str:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        raise RuntimeError("refresh token revoked")

    async def scenario() -> list[object]:
        return await asyncio.gather(
            manager.refresh("company-1", "crm", refresh_fn),
            manager.refresh("company-1", "crm", refresh_fn),
            return_exceptions=True,
        )

    results = asyncio.run(scenario())
    assert calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert manager.status()["active_refreshes"] == []

    with pytest.raises(RateLimitedError):
        asyncio.run(manager.refresh("company-1", "crm", refresh_fn))
    assert calls == 1


def test_status_reports_in_flight_and_cooldown(manager: TokenRefreshManager[str], clock: FakeClock) -> None:
    async def scenario() -> dict:
        started = asyncio.Event()
        release = asyncio.Event()

        async def refresh_fn() -> str:
            started.set()
            await release.wait()
            return "token"

        task = asyncio.ensure_future(manager.refresh("company-1", "crm", refresh_fn))
        await started.wait()
        during = manager.status()
        release.set()
        await task
        return during

    during = asyncio.run(scenario())
    assert during["active_refreshes"] == ["company-1:crm"]
    assert during["refresh_count"] == 1

    clock.advance(2.0)
    after = manager.status()
    assert after["refresh_count"] == 0
    assert after["rate_limited_tokens"] == [{"key": "company-1:crm", "can_refresh_in_ms": 3000}]

    manager.clear()
    assert manager.status()["rate_limited_tokens"] == []
