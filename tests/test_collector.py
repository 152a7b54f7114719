"""ReleaseCollector 상태 전이 테스트."""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from conftest import make_release

from release_feed.cache import ResponseCache
from release_feed.collector import (
    NOT_AUTHENTICATED_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    STORE_ERROR_PREFIX,
    ReleaseCollector,
)
from release_feed.config import AppConfig
from release_feed.errors import Unauthorized, UpstreamTimeout
from release_feed.github_api import GitHubApiError
from release_feed.models import Release
from release_feed.store import ReleaseStore
from release_feed.strategies import FetchContext


def make_auth(token: str | None = "ghp_test") -> MagicMock:
    auth = MagicMock()
    auth.get_access_token.return_value = token
    return auth


class StubStrategy:
    """준비된 릴리스를 병합하거나 준비된 예외를 발생시킨다."""

    name = "stub"

    def __init__(
        self,
        releases: list[Release] | None = None,
        *,
        error: Exception | None = None,
        during_run: Callable[[FetchContext], None] | None = None,
    ) -> None:
        self.releases = releases or []
        self.error = error
        self.during_run = during_run
        self.runs = 0

    async def run(self, ctx: FetchContext) -> None:
        self.runs += 1
        if self.during_run is not None:
            self.during_run(ctx)
        await ctx.merge(self.releases)
        ctx.progress.total_repos = 1
        ctx.progress.repos_processed = 1
        ctx.notify()
        if self.error is not None:
            raise self.error


class FakeClock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_collector(
    config: AppConfig,
    strategy: StubStrategy,
    *,
    auth: MagicMock | None = None,
    store: ReleaseStore | None = None,
    clients: list[MagicMock] | None = None,
    clock: Callable[[], float] | None = None,
) -> ReleaseCollector:
    created = clients if clients is not None else []

    def factory(token: str) -> MagicMock:
        client = MagicMock()
        client.close = AsyncMock()
        created.append(client)
        return client

    kwargs = {"clock": clock} if clock is not None else {}
    return ReleaseCollector(
        auth or make_auth(),
        config,
        store=store,
        cache=ResponseCache(),
        strategy=strategy,
        client_factory=factory,  # type: ignore[arg-type]
        **kwargs,
    )


@pytest.fixture()
def recent(now: datetime) -> list[Release]:
    return [
        make_release("RE_old", now - timedelta(days=3)),
        make_release("RE_new", now - timedelta(hours=1)),
    ]


class TestFetchAllReleases:
    def test_not_authenticated(self, app_config: AppConfig) -> None:
        strategy = StubStrategy()
        collector = make_collector(app_config, strategy, auth=make_auth(None))

        with pytest.raises(Unauthorized):
            asyncio.run(collector.fetch_all_releases())

        assert collector.state.error == NOT_AUTHENTICATED_MESSAGE
        assert strategy.runs == 0

    def test_success_without_store(self, app_config: AppConfig, recent: list[Release]) -> None:
        clients: list[MagicMock] = []
        clock = FakeClock()
        collector = make_collector(app_config, StubStrategy(recent), clients=clients, clock=clock)

        releases = asyncio.run(collector.fetch_all_releases())

        assert [r.id for r in releases] == ["RE_new", "RE_old"]
        assert collector.state.releases == releases
        assert collector.state.loading is False
        assert collector.state.error is None
        assert collector.state.total_repos == 1
        assert collector.state.last_fetch_timestamp == clock.now
        clients[0].close.assert_awaited_once()

    def test_fresh_store_skips_upstream(self, app_config: AppConfig, recent: list[Release]) -> None:
        first = StubStrategy(recent)
        second = StubStrategy([])

        async def run() -> list[Release]:
            writer = make_collector(app_config, first, store=ReleaseStore(app_config.store.path))
            await writer.fetch_all_releases()
            await writer.close()

            reader = make_collector(app_config, second, store=ReleaseStore(app_config.store.path))
            try:
                return await reader.fetch_all_releases()
            finally:
                await reader.close()

        releases = asyncio.run(run())

        assert second.runs == 0
        assert [r.id for r in releases] == ["RE_new", "RE_old"]

    def test_stale_store_shows_cache_while_refreshing(
        self, app_config: AppConfig, recent: list[Release], now: datetime
    ) -> None:
        observed: list[tuple[bool, bool, int]] = []
        collector: ReleaseCollector | None = None

        def capture(ctx: FetchContext) -> None:
            assert collector is not None
            state = collector.state
            observed.append((state.loading, state.background_loading, len(state.releases)))

        fresh = make_release("RE_fresh", now - timedelta(minutes=5))

        async def run() -> list[Release]:
            nonlocal collector
            store = ReleaseStore(app_config.store.path)
            await store.init()
            for release in recent:
                await store.put(release)
            await store.update_metadata(last_fetch_timestamp=0.0)
            await store.close()

            collector = make_collector(
                app_config,
                StubStrategy([fresh], during_run=capture),
                store=ReleaseStore(app_config.store.path),
            )
            try:
                return await collector.fetch_all_releases()
            finally:
                await collector.close()

        releases = asyncio.run(run())

        assert observed == [(False, True, 2)]
        assert [r.id for r in releases] == ["RE_fresh", "RE_new", "RE_old"]
        assert collector is not None
        assert collector.state.background_loading is False

    def test_force_ignores_fresh_store(self, app_config: AppConfig, recent: list[Release]) -> None:
        strategy = StubStrategy(recent)

        async def run() -> None:
            collector = make_collector(app_config, strategy, store=ReleaseStore(app_config.store.path))
            await collector.fetch_all_releases()
            await collector.fetch_all_releases(force=True)
            await collector.close()

        asyncio.run(run())
        assert strategy.runs == 2

    def test_unusable_store_falls_back_to_upstream(
        self, app_config: AppConfig, recent: list[Release], tmp_path: Path
    ) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        strategy = StubStrategy(recent)
        collector = make_collector(app_config, strategy, store=ReleaseStore(blocker / "releases.sqlite3"))

        releases = asyncio.run(collector.fetch_all_releases())

        assert strategy.runs == 1
        assert len(releases) == 2


class TestErrors:
    def test_bad_credentials_expires_session(self, app_config: AppConfig, recent: list[Release]) -> None:
        auth = make_auth()
        clients: list[MagicMock] = []
        collector = make_collector(
            app_config,
            StubStrategy(recent, error=GitHubApiError(401, "Bad credentials")),
            auth=auth,
            clients=clients,
        )

        with pytest.raises(Unauthorized) as exc_info:
            asyncio.run(collector.fetch_all_releases())

        assert isinstance(exc_info.value.__cause__, GitHubApiError)
        assert collector.state.error == SESSION_EXPIRED_MESSAGE
        auth.on_session_invalid.assert_called_once_with()
        clients[0].close.assert_awaited_once()
        # 오류 전에 병합된 릴리스는 유지된다
        assert len(collector.state.releases) == 2
        assert collector.state.loading is False

    def test_store_write_failure_not_reported_as_upstream(
        self, app_config: AppConfig, recent: list[Release]
    ) -> None:
        store = ReleaseStore(app_config.store.path)
        store.put = AsyncMock(side_effect=sqlite3.OperationalError("database or disk is full"))  # type: ignore[method-assign]
        collector = make_collector(app_config, StubStrategy(recent), store=store)

        async def run() -> None:
            try:
                await collector.fetch_all_releases()
            finally:
                await collector.close()

        with pytest.raises(sqlite3.OperationalError):
            asyncio.run(run())

        assert collector.state.error == f"{STORE_ERROR_PREFIX}: database or disk is full"
        assert "GitHub" not in collector.state.error
        assert collector.state.loading is False

    def test_programming_error_propagates_unchanged(self, app_config: AppConfig) -> None:
        auth = make_auth()
        collector = make_collector(app_config, StubStrategy(error=KeyError("tagName")), auth=auth)

        with pytest.raises(KeyError):
            asyncio.run(collector.fetch_all_releases())

        auth.on_session_invalid.assert_not_called()

    def test_error_cleared_on_next_success(self, app_config: AppConfig, recent: list[Release]) -> None:
        strategy = StubStrategy(recent, error=httpx.ReadTimeout("slow"))
        collector = make_collector(app_config, strategy)

        with pytest.raises(UpstreamTimeout):
            asyncio.run(collector.fetch_all_releases())
        assert collector.state.error == "Request timeout contacting GitHub"
        assert collector.state.last_fetch_timestamp is None

        strategy.error = None
        asyncio.run(collector.fetch_all_releases())
        assert collector.state.error is None


class TestRefreshAndClear:
    def test_refresh_if_stale(self, app_config: AppConfig, recent: list[Release]) -> None:
        clock = FakeClock()
        strategy = StubStrategy(recent)
        collector = make_collector(app_config, strategy, clock=clock)

        async def run() -> None:
            await collector.refresh_if_stale(300)
            clock.now += 100
            await collector.refresh_if_stale(300)
            clock.now += 300
            await collector.refresh_if_stale(300)

        asyncio.run(run())
        assert strategy.runs == 2

    def test_refresh_uses_store_metadata(self, app_config: AppConfig, recent: list[Release]) -> None:
        strategy = StubStrategy([])

        async def run() -> list[Release]:
            store = ReleaseStore(app_config.store.path)
            await store.init()
            for release in recent:
                await store.put(release)
            await store.update_metadata()
            await store.close()

            collector = make_collector(app_config, strategy, store=ReleaseStore(app_config.store.path))
            try:
                return await collector.refresh_if_stale(300)
            finally:
                await collector.close()

        releases = asyncio.run(run())

        assert strategy.runs == 0
        assert [r.id for r in releases] == ["RE_new", "RE_old"]

    def test_clear_cache(self, app_config: AppConfig, recent: list[Release]) -> None:
        async def run() -> tuple[ReleaseCollector, list[Release]]:
            store = ReleaseStore(app_config.store.path)
            collector = make_collector(app_config, StubStrategy(recent), store=store)
            await collector.fetch_all_releases()
            await collector.clear_cache()
            remaining = await store.load_cached()
            await collector.close()
            return collector, remaining

        collector, remaining = asyncio.run(run())

        assert remaining == []
        assert collector.state.releases == []
        assert collector.state.last_fetch_timestamp is None
        assert collector.groups() == []

    def test_groups(self, app_config: AppConfig, recent: list[Release]) -> None:
        collector = make_collector(app_config, StubStrategy(recent))
        asyncio.run(collector.fetch_all_releases())

        groups = collector.groups()

        assert [[r.id for r in g.releases] for g in groups] == [["RE_new"], ["RE_old"]]
        assert collector.groups() is groups
