"""릴리스 수집기 (UI/CLI 진입점).

상태 전이: Idle → Loading → Idle | Error
- 저장소에 캐시가 있고 신선하면 upstream 호출 없이 반환
- 캐시가 오래되었으면 캐시를 먼저 노출하고 background_loading으로 갱신
- 오류는 단일 메시지로 저장하고, 다음 성공 시 지운다 (이미 병합된 릴리스는 유지)
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from release_feed.auth import AuthProvider, user_id_for_token
from release_feed.cache import ResponseCache, get_response_cache
from release_feed.config import AppConfig
from release_feed.errors import UPSTREAM_ERRORS, ReleaseFeedError, Unauthorized, classify_error
from release_feed.github_api import GitHubClient, create_github_client
from release_feed.grouping import ReleaseGrouper
from release_feed.models import Release, ReleaseGroup
from release_feed.normalizer import merge_releases, rolling_cutoff, sort_releases
from release_feed.store import ReleaseStore
from release_feed.strategies import FetchContext, ReleaseFetchStrategy, get_strategy

logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."
NOT_AUTHENTICATED_MESSAGE = "Not authenticated"
STORE_ERROR_PREFIX = "Local release cache error"


@dataclass
class FeedState:
    """수집 상태 (UI 노출용)."""

    releases: list[Release] = field(default_factory=list)
    loading: bool = False
    background_loading: bool = False
    error: str | None = None
    repos_processed: int = 0
    total_repos: int = 0
    rate_limit_cost: int = 0
    rate_limit_remaining: int | None = None
    rate_limit_reset_at: datetime | None = None
    last_fetch_timestamp: float | None = None


class ReleaseCollector:
    """별 목록 저장소의 최근 릴리스를 모아 정렬된 목록으로 제공한다.

    Args:
        auth: access token 제공자
        config: 애플리케이션 설정
        store: 로컬 영속 저장소 (None이면 항상 upstream 조회)
        cache: 응답 캐시 (기본: 프로세스 전역 인스턴스)
        strategy: 수집 전략 (기본: config.fetch.strategy)
        client_factory: 테스트용 클라이언트 생성 함수
    """

    def __init__(
        self,
        auth: AuthProvider,
        config: AppConfig,
        *,
        store: ReleaseStore | None = None,
        cache: ResponseCache | None = None,
        strategy: ReleaseFetchStrategy | None = None,
        client_factory: Callable[[str], GitHubClient] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._auth = auth
        self._config = config
        self._store = store
        self._store_ready = False
        self._cache = cache if cache is not None else get_response_cache()
        self._strategy = strategy or get_strategy(config.fetch.strategy)
        self._client_factory = client_factory or (
            lambda token: create_github_client(token, config=config.github)
        )
        self._clock = clock
        self._releases: dict[str, Release] = {}
        self._grouper = ReleaseGrouper()
        self.state = FeedState()

    # ── 내부 ─────────────────────────────────────────────

    async def _ensure_store(self) -> ReleaseStore | None:
        """저장소를 초기화한다. 실패하면 저장소 없이 동작한다."""
        if self._store is None or self._store_ready:
            return self._store
        try:
            await self._store.init()
        except Exception as exc:
            logger.warning(
                "Release store unavailable, always fetching: %s",
                exc,
                extra={"event_code": "STORE_UNAVAILABLE"},
            )
            self._store = None
            return None
        self._store_ready = True
        return self._store

    def _publish(self) -> None:
        self.state.releases = sort_releases(self._releases.values())

    def _on_progress(self, ctx: FetchContext) -> None:
        self.state.repos_processed = ctx.progress.repos_processed
        self.state.total_repos = ctx.progress.total_repos
        self.state.rate_limit_cost = ctx.rate_limit.total_cost
        self.state.rate_limit_remaining = ctx.rate_limit.remaining
        self.state.rate_limit_reset_at = ctx.rate_limit.reset_at
        self._publish()

    async def _load_cached(self, store: ReleaseStore) -> bool:
        cached = await store.load_cached()
        if not cached:
            return False
        merge_releases(self._releases, cached)
        self._publish()
        logger.info("Loaded %d cached releases", len(cached))
        return True

    def _fail(self, error: ReleaseFeedError) -> None:
        if isinstance(error, Unauthorized):
            self._auth.on_session_invalid()
            self.state.error = SESSION_EXPIRED_MESSAGE
        else:
            self.state.error = error.message
        logger.error(
            "Release fetch failed: %s",
            error.message,
            extra={"event_code": type(error).__name__.upper()},
        )

    # ── 공개 API ─────────────────────────────────────────

    async def fetch_all_releases(self, *, force: bool = False) -> list[Release]:
        """릴리스를 수집하고 최신순 목록을 반환한다.

        Args:
            force: True이면 저장소 캐시가 신선해도 upstream을 조회한다

        Raises:
            ReleaseFeedError: 분류된 upstream 오류 (state.error에도 기록)
            sqlite3.Error: 로컬 저장소 쓰기 실패 (분류하지 않고 그대로 전파)
        """
        token = self._auth.get_access_token()
        if not token:
            self.state.error = NOT_AUTHENTICATED_MESSAGE
            raise Unauthorized(NOT_AUTHENTICATED_MESSAGE, status_code=401)

        self.state.loading = True
        self.state.background_loading = False
        self.state.error = None
        self.state.repos_processed = 0

        store = await self._ensure_store()
        if store is not None:
            has_cached = await self._load_cached(store)
            stale = await store.is_stale(self._config.store.stale_threshold_sec)
            if has_cached and not stale and not force:
                self.state.loading = False
                return self.state.releases
            if has_cached:
                # 캐시를 보여주면서 갱신
                self.state.loading = False
                self.state.background_loading = True

        start = time.monotonic()
        client = self._client_factory(token)
        ctx = FetchContext(
            client=client,
            cache=self._cache,
            user_id=user_id_for_token(token),
            config=self._config,
            cutoff=rolling_cutoff(months=self._config.fetch.cutoff_months),
            releases=self._releases,
            store=store,
            on_progress=self._on_progress,
        )
        try:
            await self._strategy.run(ctx)
        except UPSTREAM_ERRORS as exc:
            error = classify_error(exc)
            self._fail(error)
            if error is exc:
                raise
            raise error from exc
        except sqlite3.Error as exc:
            # 로컬 저장소 실패는 GitHub 장애로 보고하지 않는다
            self.state.error = f"{STORE_ERROR_PREFIX}: {exc}"
            logger.error("Release store write failed: %s", exc, extra={"event_code": "STORE_ERROR"})
            raise
        finally:
            self._on_progress(ctx)
            self.state.loading = False
            self.state.background_loading = False
            await client.close()

        now = self._clock()
        self.state.last_fetch_timestamp = now
        if store is not None:
            await store.update_metadata(now)
        logger.info(
            "Fetched releases with %s strategy: total=%d new=%d updated=%d",
            self._strategy.name,
            len(self._releases),
            ctx.progress.new_releases,
            ctx.progress.updated_releases,
            extra={
                "event_code": "FETCH_COMPLETE",
                "duration_ms": round((time.monotonic() - start) * 1000, 1),
                "rate_limit_cost": ctx.rate_limit.total_cost,
                "rate_limit_remaining": ctx.rate_limit.remaining,
            },
        )
        return self.state.releases

    async def refresh_if_stale(self, max_age_sec: float = 300) -> list[Release]:
        """마지막 수집 후 max_age_sec가 지났을 때만 다시 수집한다."""
        last = self.state.last_fetch_timestamp
        if last is None:
            store = await self._ensure_store()
            if store is not None:
                metadata = await store.get_metadata()
                last = metadata.last_fetch_timestamp if metadata else None
                if last is not None and not self._releases:
                    await self._load_cached(store)

        if last is not None and self._clock() - last < max_age_sec:
            logger.info("Data is fresh, skipping refresh")
            return self.state.releases
        return await self.fetch_all_releases(force=True)

    async def clear_cache(self) -> None:
        """저장소, 메모리 상태, 그룹 캐시, 응답 캐시를 모두 비운다."""
        store = await self._ensure_store()
        if store is not None:
            await store.clear()
        self._releases.clear()
        self._grouper.clear_cache()
        self._cache.clear()
        self.state = FeedState()

    def groups(self) -> list[ReleaseGroup]:
        """현재 릴리스 목록의 그룹 (fingerprint 캐시)."""
        return self._grouper.group(self.state.releases)

    async def close(self) -> None:
        if self._store is not None:
            await self._store.close()
