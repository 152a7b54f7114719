"""릴리스 수집 전략 (fan-out 엔진).

두 전략은 같은 FetchContext로 병합하므로 출력 형태가 같다.
- CombinedStrategy: 별 목록 + 저장소별 최근 릴리스 N개를 한 쿼리로 페이지 순회
- AtomFeedStrategy (기본): 1단계 별 목록 전체 조회 → 2단계 Atom 피드 배치 조회

추가 페이지가 필요한 저장소는 ContinuationQueue에 넣고, 한 번에 하나의 drain만 실행한다.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, TypeVar

from release_feed.cache import ResponseCache
from release_feed.config import AppConfig
from release_feed.errors import RateLimited, rate_limit_message
from release_feed.github_api import GitHubClient
from release_feed.models import RateLimit, Release, RepoRef, StarredRepo
from release_feed.normalizer import (
    MergeResult,
    filter_recent,
    merge_releases,
    normalize_atom_entry,
    normalize_graphql_release,
    sort_releases,
)
from release_feed.release_api import (
    RepoReleases,
    fetch_atom_feeds,
    fetch_release_details,
    fetch_releases_page,
    fetch_repo_releases,
    fetch_starred_repos_page,
)
from release_feed.store import ReleaseStore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def process_in_batches(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    batch_size: int,
    delay_sec: float = 0.0,
    on_batch: Callable[[list[R]], None] | None = None,
) -> list[R]:
    """items를 batch_size씩 동시에 처리한다. 배치 사이에 delay_sec만큼 쉰다.

    결과 순서는 items 순서와 같다. on_batch는 배치가 끝날 때마다 그 배치 결과로 호출된다.
    """
    results: list[R] = []
    for i in range(0, len(items), batch_size):
        batch = items[i : i + batch_size]
        batch_results = list(await asyncio.gather(*(fn(item) for item in batch)))
        results.extend(batch_results)
        if on_batch is not None:
            on_batch(batch_results)
        if delay_sec > 0 and i + batch_size < len(items):
            await asyncio.sleep(delay_sec)
    return results


# ── 수집 컨텍스트 ──────────────────────────────────────


@dataclass
class FetchProgress:
    repos_processed: int = 0
    total_repos: int = 0
    pages_fetched: int = 0
    new_releases: int = 0
    updated_releases: int = 0
    continuation_pages: int = 0
    feed_errors: int = 0


@dataclass
class RateLimitState:
    """이번 실행 동안 누적한 rate limit 정보."""

    total_cost: int = 0
    last: RateLimit | None = None

    @property
    def remaining(self) -> int | None:
        return self.last.remaining if self.last else None

    @property
    def reset_at(self) -> datetime | None:
        return self.last.reset_at if self.last else None


class FetchContext:
    """전략이 공유하는 수집 상태.

    - releases: id → Release (기존 캐시 포함)
    - merge(): 컷오프 필터 → 본문 보충 → 병합 → 저장소 write-through
    - 페이지/배치 단위 작업이 끝나면 notify()로 진행 상황을 알린다
    """

    def __init__(
        self,
        *,
        client: GitHubClient,
        cache: ResponseCache,
        user_id: str,
        config: AppConfig,
        cutoff: datetime,
        releases: dict[str, Release] | None = None,
        store: ReleaseStore | None = None,
        on_progress: Callable[[FetchContext], None] | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.user_id = user_id
        self.config = config
        self.cutoff = cutoff
        self.releases: dict[str, Release] = releases if releases is not None else {}
        self.store = store
        self.progress = FetchProgress()
        self.rate_limit = RateLimitState()
        self.continuations = ContinuationQueue(self, max_extra_pages=config.fetch.max_extra_pages)
        self._on_progress = on_progress

    def sorted_releases(self) -> list[Release]:
        return sort_releases(self.releases.values())

    def notify(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self)

    # ── rate limit ──

    def record_rate_limit(self, rate_limit: RateLimit | None) -> None:
        if rate_limit is None:
            return
        self.rate_limit.total_cost += rate_limit.cost
        self.rate_limit.last = rate_limit

    def check_rate_limit(self) -> None:
        """남은 rate limit이 0 이하면 RateLimited를 발생시킨다.

        Raises:
            RateLimited: 리셋 시각이 포함된 메시지
        """
        last = self.rate_limit.last
        if last is None or last.remaining > 0:
            return
        message = rate_limit_message(last, total_cost=self.rate_limit.total_cost)
        logger.warning(
            message,
            extra={
                "event_code": "RATE_LIMIT_EXHAUSTED",
                "rate_limit_remaining": 0,
                "rate_limit_reset_at": last.reset_at,
            },
        )
        raise RateLimited(message, reset_at=last.reset_at)

    # ── 병합 ──

    async def _hydrate_description(self, release: Release) -> Release:
        if release.description_html or self.store is None:
            return release
        cached = await self.store.get_description(release.description_key)
        if cached:
            return release.model_copy(update={"description_html": cached})
        return release

    async def merge(self, releases: Sequence[Release]) -> MergeResult:
        recent = filter_recent(releases, self.cutoff)
        if self.store is not None:
            recent = [await self._hydrate_description(r) for r in recent]
        result = merge_releases(self.releases, recent)
        self.progress.new_releases += result.new
        self.progress.updated_releases += result.updated
        if self.store is not None:
            for release in result.changed:
                await self.store.put(release)
        return result

    async def hydrate_missing_descriptions(self, releases: Sequence[Release]) -> int:
        """본문이 없는 릴리스의 descriptionHTML을 id로 조회해 채운다 (light 변형).

        Raises:
            RateLimited: 조회 전 남은 rate limit이 0 이하
        """
        missing = [r.id for r in releases if not r.description_html]
        if not missing:
            return 0
        filled = 0
        batch_size = self.config.fetch.details_batch_size
        for i in range(0, len(missing), batch_size):
            self.check_rate_limit()
            response = await fetch_release_details(
                self.client,
                self.cache,
                self.user_id,
                missing[i : i + batch_size],
                ttl_sec=self.config.cache.details_ttl_sec,
                attempts=self.config.fetch.retry_attempts,
                base_delay_sec=self.config.fetch.retry_base_delay_sec,
            )
            self.record_rate_limit(response.rate_limit)
            for release_id, html in response.data.items.items():
                current = self.releases.get(release_id)
                if current is None or not html:
                    continue
                updated = current.model_copy(update={"description_html": html})
                self.releases[release_id] = updated
                if self.store is not None:
                    await self.store.put(updated)
                filled += 1
        return filled


# ── 추가 페이지 큐 ─────────────────────────────────────


@dataclass
class ContinuationRequest:
    repo: RepoRef
    cursor: str | None


class ContinuationQueue:
    """저장소별 추가 릴리스 페이지 요청 큐.

    - 저장소당 최대 max_extra_pages 페이지
    - drain()은 동시에 하나만 실행된다 (진행 중이면 즉시 반환)
    """

    def __init__(self, ctx: FetchContext, *, max_extra_pages: int = 2) -> None:
        self.ctx = ctx
        self.max_extra_pages = max_extra_pages
        self._pending: list[ContinuationRequest] = []
        self._pages: dict[str, int] = {}
        self._draining = False

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def draining(self) -> bool:
        return self._draining

    def schedule(self, repo: RepoRef, cursor: str | None) -> bool:
        """추가 페이지를 예약한다. 상한에 도달했거나 이미 대기 중이면 False."""
        if not repo.id:
            return False
        scheduled = self._pages.get(repo.id, 0)
        if scheduled >= self.max_extra_pages:
            return False
        if any(req.repo.id == repo.id for req in self._pending):
            return False
        self._pages[repo.id] = scheduled + 1
        self._pending.append(ContinuationRequest(repo=repo, cursor=cursor))
        return True

    async def drain(self) -> MergeResult:
        if self._draining:
            return MergeResult()
        self._draining = True
        total = MergeResult()
        try:
            while self._pending:
                request = self._pending.pop(0)
                total += await self._process(request)
                self.ctx.notify()
                self.ctx.check_rate_limit()
        finally:
            self._draining = False
        return total

    async def _process(self, request: ContinuationRequest) -> MergeResult:
        ctx = self.ctx
        fetch = ctx.config.fetch
        response = await fetch_repo_releases(
            ctx.client,
            ctx.cache,
            ctx.user_id,
            repo_id=request.repo.id,
            cursor=request.cursor,
            limit=fetch.releases_per_repo,
            with_details=fetch.with_details,
            ttl_sec=ctx.config.cache.repo_releases_ttl_sec,
            attempts=fetch.retry_attempts,
            base_delay_sec=fetch.retry_base_delay_sec,
        )
        ctx.record_rate_limit(response.rate_limit)
        ctx.progress.continuation_pages += 1
        page = response.data

        # 피드에서 이미 받은 태그는 다른 id로 중복되지 않도록 제외
        known_tags = {
            r.tag_name for r in ctx.releases.values() if r.repo.full_name == request.repo.full_name
        }
        releases = [
            release
            for node in page.release_nodes
            if (release := normalize_graphql_release(node, request.repo)) is not None
            and (release.id in ctx.releases or release.tag_name not in known_tags)
        ]
        result = await ctx.merge(releases)
        logger.info(
            "Continuation %s cursor=%s: new=%d updated=%d",
            request.repo.full_name,
            request.cursor or "root",
            result.new,
            result.updated,
            extra={"repo": request.repo.full_name, "cursor": request.cursor},
        )

        if page.page_info.has_next_page and _reaches_cutoff_later(page, ctx.cutoff):
            self.schedule(request.repo, page.page_info.end_cursor)
        return result


def _reaches_cutoff_later(page: RepoReleases, cutoff: datetime) -> bool:
    """페이지의 가장 오래된 릴리스가 아직 컷오프 안쪽이면 True (다음 페이지에도 최근 릴리스가 있을 수 있음)."""
    published = [n.get("publishedAt") for n in page.release_nodes if n.get("publishedAt")]
    if not published:
        return False
    oldest = min(datetime.fromisoformat(p.replace("Z", "+00:00")) for p in published)
    return oldest >= cutoff


# ── 전략 ─────────────────────────────────────────────


class ReleaseFetchStrategy(Protocol):
    name: str

    async def run(self, ctx: FetchContext) -> None: ...


class CombinedStrategy:
    """별 목록 + 저장소별 최근 릴리스를 한 쿼리로 페이지 순회한다.

    다음 페이지는 (첫 페이지이거나 새 릴리스가 있었고) hasNextPage일 때만 요청한다.
    """

    name = "combined"

    async def run(self, ctx: FetchContext) -> None:
        fetch = ctx.config.fetch
        cursor: str | None = None

        while True:
            start = time.monotonic()
            response = await fetch_releases_page(
                ctx.client,
                ctx.cache,
                ctx.user_id,
                cursor=cursor,
                page_size=fetch.page_size,
                releases_per_repo=fetch.releases_per_repo,
                with_details=fetch.with_details,
                ttl_sec=ctx.config.cache.releases_ttl_sec,
                attempts=fetch.retry_attempts,
                base_delay_sec=fetch.retry_base_delay_sec,
            )
            ctx.record_rate_limit(response.rate_limit)
            page = response.data

            async def process_repo(repo_releases: RepoReleases) -> MergeResult:
                releases = [
                    release
                    for node in repo_releases.release_nodes
                    if (release := normalize_graphql_release(node, repo_releases.repo)) is not None
                ]
                result = await ctx.merge(releases)
                if repo_releases.page_info.has_next_page and _reaches_cutoff_later(repo_releases, ctx.cutoff):
                    ctx.continuations.schedule(repo_releases.repo, repo_releases.page_info.end_cursor)
                return result

            def on_batch(results: list[MergeResult]) -> None:
                ctx.progress.repos_processed += len(results)
                ctx.notify()

            repositories = page.repositories
            page_result = MergeResult()
            for result in await process_in_batches(
                repositories,
                process_repo,
                batch_size=fetch.processing_batch_size,
                delay_sec=fetch.batch_delay_sec,
                on_batch=on_batch,
            ):
                page_result += result

            if not fetch.with_details:
                await ctx.hydrate_missing_descriptions(page_result.changed)

            ctx.progress.pages_fetched += 1
            ctx.notify()
            logger.info(
                "Page %d processed: repos=%d new=%d updated=%d",
                ctx.progress.pages_fetched,
                len(repositories),
                page_result.new,
                page_result.updated,
                extra={
                    "cursor": cursor,
                    "cache_status": response.cache_status.value if response.cache_status else None,
                    "duration_ms": round((time.monotonic() - start) * 1000, 1),
                },
            )

            ctx.check_rate_limit()

            if not (page.page_info.has_next_page and (page_result.new > 0 or cursor is None)):
                break
            await asyncio.sleep(fetch.page_delay_sec)
            cursor = page.page_info.end_cursor

        await ctx.continuations.drain()


class AtomFeedStrategy:
    """2단계 수집: 별 목록 전체 조회 후 Atom 피드로 릴리스를 가져온다.

    피드 항목 수가 피드 페이지 크기 이상이고 가장 오래된 항목이 컷오프 안쪽이면
    해당 저장소를 GraphQL 추가 페이지 큐에 넣는다.
    """

    name = "atom"

    async def fetch_starred_repos(self, ctx: FetchContext) -> list[StarredRepo]:
        fetch = ctx.config.fetch
        repos: list[StarredRepo] = []
        cursor: str | None = None
        while True:
            response = await fetch_starred_repos_page(
                ctx.client,
                ctx.cache,
                ctx.user_id,
                cursor=cursor,
                page_size=fetch.starred_page_size,
                ttl_sec=ctx.config.cache.starred_ttl_sec,
                attempts=fetch.retry_attempts,
                base_delay_sec=fetch.retry_base_delay_sec,
            )
            ctx.record_rate_limit(response.rate_limit)
            page = response.data
            repos.extend(page.repos)
            ctx.progress.total_repos = page.total_count or len(repos)
            ctx.progress.pages_fetched += 1
            ctx.notify()
            ctx.check_rate_limit()

            if not page.page_info.has_next_page:
                return repos
            cursor = page.page_info.end_cursor
            await asyncio.sleep(fetch.starred_page_delay_sec)

    async def fetch_feed_releases(self, ctx: FetchContext, repos: list[StarredRepo]) -> None:
        fetch = ctx.config.fetch
        web_base_url = ctx.config.github.web_base_url
        by_name = {(r.owner, r.name): r for r in repos}
        ctx.progress.repos_processed = 0

        for i in range(0, len(repos), fetch.atom_batch_size):
            batch = repos[i : i + fetch.atom_batch_size]
            response = await fetch_atom_feeds(
                ctx.client,
                [(r.owner, r.name) for r in batch],
                concurrency=fetch.atom_concurrency,
                delay_sec=fetch.atom_delay_sec,
                web_base_url=web_base_url,
            )
            for feed in response.data.results:
                starred = by_name.get((feed.owner, feed.repo))
                if starred is None or feed.error is not None:
                    continue
                repo = starred.to_repo_ref(web_base_url)
                releases = [
                    release
                    for entry in feed.entries
                    if (release := normalize_atom_entry(entry, repo)) is not None
                ]
                await ctx.merge(releases)
                if len(feed.entries) >= fetch.atom_page_size and releases:
                    oldest = min(r.published_at for r in releases)
                    if oldest >= ctx.cutoff:
                        ctx.continuations.schedule(repo, None)

            errors = response.data.errors
            if errors:
                ctx.progress.feed_errors += len(errors)
                logger.warning(
                    "[atom] %d repos had errors: %s",
                    len(errors),
                    ", ".join(f"{e.owner}/{e.repo}: {e.error}" for e in errors[:5]),
                    extra={"event_code": "FEED_ERRORS"},
                )

            ctx.progress.repos_processed = min(i + fetch.atom_batch_size, len(repos))
            ctx.notify()
            if i + fetch.atom_batch_size < len(repos):
                await asyncio.sleep(fetch.batch_delay_sec)

    async def run(self, ctx: FetchContext) -> None:
        logger.info("[atom] Phase 1: fetching starred repos list")
        repos = await self.fetch_starred_repos(ctx)
        logger.info("[atom] Found %d starred repos", len(repos))

        logger.info("[atom] Phase 2: fetching releases via Atom feeds")
        await self.fetch_feed_releases(ctx, repos)
        await ctx.continuations.drain()
        logger.info("[atom] Collected %d releases", len(ctx.releases))


STRATEGIES: dict[str, type[CombinedStrategy] | type[AtomFeedStrategy]] = {
    CombinedStrategy.name: CombinedStrategy,
    AtomFeedStrategy.name: AtomFeedStrategy,
}


def get_strategy(name: str) -> ReleaseFetchStrategy:
    """이름으로 전략 인스턴스를 생성한다.

    Raises:
        ValueError: 알 수 없는 전략 이름
    """
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(f"Unknown fetch strategy: {name}") from None
