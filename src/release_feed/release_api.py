"""upstream 엔드포인트 호출 (응답 캐시 + 병합 + 오류 분류).

각 함수는 원본 GraphQL 응답을 캐시에 저장하고, 반환 시 구조화된 결과로 변환한다.
- fetch_releases_page: 별 목록 + 저장소별 최근 릴리스 (combined)
- fetch_starred_repos_page: 별 목록만 (two-phase 1단계)
- fetch_repo_releases: 단일 저장소 추가 페이지
- fetch_release_details: node id로 릴리스 본문 조회 (id별 캐시)
- fetch_atom_feeds: 저장소별 Atom 피드 (저장소 단위 오류 수집)
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from release_feed.cache import CacheStatus, ResponseCache, build_cache_key
from release_feed.errors import UPSTREAM_ERRORS, InvalidResponseShape, call_with_backoff
from release_feed.github_api import GitHubClient
from release_feed.models import AtomEntry, PageInfo, RateLimit, RepoRef, StarredRepo
from release_feed.normalizer import parse_atom_feed, repo_ref_from_graphql
from release_feed.queries import (
    RELEASE_DETAILS_QUERY,
    STARRED_REPOS_QUERY,
    build_releases_query,
    build_repo_releases_query,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 100
MAX_RELEASES_PER_REPO = 10
MAX_DETAIL_IDS = 50
MAX_ATOM_REPOS = 100

_STARRED_CACHE_VERSION = "v2"


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(low, value), high)


# ── 결과 모델 ──────────────────────────────────────────


@dataclass
class ApiResponse(Generic[T]):
    """엔드포인트 결과 + 진단 메타데이터."""

    data: T
    cache_status: CacheStatus | None = None
    rate_limit: RateLimit | None = None

    def diagnostic_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.cache_status is not None:
            headers["X-Cache-Status"] = self.cache_status.value
        if self.rate_limit is not None:
            headers["X-GH-RateLimit-Remaining"] = str(self.rate_limit.remaining)
            headers["X-GH-RateLimit-Cost"] = str(self.rate_limit.cost)
            headers["X-GH-RateLimit-ResetAt"] = self.rate_limit.reset_at.isoformat().replace("+00:00", "Z")
        return headers


@dataclass
class RepoReleases:
    """저장소 1개 + 내장 릴리스 노드 (원본 GraphQL 형태)."""

    repo: RepoRef
    release_nodes: list[dict[str, Any]]
    page_info: PageInfo
    total_count: int = 0


@dataclass
class ReleasesPage:
    repositories: list[RepoReleases]
    page_info: PageInfo


@dataclass
class StarredReposPage:
    repos: list[StarredRepo]
    page_info: PageInfo
    total_count: int = 0


@dataclass
class ReleaseDetails:
    """릴리스 id → descriptionHTML."""

    items: dict[str, str] = field(default_factory=dict)
    cache_hits: int = 0
    cache_misses: int = 0

    @property
    def fetched(self) -> int:
        return len(self.items) - self.cache_hits


@dataclass
class AtomFeedResult:
    owner: str
    repo: str
    entries: list[AtomEntry] = field(default_factory=list)
    error: str | None = None


@dataclass
class AtomFeedsResult:
    results: list[AtomFeedResult] = field(default_factory=list)
    errors: list[AtomFeedResult] = field(default_factory=list)


# ── 응답 파싱 ──────────────────────────────────────────


def _parse_rate_limit(data: dict[str, Any]) -> RateLimit | None:
    raw = data.get("rateLimit")
    if not raw:
        return None
    try:
        return RateLimit.from_graphql(raw)
    except (KeyError, ValueError) as exc:
        raise InvalidResponseShape(f"Malformed rateLimit: {exc}") from exc


def _starred_connection(data: dict[str, Any]) -> dict[str, Any]:
    try:
        connection = data["viewer"]["starredRepositories"]
    except (KeyError, TypeError) as exc:
        raise InvalidResponseShape("Response is missing viewer.starredRepositories") from exc
    if not isinstance(connection, dict) or not isinstance(connection.get("edges"), list):
        raise InvalidResponseShape("starredRepositories.edges is not a list")
    return connection


def _parse_repo_releases(node: dict[str, Any]) -> RepoReleases:
    releases = node.get("releases") or {}
    try:
        repo = repo_ref_from_graphql(node)
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidResponseShape(f"Malformed repository node: {exc}") from exc
    return RepoReleases(
        repo=repo,
        release_nodes=[edge["node"] for edge in releases.get("edges") or [] if edge and edge.get("node")],
        page_info=PageInfo.from_graphql(releases.get("pageInfo")),
        total_count=releases.get("totalCount") or 0,
    )


def _parse_releases_page(data: dict[str, Any]) -> ReleasesPage:
    connection = _starred_connection(data)
    return ReleasesPage(
        repositories=[
            _parse_repo_releases(edge["node"]) for edge in connection["edges"] if edge and edge.get("node")
        ],
        page_info=PageInfo.from_graphql(connection.get("pageInfo")),
    )


def _parse_starred_repos_page(data: dict[str, Any]) -> StarredReposPage:
    connection = _starred_connection(data)
    repos: list[StarredRepo] = []
    for edge in connection["edges"]:
        node = (edge or {}).get("node")
        if not node:
            continue
        try:
            owner = node["owner"]
            repos.append(
                StarredRepo(
                    id=node["id"],
                    name=node["name"],
                    owner=owner["login"],
                    url=node.get("url") or "",
                    stargazer_count=node.get("stargazerCount") or 0,
                    primary_language=node.get("primaryLanguage"),
                    languages=[e["node"] for e in (node.get("languages") or {}).get("edges") or []],
                    license_info=(
                        {"spdx_id": node["licenseInfo"].get("spdxId")} if node.get("licenseInfo") else None
                    ),
                    avatar_url=owner.get("avatarUrl") or "",
                )
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidResponseShape(f"Malformed starred repository node: {exc}") from exc
    return StarredReposPage(
        repos=repos,
        page_info=PageInfo.from_graphql(connection.get("pageInfo")),
        total_count=connection.get("totalCount") or 0,
    )


def _log_rate_limit(tag: str, rate_limit: RateLimit | None, status: CacheStatus) -> None:
    if rate_limit is None:
        return
    logger.info(
        "[%s] rateLimit cost=%d remaining=%d resetAt=%s",
        tag,
        rate_limit.cost,
        rate_limit.remaining,
        rate_limit.reset_at.isoformat(),
        extra={
            "cache_status": status.value,
            "rate_limit_remaining": rate_limit.remaining,
            "rate_limit_cost": rate_limit.cost,
        },
    )


# ── 엔드포인트 ─────────────────────────────────────────


async def fetch_releases_page(
    client: GitHubClient,
    cache: ResponseCache,
    user_id: str,
    *,
    cursor: str | None,
    page_size: int = 20,
    releases_per_repo: int = 10,
    with_details: bool = True,
    ttl_sec: float = 300,
    attempts: int = 3,
    base_delay_sec: float = 0.3,
) -> ApiResponse[ReleasesPage]:
    """별 목록 한 페이지와 저장소별 최근 릴리스를 조회한다.

    Raises:
        ReleaseFeedError: 분류된 upstream 오류
    """
    page_size = _clamp(page_size, 1, MAX_PAGE_SIZE)
    releases_per_repo = _clamp(releases_per_repo, 1, MAX_RELEASES_PER_REPO)
    variant = f"{'full' if with_details else 'light'}-{releases_per_repo}"
    key = build_cache_key("releases", user_id, cursor, page_size, variant)
    query = build_releases_query(with_details=with_details, releases_per_repo=releases_per_repo)

    async def produce() -> dict[str, Any]:
        logger.info(
            "[releases] cache MISS, fetching cursor=%s pageSize=%d details=%s",
            cursor or "",
            page_size,
            with_details,
            extra={"cursor": cursor, "cache_status": CacheStatus.MISS.value},
        )
        return await call_with_backoff(
            lambda: client.graphql(query, {"cursor": cursor, "pageSize": page_size}),
            attempts=attempts,
            base_delay_sec=base_delay_sec,
        )

    data, status = await cache.fetch(key, produce, ttl_sec=ttl_sec)
    rate_limit = _parse_rate_limit(data)
    _log_rate_limit("releases", rate_limit, status)
    return ApiResponse(data=_parse_releases_page(data), cache_status=status, rate_limit=rate_limit)


async def fetch_starred_repos_page(
    client: GitHubClient,
    cache: ResponseCache,
    user_id: str,
    *,
    cursor: str | None,
    page_size: int = 100,
    ttl_sec: float = 300,
    attempts: int = 3,
    base_delay_sec: float = 0.3,
) -> ApiResponse[StarredReposPage]:
    """별 목록 한 페이지를 최소 필드로 조회한다 (릴리스 없음)."""
    page_size = _clamp(page_size, 1, MAX_PAGE_SIZE)
    key = build_cache_key(f"starred:{_STARRED_CACHE_VERSION}", user_id, cursor, page_size)

    async def produce() -> dict[str, Any]:
        logger.info(
            "[starred] Fetching starred repos cursor=%s",
            cursor or "root",
            extra={"cursor": cursor, "cache_status": CacheStatus.MISS.value},
        )
        return await call_with_backoff(
            lambda: client.graphql(STARRED_REPOS_QUERY, {"cursor": cursor, "pageSize": page_size}),
            attempts=attempts,
            base_delay_sec=base_delay_sec,
        )

    data, status = await cache.fetch(key, produce, ttl_sec=ttl_sec)
    page = _parse_starred_repos_page(data)
    rate_limit = _parse_rate_limit(data)
    logger.info(
        "[starred] %d repos, total=%d, hasMore=%s",
        len(page.repos),
        page.total_count,
        page.page_info.has_next_page,
        extra={"cache_status": status.value},
    )
    return ApiResponse(data=page, cache_status=status, rate_limit=rate_limit)


async def fetch_repo_releases(
    client: GitHubClient,
    cache: ResponseCache,
    user_id: str,
    *,
    repo_id: str,
    cursor: str | None,
    limit: int = 10,
    with_details: bool = True,
    ttl_sec: float = 180,
    attempts: int = 3,
    base_delay_sec: float = 0.3,
) -> ApiResponse[RepoReleases]:
    """단일 저장소의 릴리스 페이지를 조회한다 (per-repo continuation).

    Raises:
        ValueError: repo_id가 비어 있음
        InvalidResponseShape: node가 저장소가 아님
    """
    if not repo_id:
        raise ValueError("Missing repo_id")
    limit = _clamp(limit, 1, MAX_RELEASES_PER_REPO)
    variant = f"{'full' if with_details else 'light'}-{limit}"
    key = build_cache_key("repo-releases", user_id, cursor, repo_id, variant)
    query = build_repo_releases_query(with_details=with_details)

    async def produce() -> dict[str, Any]:
        return await call_with_backoff(
            lambda: client.graphql(query, {"repoId": repo_id, "first": limit, "cursor": cursor}),
            attempts=attempts,
            base_delay_sec=base_delay_sec,
        )

    data, status = await cache.fetch(key, produce, ttl_sec=ttl_sec)
    node = data.get("node")
    if not isinstance(node, dict) or "releases" not in node:
        raise InvalidResponseShape(f"Node {repo_id} is not a repository")
    rate_limit = _parse_rate_limit(data)
    _log_rate_limit("repo", rate_limit, status)
    return ApiResponse(data=_parse_repo_releases(node), cache_status=status, rate_limit=rate_limit)


async def fetch_release_details(
    client: GitHubClient,
    cache: ResponseCache,
    user_id: str,
    ids: list[str],
    *,
    ttl_sec: float = 600,
    attempts: int = 3,
    base_delay_sec: float = 0.3,
) -> ApiResponse[ReleaseDetails]:
    """릴리스 node id 목록의 descriptionHTML을 조회한다.

    캐시는 id별로 저장하고, 캐시에 없는 id만 upstream에 요청한다.

    Raises:
        ValueError: ids가 50개 초과
    """
    ids = [i for i in ids if isinstance(i, str) and i]
    if len(ids) > MAX_DETAIL_IDS:
        raise ValueError(f"Too many IDs. Max {MAX_DETAIL_IDS} per request.")

    details = ReleaseDetails()
    if not ids:
        return ApiResponse(data=details)

    missing: list[str] = []
    for release_id in ids:
        cached = cache.lookup(build_cache_key("release-details", user_id, release_id, "html"))
        if cached:
            details.items[release_id] = cached
        else:
            missing.append(release_id)
    details.cache_hits = len(details.items)
    details.cache_misses = len(missing)

    if not missing:
        return ApiResponse(data=details, cache_status=CacheStatus.HIT)

    logger.info("[details] cache MISS, fetching ids=%d", len(missing))
    data = await call_with_backoff(
        lambda: client.graphql(RELEASE_DETAILS_QUERY, {"ids": missing}),
        attempts=attempts,
        base_delay_sec=base_delay_sec,
    )
    nodes = data.get("nodes")
    if not isinstance(nodes, list):
        raise InvalidResponseShape("Response is missing nodes")
    for node in nodes:
        if not node or not isinstance(node.get("id"), str):
            continue
        html = node.get("descriptionHTML") or ""
        details.items[node["id"]] = html
        cache.store(build_cache_key("release-details", user_id, node["id"], "html"), html, ttl_sec)

    logger.info(
        "[details] hits=%d misses=%d fetched=%d",
        details.cache_hits,
        details.cache_misses,
        details.fetched,
        extra={"counts": {"hits": details.cache_hits, "misses": details.cache_misses}},
    )
    return ApiResponse(data=details, cache_status=CacheStatus.MISS, rate_limit=_parse_rate_limit(data))


async def _fetch_atom_feed(
    client: GitHubClient,
    owner: str,
    name: str,
    web_base_url: str,
) -> AtomFeedResult:
    url = f"{web_base_url.rstrip('/')}/{owner}/{name}/releases.atom"
    try:
        xml = await client.fetch_text(url, headers={"Accept": "application/atom+xml"})
    except UPSTREAM_ERRORS as exc:
        return AtomFeedResult(owner=owner, repo=name, error=str(exc) or type(exc).__name__)
    return AtomFeedResult(owner=owner, repo=name, entries=parse_atom_feed(xml))


async def fetch_atom_feeds(
    client: GitHubClient,
    repos: list[tuple[str, str]],
    *,
    concurrency: int = 20,
    delay_sec: float = 0.1,
    web_base_url: str = "https://github.com",
) -> ApiResponse[AtomFeedsResult]:
    """(owner, name) 목록의 Atom 피드를 제한된 동시성으로 조회한다.

    저장소 단위 실패는 errors에 모으고 전체 호출은 실패시키지 않는다.

    Raises:
        ValueError: repos가 100개 초과
    """
    if len(repos) > MAX_ATOM_REPOS:
        raise ValueError(f"Too many repos. Max {MAX_ATOM_REPOS} per request.")

    result = AtomFeedsResult()
    if not repos:
        return ApiResponse(data=result)

    start = time.monotonic()
    for i in range(0, len(repos), concurrency):
        batch = repos[i : i + concurrency]
        feeds = await asyncio.gather(
            *(_fetch_atom_feed(client, owner, name, web_base_url) for owner, name in batch)
        )
        result.results.extend(feeds)
        result.errors.extend(f for f in feeds if f.error is not None)
        # 배치 사이 지연
        if i + concurrency < len(repos):
            await asyncio.sleep(delay_sec)

    logger.info(
        "[atom] Fetched %d atom feeds, errors=%d",
        len(repos),
        len(result.errors),
        extra={"duration_ms": round((time.monotonic() - start) * 1000, 1)},
    )
    return ApiResponse(data=result, cache_status=CacheStatus.MISS)


