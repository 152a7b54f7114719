"""두 가지 upstream 형태를 하나의 Release 모델로 정규화한다.

- GraphQL 릴리스 노드: 필드 매핑 (name이 없으면 tagName)
- Atom 피드 엔트리: 링크에서 tagName 추출, 제목에서 prerelease/draft 판별
- 롤링 컷오프(now - 3개월) 이전 릴리스 제외
- id 기준 병합: 신규 / 갱신 / 변경 없음
"""

from __future__ import annotations

import calendar
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import unquote

import feedparser
from pydantic import ValidationError

from release_feed.models import (
    AtomEntry,
    Language,
    LicenseInfo,
    Owner,
    Release,
    RepoRef,
)

logger = logging.getLogger(__name__)

_TAG_PATH_RE = re.compile(r"/releases/tag/(.+)$")
_PRERELEASE_RE = re.compile(r"pre-?release|alpha|beta|rc\d+|canary", re.IGNORECASE)
_DRAFT_RE = re.compile(r"draft", re.IGNORECASE)


# ── 컷오프 ───────────────────────────────────────────────


def rolling_cutoff(now: datetime | None = None, *, months: int = 3) -> datetime:
    """now에서 months개월 전 시각을 반환한다 (말일은 해당 월 마지막 날로 보정)."""
    now = now or datetime.now(tz=UTC)
    month_index = now.month - 1 - months
    year = now.year + month_index // 12
    month = month_index % 12 + 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return now.replace(year=year, month=month, day=day)


def filter_recent(releases: Iterable[Release], cutoff: datetime) -> list[Release]:
    """컷오프 이후(포함) 릴리스만 남긴다."""
    return [r for r in releases if r.published_at >= cutoff]


# ── GraphQL 형태 ──────────────────────────────────────────


def repo_ref_from_graphql(node: dict[str, Any]) -> RepoRef:
    """GraphQL Repository 노드를 RepoRef로 변환한다."""
    owner = node.get("owner") or {}
    languages = node.get("languages") or {}
    primary = node.get("primaryLanguage")
    license_info = node.get("licenseInfo")
    return RepoRef(
        id=node.get("id") or "",
        name=node["name"],
        url=node.get("url") or "",
        owner=Owner(
            login=owner["login"],
            avatar_url=owner.get("avatarUrl") or "",
            url=owner.get("url") or "",
        ),
        description=node.get("description") or "",
        stargazer_count=node.get("stargazerCount") or 0,
        primary_language=Language(id=primary.get("id") or "", name=primary["name"]) if primary else None,
        languages=[
            Language(id=edge["node"].get("id") or "", name=edge["node"]["name"])
            for edge in (languages.get("edges") or [])[:5]
        ],
        license_info=LicenseInfo(spdx_id=license_info.get("spdxId")) if license_info else None,
    )


def normalize_graphql_release(node: dict[str, Any], repo: RepoRef) -> Release | None:
    """GraphQL Release 노드를 Release로 변환한다. publishedAt이 없으면 None."""
    if not node or not node.get("publishedAt"):
        return None
    try:
        return Release(
            id=node["id"],
            name=node.get("name") or node["tagName"],
            tag_name=node["tagName"],
            url=node.get("url") or "",
            published_at=node["publishedAt"],
            description_html=node.get("descriptionHTML") or "",
            is_prerelease=bool(node.get("isPrerelease")),
            is_draft=bool(node.get("isDraft")),
            repo=repo,
        )
    except (KeyError, ValidationError) as exc:
        logger.warning(
            "Failed to normalize release %s of %s: %s",
            node.get("id", "unknown"),
            repo.full_name,
            exc,
        )
        return None


# ── Atom 피드 형태 ────────────────────────────────────────


def parse_atom_feed(xml: str) -> list[AtomEntry]:
    """Atom XML을 AtomEntry 리스트로 파싱한다. 엔트리가 없으면 빈 리스트."""
    parsed = feedparser.parse(xml)
    entries: list[AtomEntry] = []
    for entry in parsed.entries:
        content = entry.get("content") or []
        entries.append(
            AtomEntry(
                id=entry.get("id", ""),
                title=entry.get("title", ""),
                link=entry.get("link", ""),
                updated=entry.get("updated", ""),
                content=content[0].get("value", "") if content else entry.get("summary", ""),
                author=entry.get("author", ""),
            )
        )
    return entries


def extract_tag_name(link: str, title: str) -> str:
    """릴리스 링크의 `/releases/tag/` 뒤 경로를 percent-decode해 반환한다.

    패턴이 없으면 제목을 그대로 반환한다.
    """
    match = _TAG_PATH_RE.search(link or "")
    if match and match.group(1):
        return unquote(match.group(1))
    return title


def detect_prerelease(title: str) -> bool:
    return bool(_PRERELEASE_RE.search(title or ""))


def detect_draft(title: str) -> bool:
    return bool(_DRAFT_RE.search(title or ""))


def normalize_atom_entry(entry: AtomEntry, repo: RepoRef) -> Release | None:
    """Atom 엔트리를 Release로 변환한다. id/updated가 없거나 잘못되면 None."""
    if not entry.id or not entry.updated:
        return None
    try:
        return Release(
            id=entry.id,
            name=entry.title,
            tag_name=extract_tag_name(entry.link, entry.title),
            url=entry.link,
            published_at=entry.updated,
            description_html=entry.content,
            is_prerelease=detect_prerelease(entry.title),
            is_draft=detect_draft(entry.title),
            repo=repo,
        )
    except ValidationError as exc:
        logger.warning("Failed to normalize atom entry %s of %s: %s", entry.id, repo.full_name, exc)
        return None


# ── 병합 ─────────────────────────────────────────────────


class MergeOutcome(str, Enum):
    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class MergeResult:
    """배치 병합 결과."""

    new: int = 0
    updated: int = 0
    unchanged: int = 0
    changed: list[Release] = field(default_factory=list)

    def __iadd__(self, other: MergeResult) -> MergeResult:
        self.new += other.new
        self.updated += other.updated
        self.unchanged += other.unchanged
        self.changed.extend(other.changed)
        return self


def merge_release(existing: dict[str, Release], release: Release) -> MergeOutcome:
    """existing 맵에 release를 병합한다.

    - id가 없으면 신규
    - 같은 id + 같은 published_at이면 변경 없음 (건너뜀)
    - 그 외에는 기존 엔트리를 교체 (갱신)
    """
    prior = existing.get(release.id)
    if prior is None:
        existing[release.id] = release
        return MergeOutcome.NEW
    if prior.published_at == release.published_at:
        return MergeOutcome.UNCHANGED
    existing[release.id] = release
    return MergeOutcome.UPDATED


def merge_releases(existing: dict[str, Release], releases: Iterable[Release]) -> MergeResult:
    result = MergeResult()
    for release in releases:
        outcome = merge_release(existing, release)
        if outcome is MergeOutcome.NEW:
            result.new += 1
            result.changed.append(release)
        elif outcome is MergeOutcome.UPDATED:
            result.updated += 1
            result.changed.append(release)
        else:
            result.unchanged += 1
    return result


def sort_releases(releases: Iterable[Release]) -> list[Release]:
    """published_at 내림차순 (안정 정렬)."""
    return sorted(releases, key=lambda r: r.published_at, reverse=True)
