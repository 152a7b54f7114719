"""릴리스 그룹화 (같은 저장소 + 2시간 이내 연속 릴리스).

정렬: published_at 내림차순, 같은 시각이면 `owner/name` 사전순.
다음 릴리스의 저장소가 다르거나, 직전 릴리스와의 간격이 2시간을 초과하면 새 그룹을 시작한다.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import timedelta

from release_feed.models import GroupRepo, Release, ReleaseGroup

logger = logging.getLogger(__name__)

GROUP_GAP = timedelta(hours=2)


def _sort_key_name(release: Release) -> tuple[str, str]:
    full_name = release.repo.full_name
    return full_name.casefold(), full_name


def _same_repo(a: Release, b: Release) -> bool:
    return a.repo.name == b.repo.name and a.repo.owner.login == b.repo.owner.login


def _make_group(releases: list[Release]) -> ReleaseGroup:
    first = releases[0]
    published = first.published_at.isoformat().replace("+00:00", "Z")
    return ReleaseGroup(
        id=f"{first.repo.full_name}-{published}",
        releases=list(releases),
        published_at=first.published_at,
        repo=GroupRepo(name=first.repo.name, url=first.repo.url, owner=first.repo.owner),
        is_single_release=len(releases) == 1,
    )


def group_releases(releases: Sequence[Release]) -> list[ReleaseGroup]:
    """릴리스 목록을 ReleaseGroup 목록으로 묶는다 (순수 함수)."""
    if not releases:
        return []

    # 안정 정렬 2회: 이름 오름차순 → 시각 내림차순
    ordered = sorted(releases, key=_sort_key_name)
    ordered.sort(key=lambda r: r.published_at, reverse=True)

    groups: list[ReleaseGroup] = []
    current: list[Release] = []
    for release in ordered:
        if current:
            last = current[-1]
            if not _same_repo(last, release) or abs(last.published_at - release.published_at) > GROUP_GAP:
                groups.append(_make_group(current))
                current = []
        current.append(release)

    if current:
        groups.append(_make_group(current))
    return groups


def fingerprint(releases: Sequence[Release]) -> str:
    """`len:first_id:last_id` 형태의 구조적 키.

    휴리스틱 키다. 입력이 이미 중복 제거되고 일관되게 정렬되어 있어야 유효하다.
    """
    if not releases:
        return "empty"
    return f"{len(releases)}:{releases[0].id}:{releases[-1].id}"


class ReleaseGrouper:
    """직전 group_releases 결과 하나만 fingerprint 기준으로 보관한다.

    같은 리스트 객체가 다시 들어오면 fingerprint 계산 없이 바로 반환한다.
    """

    def __init__(self) -> None:
        self._last_input: Sequence[Release] | None = None
        self._last_key: str | None = None
        self._last_groups: list[ReleaseGroup] = []

    def group(self, releases: Sequence[Release]) -> list[ReleaseGroup]:
        if not releases:
            return []

        if releases is self._last_input:
            return self._last_groups

        key = fingerprint(releases)
        if key != self._last_key:
            self._last_groups = group_releases(releases)
            self._last_key = key
            logger.debug("Grouped %d releases into %d groups", len(releases), len(self._last_groups))

        self._last_input = releases
        return self._last_groups

    def clear_cache(self) -> None:
        self._last_input = None
        self._last_key = None
        self._last_groups = []


def format_group_time_diff(group: ReleaseGroup) -> str | None:
    """그룹 내 가장 최근 릴리스와 가장 오래된 릴리스의 간격 (`Xh Ym` 또는 `Ym`)."""
    if len(group.releases) <= 1:
        return None
    delta = group.releases[0].published_at - group.releases[-1].published_at
    minutes = int(delta.total_seconds() // 60)
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    return f"{minutes}m"
