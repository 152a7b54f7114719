"""릴리스 피드 데이터 모델 (Pydantic)."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_utc(v: Any) -> Any:
    """ISO 문자열(`Z` 포함)을 UTC aware datetime으로 변환한다."""
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if isinstance(v, datetime) and v.tzinfo is None:
        v = v.replace(tzinfo=UTC)
    return v


class Owner(BaseModel):
    login: str
    avatar_url: str = ""
    url: str = ""


class Language(BaseModel):
    id: str = ""
    name: str


class LicenseInfo(BaseModel):
    spdx_id: str | None = None


class RepoRef(BaseModel):
    """릴리스에 내장되는 저장소 정보 (릴리스마다 비정규화되어 복제된다)."""

    id: str = ""
    name: str
    url: str = ""
    owner: Owner
    description: str = ""
    stargazer_count: int = 0
    primary_language: Language | None = None
    languages: list[Language] = Field(default_factory=list)
    license_info: LicenseInfo | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner.login}/{self.name}"


class Release(BaseModel):
    """정규화된 릴리스.

    - id는 유일한 중복 제거 키: 같은 id에 다른 published_at이면 갱신으로 간주
    - published_at은 항상 UTC aware datetime
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="upstream이 부여한 전역 고유 ID")
    name: str
    tag_name: str
    url: str
    published_at: datetime
    description_html: str = ""
    is_prerelease: bool = False
    is_draft: bool = False
    repo: RepoRef

    @field_validator("published_at", mode="before")
    @classmethod
    def parse_published_at(cls, v: Any) -> Any:
        return _to_utc(v)

    @property
    def description_key(self) -> str:
        """descriptions 저장소 키 (`id-publishedAt`)."""
        return f"{self.id}-{self.published_at.isoformat()}"


class StarredRepo(BaseModel):
    """별 목록 1단계 조회 결과 (릴리스 없이 저장소만 식별)."""

    id: str
    name: str
    owner: str
    url: str = ""
    stargazer_count: int = 0
    primary_language: Language | None = None
    languages: list[Language] = Field(default_factory=list)
    license_info: LicenseInfo | None = None
    avatar_url: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_repo_ref(self, web_base_url: str = "https://github.com") -> RepoRef:
        return RepoRef(
            id=self.id,
            name=self.name,
            url=self.url,
            owner=Owner(
                login=self.owner,
                avatar_url=self.avatar_url,
                url=f"{web_base_url.rstrip('/')}/{self.owner}",
            ),
            stargazer_count=self.stargazer_count,
            primary_language=self.primary_language,
            languages=self.languages,
            license_info=self.license_info,
        )


class RateLimit(BaseModel):
    cost: int = 0
    limit: int = 0
    remaining: int = 0
    reset_at: datetime
    used: int = 0

    @field_validator("reset_at", mode="before")
    @classmethod
    def parse_reset_at(cls, v: Any) -> Any:
        return _to_utc(v)

    @classmethod
    def from_graphql(cls, data: dict[str, Any]) -> RateLimit:
        return cls(
            cost=data.get("cost", 0),
            limit=data.get("limit", 0),
            remaining=data.get("remaining", 0),
            reset_at=data["resetAt"],
            used=data.get("used", 0),
        )


class PageInfo(BaseModel):
    has_next_page: bool = False
    end_cursor: str | None = None

    @classmethod
    def from_graphql(cls, data: dict[str, Any] | None) -> PageInfo:
        data = data or {}
        return cls(
            has_next_page=bool(data.get("hasNextPage")),
            end_cursor=data.get("endCursor"),
        )


class AtomEntry(BaseModel):
    """Atom 피드 원본 엔트리."""

    id: str = ""
    title: str = ""
    link: str = ""
    updated: str = ""
    content: str = ""
    author: str = ""


class GroupRepo(BaseModel):
    name: str
    url: str
    owner: Owner


class ReleaseGroup(BaseModel):
    """같은 저장소 + 2시간 이내 릴리스 묶음 (최신순)."""

    id: str
    releases: list[Release]
    published_at: datetime
    repo: GroupRepo
    is_single_release: bool
