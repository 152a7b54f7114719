"""YAML 설정 로딩 + Pydantic 모델."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config.yaml"


# ── 설정 모델 ──────────────────────────────────────────


class GitHubApiConfig(BaseModel):
    token_env_var: str = "GITHUB_TOKEN"
    api_base_url: str = "https://api.github.com"
    web_base_url: str = "https://github.com"
    request_timeout_sec: float = 60.0
    feed_timeout_sec: float = 15.0
    retries: int = Field(default=3, ge=0, le=10)
    retry_after_sec: float = 15.0
    max_rate_limit_wait_sec: float = 60.0
    backoff_factor: float = 2.0
    user_agent: str = "release-feed/0.1.0"


class CacheConfig(BaseModel):
    """서버 측 응답 캐시 TTL (초)."""

    releases_ttl_sec: int = 300
    starred_ttl_sec: int = 300
    repo_releases_ttl_sec: int = 180
    details_ttl_sec: int = 600


class FetchConfig(BaseModel):
    strategy: Literal["atom", "combined"] = "atom"
    page_size: int = Field(default=20, ge=1, le=100)
    starred_page_size: int = Field(default=100, ge=1, le=100)
    releases_per_repo: int = Field(default=10, ge=1, le=10)
    with_details: bool = True
    processing_batch_size: int = Field(default=5, ge=1)
    atom_batch_size: int = Field(default=100, ge=1, le=100)
    atom_concurrency: int = Field(default=20, ge=1)
    atom_delay_sec: float = 0.1
    atom_page_size: int = 10
    page_delay_sec: float = 1.0
    starred_page_delay_sec: float = 0.5
    batch_delay_sec: float = 0.1
    max_extra_pages: int = Field(default=2, ge=0)
    details_batch_size: int = Field(default=50, ge=1, le=50)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_sec: float = 0.3
    cutoff_months: int = Field(default=3, ge=1)


class StoreConfig(BaseModel):
    enabled: bool = True
    path: Path = Path(".cache/release-feed/releases.sqlite3")
    stale_threshold_sec: int = 300

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        return v.expanduser()


class AppConfig(BaseModel):
    """애플리케이션 전체 설정."""

    github: GitHubApiConfig = Field(default_factory=GitHubApiConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


# ── 로딩 ───────────────────────────────────────────────


def load_config(path: Path | None = None) -> AppConfig:
    """YAML 설정 파일을 로딩하고 Pydantic 모델로 검증한다.

    환경변수 우선순위: 시스템 환경변수 > .env 파일 > config.yaml 기본값
    """
    config_path = path or _DEFAULT_CONFIG_PATH

    # .env 파일 로딩: config.yaml과 같은 디렉터리의 .env를 탐색
    dotenv_path = config_path.parent / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raise ValueError(f"Empty config file: {config_path}")

    # 환경변수 오버라이드
    if releases_per_repo := os.environ.get("GITHUB_RELEASES_PER_REPO"):
        raw.setdefault("fetch", {})
        # upstream 제약: 1~10
        raw["fetch"]["releases_per_repo"] = min(max(1, int(releases_per_repo)), 10)

    if strategy := os.environ.get("RELEASE_FEED_STRATEGY"):
        raw.setdefault("fetch", {})
        raw["fetch"]["strategy"] = strategy

    for env_var, key in (
        ("GITHUB_CACHE_TTL", "releases_ttl_sec"),
        ("GITHUB_REPO_RELEASES_TTL", "repo_releases_ttl_sec"),
        ("GITHUB_DETAILS_TTL", "details_ttl_sec"),
    ):
        if value := os.environ.get(env_var):
            raw.setdefault("cache", {})
            raw["cache"][key] = int(value)

    if db_path := os.environ.get("RELEASE_FEED_DB_PATH"):
        raw.setdefault("store", {})
        raw["store"]["path"] = db_path

    return AppConfig.model_validate(raw)
