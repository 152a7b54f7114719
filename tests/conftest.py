"""공통 fixture."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
import yaml

from release_feed.config import AppConfig
from release_feed.models import Owner, Release, RepoRef

_real_sleep = asyncio.sleep


def iso(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_repo(owner: str = "octo", name: str = "widgets", repo_id: str = "R_widgets") -> RepoRef:
    return RepoRef(
        id=repo_id,
        name=name,
        url=f"https://github.com/{owner}/{name}",
        owner=Owner(login=owner, avatar_url="", url=f"https://github.com/{owner}"),
    )


def make_release(
    release_id: str,
    published_at: datetime,
    *,
    repo: RepoRef | None = None,
    tag_name: str | None = None,
    description_html: str = "",
) -> Release:
    tag = tag_name or f"v-{release_id}"
    return Release(
        id=release_id,
        name=tag,
        tag_name=tag,
        url=f"https://github.com/octo/widgets/releases/tag/{tag}",
        published_at=published_at,
        description_html=description_html,
        repo=repo or make_repo(),
    )


def graphql_release_node(
    release_id: str,
    published_at: datetime,
    *,
    tag_name: str | None = None,
    with_details: bool = True,
) -> dict[str, Any]:
    tag = tag_name or f"v-{release_id}"
    node: dict[str, Any] = {
        "id": release_id,
        "isDraft": False,
        "isPrerelease": False,
        "name": None,
        "tagName": tag,
        "publishedAt": iso(published_at),
        "updatedAt": iso(published_at),
        "url": f"https://github.com/octo/widgets/releases/tag/{tag}",
    }
    if with_details:
        node["descriptionHTML"] = f"<p>{tag}</p>"
    return node


def graphql_repo_node(
    release_nodes: list[dict[str, Any]],
    *,
    owner: str = "octo",
    name: str = "widgets",
    repo_id: str = "R_widgets",
    has_next_page: bool = False,
    end_cursor: str | None = None,
) -> dict[str, Any]:
    return {
        "id": repo_id,
        "name": name,
        "url": f"https://github.com/{owner}/{name}",
        "description": "A repository of widgets",
        "primaryLanguage": {"id": "L_py", "name": "Python"},
        "owner": {"login": owner, "avatarUrl": "https://avatars.example/1", "url": f"https://github.com/{owner}"},
        "stargazerCount": 42,
        "languages": {"totalCount": 1, "edges": [{"node": {"id": "L_py", "name": "Python"}}]},
        "licenseInfo": {"spdxId": "MIT"},
        "releases": {
            "totalCount": len(release_nodes),
            "pageInfo": {"hasNextPage": has_next_page, "endCursor": end_cursor},
            "edges": [{"node": n} for n in release_nodes],
        },
    }


def rate_limit_data(*, remaining: int = 4990, cost: int = 1, reset_at: datetime | None = None) -> dict[str, Any]:
    reset = reset_at or datetime.now(tz=UTC) + timedelta(minutes=30)
    return {"cost": cost, "limit": 5000, "remaining": remaining, "resetAt": iso(reset), "used": 5000 - remaining}


def releases_page_body(
    repo_nodes: list[dict[str, Any]],
    *,
    has_next_page: bool = False,
    end_cursor: str | None = None,
    remaining: int = 4990,
) -> dict[str, Any]:
    return {
        "data": {
            "viewer": {
                "starredRepositories": {
                    "pageInfo": {"endCursor": end_cursor, "hasNextPage": has_next_page},
                    "edges": [{"node": n} for n in repo_nodes],
                }
            },
            "rateLimit": rate_limit_data(remaining=remaining),
        }
    }


def starred_page_body(
    repos: list[tuple[str, str, str]],
    *,
    has_next_page: bool = False,
    end_cursor: str | None = None,
    total_count: int | None = None,
    remaining: int = 4990,
) -> dict[str, Any]:
    """repos: (id, owner, name) 목록."""
    return {
        "data": {
            "viewer": {
                "starredRepositories": {
                    "totalCount": total_count if total_count is not None else len(repos),
                    "pageInfo": {"endCursor": end_cursor, "hasNextPage": has_next_page},
                    "edges": [
                        {
                            "starredAt": "2024-01-01T00:00:00Z",
                            "node": {
                                "id": repo_id,
                                "name": name,
                                "url": f"https://github.com/{owner}/{name}",
                                "stargazerCount": 7,
                                "primaryLanguage": None,
                                "languages": {"edges": [{"node": {"id": "L_go", "name": "Go"}}]},
                                "licenseInfo": None,
                                "owner": {"login": owner, "avatarUrl": "https://avatars.example/2"},
                            },
                        }
                        for repo_id, owner, name in repos
                    ],
                }
            },
            "rateLimit": rate_limit_data(remaining=remaining),
        }
    }


def atom_feed(entries: list[tuple[str, str, datetime]], *, owner: str = "octo", name: str = "widgets") -> str:
    """entries: (tag, title, updated) 목록으로 GitHub 릴리스 Atom 피드를 만든다."""
    items = "".join(
        f"""
  <entry>
    <id>tag:github.com,2008:Repository/1/{tag}</id>
    <updated>{iso(updated)}</updated>
    <link rel="alternate" type="text/html" href="https://github.com/{owner}/{name}/releases/tag/{tag}"/>
    <title>{title}</title>
    <content type="html">&lt;p&gt;Notes for {tag}&lt;/p&gt;</content>
    <author><name>octocat</name></author>
  </entry>"""
        for tag, title, updated in entries
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom" xml:lang="en-US">
  <id>tag:github.com,2008:https://github.com/{owner}/{name}/releases</id>
  <link type="text/html" rel="alternate" href="https://github.com/{owner}/{name}/releases"/>
  <title>Release notes from {name}</title>
  <updated>2024-01-01T00:00:00Z</updated>{items}
</feed>
"""


@pytest.fixture()
def now() -> datetime:
    return datetime.now(tz=UTC).replace(microsecond=0)


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """지연/재시도 대기를 없앤 테스트용 설정."""
    return AppConfig.model_validate(
        {
            "github": {"retries": 1, "retry_after_sec": 0, "backoff_factor": 0.0},
            "fetch": {
                "page_delay_sec": 0,
                "starred_page_delay_sec": 0,
                "batch_delay_sec": 0,
                "atom_delay_sec": 0,
                "retry_base_delay_sec": 0,
            },
            "store": {"path": str(tmp_path / "releases.sqlite3")},
        }
    )


@pytest.fixture()
def sample_config_data() -> dict[str, Any]:
    """테스트용 config dict."""
    return {
        "github": {"token_env_var": "GITHUB_TOKEN", "retries": 2},
        "cache": {"releases_ttl_sec": 120},
        "fetch": {"strategy": "combined", "releases_per_repo": 5},
        "store": {"path": "~/release-feed-test/releases.sqlite3"},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, sample_config_data: dict[str, Any]) -> Path:
    """임시 YAML 설정 파일."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(sample_config_data), encoding="utf-8")
    return config_path


@pytest.fixture()
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """asyncio.sleep을 즉시 반환하도록 바꾸고, 요청된 지연 시간을 기록한다."""
    delays: list[float] = []

    async def fake_sleep(delay: float, result: Any = None) -> Any:
        delays.append(delay)
        return await _real_sleep(0, result)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return delays
