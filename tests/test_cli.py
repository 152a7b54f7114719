"""click CLI 테스트."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import orjson
import pytest
import yaml
from click.testing import CliRunner
from conftest import make_release

from release_feed import cli
from release_feed.cache import ResponseCache
from release_feed.collector import ReleaseCollector
from release_feed.config import AppConfig
from release_feed.models import Release
from release_feed.strategies import FetchContext


class _Auth:
    def get_access_token(self) -> str | None:
        return "ghp_cli"

    def on_session_invalid(self) -> None:
        pass


class _Client:
    async def close(self) -> None:
        pass


class _Strategy:
    name = "stub"

    def __init__(self, releases: list[Release]) -> None:
        self.releases = releases

    async def run(self, ctx: FetchContext) -> None:
        await ctx.merge(self.releases)
        ctx.progress.total_repos = 1
        ctx.progress.repos_processed = 1


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    logging.getLogger("release_feed").handlers.clear()


@pytest.fixture()
def cli_config(tmp_path: Path) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        yaml.dump(
            {
                "fetch": {"strategy": "atom", "page_delay_sec": 0},
                "store": {"path": str(tmp_path / "store" / "releases.sqlite3")},
            }
        ),
        encoding="utf-8",
    )
    return config_path


@pytest.fixture()
def releases() -> list[Release]:
    now = datetime.now(tz=UTC).replace(microsecond=0)
    return [
        make_release("RE_a", now - timedelta(hours=1)),
        make_release("RE_b", now - timedelta(hours=1, minutes=30)),
    ]


@pytest.fixture()
def built_configs(monkeypatch: pytest.MonkeyPatch, releases: list[Release]) -> list[AppConfig]:
    """_build_collector를 가짜 전략을 쓰는 수집기로 교체하고, 전달된 설정을 기록한다."""
    configs: list[AppConfig] = []

    def build(config: AppConfig, *, use_store: bool) -> ReleaseCollector:
        configs.append(config)
        return ReleaseCollector(
            _Auth(),
            config,
            cache=ResponseCache(),
            strategy=_Strategy(releases),
            client_factory=lambda token: _Client(),  # type: ignore[arg-type,return-value]
        )

    monkeypatch.setattr(cli, "_build_collector", build)
    return configs


def _invoke(*args: Any) -> Any:
    return CliRunner().invoke(cli.main, [str(a) for a in args])


class TestMain:
    def test_version(self) -> None:
        result = _invoke("--version")
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help_lists_commands(self) -> None:
        result = _invoke("--help")
        assert result.exit_code == 0
        for command in ("fetch", "groups", "clear-cache"):
            assert command in result.output


class TestFetchCommand:
    def test_missing_token(self, cli_config: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)

        result = _invoke("fetch", "--config", cli_config, "--no-store", "--no-json-log")

        assert result.exit_code == 1
        assert "Not authenticated" in result.output

    def test_summary_and_jsonl(self, cli_config: Path, tmp_path: Path, built_configs: list[AppConfig]) -> None:
        output = tmp_path / "out" / "releases.jsonl"

        result = _invoke("fetch", "--config", cli_config, "--output-jsonl", output, "--no-json-log")

        assert result.exit_code == 0, result.output
        assert "Fetch complete: releases=2, repos=1/1" in result.output
        lines = output.read_bytes().splitlines()
        assert [orjson.loads(line)["id"] for line in lines] == ["RE_a", "RE_b"]

    def test_strategy_override(self, cli_config: Path, built_configs: list[AppConfig]) -> None:
        result = _invoke("fetch", "--config", cli_config, "--strategy", "combined")

        assert result.exit_code == 0, result.output
        assert built_configs[0].fetch.strategy == "combined"

    def test_invalid_strategy_rejected(self, cli_config: Path) -> None:
        result = _invoke("fetch", "--config", cli_config, "--strategy", "rest")
        assert result.exit_code == 2


class TestGroupsCommand:
    def test_prints_groups(self, cli_config: Path, built_configs: list[AppConfig]) -> None:
        result = _invoke("groups", "--config", cli_config, "--no-json-log")

        assert result.exit_code == 0, result.output
        assert "octo/widgets: v-RE_a, v-RE_b (over 30m)" in result.output

    def test_groups_jsonl(self, cli_config: Path, tmp_path: Path, built_configs: list[AppConfig]) -> None:
        output = tmp_path / "groups.jsonl"

        result = _invoke("groups", "--config", cli_config, "--output-jsonl", output)

        assert result.exit_code == 0, result.output
        assert f"Wrote 1 groups to {output}" in result.output
        group = orjson.loads(output.read_bytes().splitlines()[0])
        assert [r["id"] for r in group["releases"]] == ["RE_a", "RE_b"]
        assert group["is_single_release"] is False

    def test_negative_max_age(self, cli_config: Path) -> None:
        result = _invoke("groups", "--config", cli_config, "--max-age", -1)

        assert result.exit_code == 2
        assert "max-age" in result.output


class TestClearCacheCommand:
    def test_clear_cache(self, cli_config: Path, tmp_path: Path) -> None:
        result = _invoke("clear-cache", "--config", cli_config, "--no-json-log")

        assert result.exit_code == 0, result.output
        store_path = tmp_path / "store" / "releases.sqlite3"
        assert f"Cache cleared: {store_path}" in result.output
        assert store_path.exists()
