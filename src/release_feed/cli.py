"""click CLI 엔트리포인트.

release-feed fetch 명령으로 별 목록 저장소의 최근 릴리스를 수집합니다.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
import orjson

from release_feed.auth import EnvTokenProvider
from release_feed.collector import ReleaseCollector
from release_feed.config import AppConfig, load_config
from release_feed.errors import ReleaseFeedError
from release_feed.grouping import format_group_time_diff
from release_feed.logging_config import setup_logging
from release_feed.models import Release, ReleaseGroup
from release_feed.store import ReleaseStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="설정 파일 경로 (기본: 프로젝트 루트 config.yaml)",
)
_json_log_option = click.option("--json-log/--no-json-log", default=True, help="JSON 로그 포맷 (기본: 활성)")
_store_option = click.option("--store/--no-store", "use_store", default=True, help="로컬 캐시 저장소 사용")


def _load(config_path: Path | None, strategy: str | None = None) -> AppConfig:
    config = load_config(config_path)
    if strategy:
        config = config.model_copy(
            update={"fetch": config.fetch.model_copy(update={"strategy": strategy})}
        )
    return config


def _build_collector(config: AppConfig, *, use_store: bool) -> ReleaseCollector:
    store = ReleaseStore(config.store.path) if use_store and config.store.enabled else None
    return ReleaseCollector(EnvTokenProvider(config.github.token_env_var), config, store=store)


def _run(collector: ReleaseCollector, action: Callable[[ReleaseCollector], Awaitable[T]]) -> T:
    """수집기 작업을 실행하고, 분류된 오류를 ClickException으로 변환한다."""

    async def runner() -> T:
        try:
            return await action(collector)
        finally:
            await collector.close()

    try:
        return asyncio.run(runner())
    except ReleaseFeedError as exc:
        raise click.ClickException(collector.state.error or exc.message) from exc
    except sqlite3.Error as exc:
        raise click.ClickException(collector.state.error or str(exc)) from exc


def _write_jsonl(path: Path, records: list[Release] | list[ReleaseGroup]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        for record in records:
            f.write(orjson.dumps(record.model_dump(mode="json")))
            f.write(b"\n")


@click.group()
@click.version_option(version="0.1.0", prog_name="release-feed")
def main() -> None:
    """Release Feed - 별 목록 저장소의 최근 릴리스를 모아 봅니다."""


@main.command()
@_config_option
@click.option(
    "--strategy",
    default=None,
    type=click.Choice(["atom", "combined"]),
    help="수집 전략 (기본: config.yaml의 fetch.strategy)",
)
@click.option("--force", is_flag=True, default=False, help="캐시가 신선해도 다시 수집")
@click.option(
    "--output-jsonl",
    default=None,
    type=click.Path(path_type=Path),
    help="수집한 릴리스를 JSONL 파일로 출력",
)
@_store_option
@_json_log_option
def fetch(
    config_path: Path | None,
    strategy: str | None,
    force: bool,
    output_jsonl: Path | None,
    use_store: bool,
    json_log: bool,
) -> None:
    """릴리스를 수집합니다.

    로컬 캐시가 신선하면 upstream을 호출하지 않습니다 (--force로 무시).
    """
    setup_logging(json_format=json_log)
    config = _load(config_path, strategy)
    collector = _build_collector(config, use_store=use_store)

    releases = _run(collector, lambda c: c.fetch_all_releases(force=force))

    if output_jsonl:
        _write_jsonl(output_jsonl, releases)

    state = collector.state
    summary_msg = (
        f"Fetch complete: "
        f"releases={len(releases)}, "
        f"repos={state.repos_processed}/{state.total_repos}, "
        f"rate_limit_cost={state.rate_limit_cost}, "
        f"rate_limit_remaining={state.rate_limit_remaining}"
    )
    if output_jsonl:
        summary_msg += f", output={output_jsonl}"
    logger.info(
        summary_msg,
        extra={
            "event_code": "FETCH_SUMMARY",
            "counts": {"releases": len(releases), "repos_processed": state.repos_processed},
        },
    )
    click.echo(summary_msg)


@main.command()
@_config_option
@click.option("--max-age", default=300, type=int, show_default=True, help="이 시간(초)보다 오래된 경우만 다시 수집")
@click.option(
    "--output-jsonl",
    default=None,
    type=click.Path(path_type=Path),
    help="그룹을 JSONL 파일로 출력",
)
@_store_option
@_json_log_option
def groups(
    config_path: Path | None,
    max_age: int,
    output_jsonl: Path | None,
    use_store: bool,
    json_log: bool,
) -> None:
    """릴리스를 저장소/시간 기준 그룹으로 출력합니다."""
    setup_logging(json_format=json_log)
    if max_age < 0:
        raise click.BadParameter(f"max-age는 0 이상이어야 합니다: {max_age}")

    config = _load(config_path)
    collector = _build_collector(config, use_store=use_store)
    _run(collector, lambda c: c.refresh_if_stale(max_age))
    release_groups = collector.groups()

    if output_jsonl:
        _write_jsonl(output_jsonl, release_groups)
        click.echo(f"Wrote {len(release_groups)} groups to {output_jsonl}")
        return

    for group in release_groups:
        tags = ", ".join(r.tag_name for r in group.releases)
        line = f"{group.published_at:%Y-%m-%d %H:%M} {group.repo.owner.login}/{group.repo.name}: {tags}"
        if (diff := format_group_time_diff(group)) is not None:
            line += f" (over {diff})"
        click.echo(line)


@main.command("clear-cache")
@_config_option
@_json_log_option
def clear_cache(config_path: Path | None, json_log: bool) -> None:
    """로컬 캐시 저장소를 비웁니다."""
    setup_logging(json_format=json_log)
    config = _load(config_path)
    collector = _build_collector(config, use_store=True)
    _run(collector, lambda c: c.clear_cache())
    click.echo(f"Cache cleared: {config.store.path}")


if __name__ == "__main__":
    main()
