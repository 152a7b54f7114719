"""로컬 영속 저장소 (sqlite3).

세 영역을 관리한다.
- releases: 릴리스 id 기준 (본문 제외 JSON + cached_at)
- descriptions: `id-publishedAt` 기준 descriptionHTML (본문이 같으면 쓰지 않음)
- metadata: 단일 레코드 (last_fetch_timestamp, etag)

모든 연산은 코루틴으로 노출한다 (asyncio.to_thread + lock으로 직렬화).
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import orjson
from pydantic import ValidationError

from release_feed.models import Release

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA_VERSION = 1
DEFAULT_STALE_THRESHOLD_SEC = 300
_METADATA_KEY = "lastFetch"

# 버전별 마이그레이션 (user_version → 다음 버전)
_MIGRATIONS: dict[int, list[str]] = {
    0: [
        """
        CREATE TABLE IF NOT EXISTS releases (
            id TEXT PRIMARY KEY,
            published_at TEXT NOT NULL,
            data BLOB NOT NULL,
            cached_at REAL NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_releases_published_at ON releases (published_at)",
        """
        CREATE TABLE IF NOT EXISTS descriptions (
            key TEXT PRIMARY KEY,
            html TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            last_fetch_timestamp REAL NOT NULL,
            etag TEXT
        )
        """,
    ],
}


@dataclass
class FetchMetadata:
    last_fetch_timestamp: float
    etag: str | None = None


class ReleaseStore:
    """릴리스 캐시 저장소.

    init()은 멱등이며, 최초 호출 시 DB 파일과 스키마를 만든다.
    init() 이전의 다른 연산은 RuntimeError를 발생시킨다.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = Path(path)
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    # ── 내부 ─────────────────────────────────────────────

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(fn, *args)

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("ReleaseStore is not initialized; call init() first")
        return self._conn

    def _open(self) -> None:
        if self._conn is not None:
            return
        if str(self._path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._path, check_same_thread=False)
        try:
            version = conn.execute("PRAGMA user_version").fetchone()[0]
            while version < SCHEMA_VERSION:
                for statement in _MIGRATIONS[version]:
                    conn.execute(statement)
                version += 1
                conn.execute(f"PRAGMA user_version = {version}")
            conn.commit()
        except sqlite3.Error:
            conn.close()
            raise
        self._conn = conn
        logger.info("Release store ready: %s (schema v%d)", self._path, version)

    def _load_cached(self) -> list[Release]:
        conn = self._connection()
        rows = conn.execute(
            """
            SELECT r.data, d.html
            FROM releases r
            LEFT JOIN descriptions d ON d.key = r.id || '-' || r.published_at
            ORDER BY r.published_at DESC
            """
        ).fetchall()
        releases: list[Release] = []
        for data, html in rows:
            try:
                record = orjson.loads(data)
                record["description_html"] = html or ""
                releases.append(Release.model_validate(record))
            except (orjson.JSONDecodeError, ValidationError) as exc:
                logger.warning("Skipping corrupt cached release: %s", exc)
        return releases

    def _put_description(self, key: str, html: str) -> bool:
        conn = self._connection()
        row = conn.execute("SELECT html FROM descriptions WHERE key = ?", (key,)).fetchone()
        if row is not None and row[0] == html:
            return False
        conn.execute(
            "INSERT OR REPLACE INTO descriptions (key, html) VALUES (?, ?)",
            (key, html),
        )
        conn.commit()
        return True

    def _put(self, release: Release) -> None:
        conn = self._connection()
        record = release.model_dump(mode="json", exclude={"description_html"})
        conn.execute(
            "INSERT OR REPLACE INTO releases (id, published_at, data, cached_at) VALUES (?, ?, ?, ?)",
            (release.id, release.published_at.isoformat(), orjson.dumps(record), self._clock()),
        )
        conn.commit()
        if release.description_html:
            self._put_description(release.description_key, release.description_html)

    def _get_description(self, key: str) -> str | None:
        row = self._connection().execute("SELECT html FROM descriptions WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def _get_metadata(self) -> FetchMetadata | None:
        row = (
            self._connection()
            .execute("SELECT last_fetch_timestamp, etag FROM metadata WHERE key = ?", (_METADATA_KEY,))
            .fetchone()
        )
        if row is None:
            return None
        return FetchMetadata(last_fetch_timestamp=row[0], etag=row[1])

    def _update_metadata(self, last_fetch_timestamp: float, etag: str | None) -> None:
        # etag가 None이면 저장된 값을 유지한다
        conn = self._connection()
        conn.execute(
            """
            INSERT INTO metadata (key, last_fetch_timestamp, etag) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                last_fetch_timestamp = excluded.last_fetch_timestamp,
                etag = COALESCE(excluded.etag, metadata.etag)
            """,
            (_METADATA_KEY, last_fetch_timestamp, etag),
        )
        conn.commit()

    def _clear(self) -> None:
        conn = self._connection()
        for table in ("releases", "descriptions", "metadata"):
            conn.execute(f"DELETE FROM {table}")  # noqa: S608
        conn.commit()

    # ── 공개 API ─────────────────────────────────────────

    async def init(self) -> None:
        """DB를 열고 스키마를 최신 버전으로 맞춘다 (멱등)."""
        await self._run(self._open)

    async def load_cached(self) -> list[Release]:
        """저장된 릴리스를 본문과 함께 최신순으로 반환한다."""
        return await self._run(self._load_cached)

    async def put(self, release: Release) -> None:
        await self._run(self._put, release)

    async def get_description(self, key: str) -> str | None:
        return await self._run(self._get_description, key)

    async def put_description(self, key: str, html: str) -> bool:
        """본문을 저장한다. 기존 값과 같으면 쓰지 않고 False를 반환한다."""
        return await self._run(self._put_description, key, html)

    async def get_metadata(self) -> FetchMetadata | None:
        return await self._run(self._get_metadata)

    async def update_metadata(
        self,
        last_fetch_timestamp: float | None = None,
        etag: str | None = None,
    ) -> None:
        timestamp = self._clock() if last_fetch_timestamp is None else last_fetch_timestamp
        await self._run(self._update_metadata, timestamp, etag)

    async def is_stale(self, threshold_sec: float = DEFAULT_STALE_THRESHOLD_SEC) -> bool:
        """마지막 수집 후 threshold_sec가 지났으면 True (기록이 없어도 True)."""
        metadata = await self.get_metadata()
        if metadata is None:
            return True
        return self._clock() - metadata.last_fetch_timestamp > threshold_sec

    async def clear(self) -> None:
        """세 영역을 모두 비운다."""
        await self._run(self._clear)

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                await asyncio.to_thread(self._conn.close)
                self._conn = None
