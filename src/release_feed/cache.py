"""upstream 응답 캐시 + in-flight 요청 병합(coalescing).

키: (namespace, user, cursor, pageSize, detail-variant)
- lookup: now < expires_at 인 캐시 엔트리 반환
- dedupe: 같은 키의 요청이 진행 중이면 그 결과를 공유한다. 등록은 await 이전,
  해제는 작업 완료(성공/실패) 이후. 공유 작업이 실패하면 대기자는 새로 시도한다.

단일 스레드 이벤트 루프에서 맵 확인과 등록 사이에 await가 없으므로 안전하다.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

logger = logging.getLogger(__name__)


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    COALESCE = "COALESCE"


@dataclass
class CacheEntry:
    data: Any
    expires_at: float


def build_cache_key(
    namespace: str,
    user_id: str,
    cursor: str | None,
    page_size: int | str,
    variant: str = "",
) -> str:
    """캐시 키를 생성한다. cursor가 없으면 `root`."""
    cursor_key = quote(cursor, safe="") if cursor else "root"
    key = f"gh:{namespace}:{user_id}:{cursor_key}:{page_size}"
    return f"{key}:{variant}" if variant else key


class ResponseCache:
    """TTL 응답 캐시 + in-flight 병합 맵.

    프로세스 전역 인스턴스는 get_response_cache()로 얻고,
    테스트에서는 케이스마다 독립 인스턴스를 주입한다.
    """

    def __init__(
        self,
        ttl_sec: float = 300,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    # ── TTL 캐시 ─────────────────────────────────────────

    def lookup(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.data

    def store(self, key: str, data: Any, ttl_sec: float | None = None) -> None:
        """key에 data를 저장하고, 만료된 엔트리를 함께 정리한다."""
        now = self._clock()
        expired = [k for k, entry in self._entries.items() if now >= entry.expires_at]
        for k in expired:
            del self._entries[k]
        ttl = self._ttl_sec if ttl_sec is None else ttl_sec
        self._entries[key] = CacheEntry(data=data, expires_at=now + ttl)

    def __len__(self) -> int:
        return len(self._entries)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """캐시 엔트리를 모두 제거한다 (진행 중인 요청은 유지)."""
        self._entries.clear()

    # ── in-flight 병합 ──────────────────────────────────────

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    def try_acquire(self, key: str, future: asyncio.Future[Any]) -> bool:
        """key에 future를 등록한다. 완료되지 않은 요청이 이미 있으면 False."""
        existing = self._inflight.get(key)
        if existing is not None and not existing.done():
            return False
        self._inflight[key] = future
        return True

    def release(self, key: str, future: asyncio.Future[Any]) -> None:
        """future가 아직 key의 등록 주체일 때만 해제한다."""
        if self._inflight.get(key) is future:
            del self._inflight[key]

    async def dedupe(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
    ) -> tuple[Any, CacheStatus]:
        """같은 key의 진행 중인 요청이 있으면 결과를 공유하고, 없으면 producer를 실행한다."""
        existing = self._inflight.get(key)
        while existing is not None:
            try:
                # shield: 대기자 취소가 공유 작업을 취소하지 않도록
                return await asyncio.shield(existing), CacheStatus.COALESCE
            except Exception as exc:
                logger.warning(
                    "Coalesced request failed, trying fresh: %s",
                    exc,
                    extra={"event_code": "COALESCE_FAILED", "cache_status": CacheStatus.COALESCE.value},
                )
            # 다른 대기자가 먼저 새 요청을 등록했다면 그 요청에 합류
            current = self._inflight.get(key)
            if current is not None and current is not existing and not current.done():
                existing = current
            else:
                existing = None

        task = asyncio.ensure_future(producer())
        self.try_acquire(key, task)
        try:
            return await task, CacheStatus.MISS
        finally:
            self.release(key, task)

    async def fetch(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        *,
        ttl_sec: float | None = None,
    ) -> tuple[Any, CacheStatus]:
        """캐시 조회 → 병합 → 성공 시 저장."""
        cached = self.lookup(key)
        if cached is not None:
            return cached, CacheStatus.HIT

        async def produce_and_store() -> Any:
            data = await producer()
            self.store(key, data, ttl_sec)
            return data

        return await self.dedupe(key, produce_and_store)


_response_cache: ResponseCache | None = None


def get_response_cache() -> ResponseCache:
    """프로세스 전역 ResponseCache를 반환한다."""
    global _response_cache
    if _response_cache is None:
        _response_cache = ResponseCache()
    return _response_cache
