"""upstream 실패 분류 + 호출자 수준 재시도.

GitHubApiError / httpx 예외를 다음 유형으로 변환한다.
- Unauthorized: 401 또는 "bad credentials" (종료, 세션 갱신 트리거)
- RateLimited: rate limit 문구가 포함된 403/429, primary 소진 (이번 실행 종료, 리셋 시각 포함)
- UpstreamTimeout: 타임아웃 (재시도 가능)
- NetworkError: 연결 리셋/DNS 실패 (백오프 재시도 가능)
- UpstreamUnavailable: 내장 재시도 후에도 남은 5xx (호출자 재시도 없음)
- InvalidResponseShape: 응답 구조 불일치 (재시도 없음)

UPSTREAM_ERRORS 밖의 예외(로컬 sqlite 오류, 프로그래밍 오류)는 분류하지 않고 그대로 전파한다.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

import httpx

from release_feed.github_api import GitHubApiError
from release_feed.models import RateLimit

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RATE_LIMIT_RE = re.compile(r"rate limit|secondary rate", re.IGNORECASE)
_BAD_CREDENTIALS_RE = re.compile(r"bad credentials", re.IGNORECASE)


class ReleaseFeedError(Exception):
    """릴리스 피드 파이프라인 오류의 기본 클래스."""

    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class Unauthorized(ReleaseFeedError):
    """인증 실패."""


class RateLimited(ReleaseFeedError):
    """rate limit 소진. reset_at이 있으면 메시지에 리셋 시각을 포함한다."""

    def __init__(
        self,
        message: str,
        *,
        reset_at: datetime | None = None,
        status_code: int | None = 429,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at


class UpstreamTimeout(ReleaseFeedError):
    """GitHub 요청 타임아웃."""

    retryable = True


class NetworkError(ReleaseFeedError):
    """네트워크 오류 (연결 리셋, DNS 실패)."""

    retryable = True


class UpstreamUnavailable(ReleaseFeedError):
    """GitHub API 일시 장애."""


class InvalidResponseShape(ReleaseFeedError):
    """응답에 기대한 필드가 없거나 형식이 다르다."""


# GitHub 호출 경로에서 발생하는 예외
UPSTREAM_ERRORS: tuple[type[BaseException], ...] = (
    ReleaseFeedError,
    GitHubApiError,
    httpx.HTTPError,
    asyncio.TimeoutError,
)


def format_reset_time(reset_at: datetime) -> str:
    """리셋 시각을 로컬 시간 문자열로 변환한다."""
    return reset_at.astimezone().strftime("%H:%M:%S")


def rate_limit_message(
    rate_limit: RateLimit,
    *,
    total_cost: int | None = None,
    now: datetime | None = None,
) -> str:
    """rate limit 소진 메시지를 만든다 (남은 분 + 리셋 시각)."""
    now = now or datetime.now(tz=UTC)
    reset_in_min = max(0, math.ceil((rate_limit.reset_at - now).total_seconds() / 60))
    cost = total_cost if total_cost is not None else rate_limit.cost
    return (
        f"GitHub API rate limit reached ({rate_limit.used}/{rate_limit.limit}, Cost: {cost}). "
        f"Resets in {reset_in_min} minutes at {format_reset_time(rate_limit.reset_at)}"
    )


def classify_error(exc: BaseException) -> ReleaseFeedError:
    """upstream 예외를 ReleaseFeedError 하위 유형으로 변환한다.

    exc는 UPSTREAM_ERRORS 중 하나여야 한다.
    """
    if isinstance(exc, ReleaseFeedError):
        return exc

    if isinstance(exc, httpx.TimeoutException | asyncio.TimeoutError):
        return UpstreamTimeout("Request timeout contacting GitHub", status_code=504)

    if isinstance(exc, httpx.TransportError):
        return NetworkError("Network error contacting GitHub", status_code=503)

    if isinstance(exc, GitHubApiError):
        status = exc.status_code
        message = exc.message

        if status == 401 or _BAD_CREDENTIALS_RE.search(message):
            return Unauthorized("Bad credentials", status_code=401)

        if status in (403, 429) and _RATE_LIMIT_RE.search(message):
            reset_at: datetime | None = None
            reason = "GitHub API rate limit exceeded."
            reset = exc.headers.get("x-ratelimit-reset")
            if reset and reset.isdigit():
                reset_at = datetime.fromtimestamp(int(reset), tz=UTC)
                reason += f" Resets at {format_reset_time(reset_at)}."
            return RateLimited(reason, reset_at=reset_at)

        return UpstreamUnavailable(
            f"GitHub API temporarily unavailable: {message}",
            status_code=status if status >= 400 else 502,
        )

    return UpstreamUnavailable(f"GitHub API temporarily unavailable: {exc}", status_code=502)


def is_retryable(exc: BaseException) -> bool:
    """호출자 수준에서 재시도할 가치가 있는 오류인지 판별한다."""
    return isinstance(exc, UPSTREAM_ERRORS) and classify_error(exc).retryable


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay_sec: float = 0.3,
    on_retry: Callable[[int, ReleaseFeedError], None] | None = None,
) -> T:
    """재시도 가능한 오류에 대해 지수 백오프로 fn을 다시 호출한다.

    - 최대 attempts회 호출 (내장 클라이언트 재시도와 별개)
    - 지연: base_delay_sec, 2배씩 증가
    - 재시도 불가 오류와 마지막 실패는 분류된 예외로 발생
    - UPSTREAM_ERRORS 밖의 예외는 재시도 없이 그대로 전파

    Raises:
        ReleaseFeedError: 분류된 최종 오류
    """
    delay = base_delay_sec
    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except UPSTREAM_ERRORS as exc:
            error = classify_error(exc)
            if not error.retryable or attempt >= attempts:
                if error is exc:
                    raise
                raise error from exc

            logger.warning(
                "Retryable %s, attempt %d/%d in %.2fs: %s",
                type(error).__name__,
                attempt,
                attempts,
                delay,
                error,
            )
            if on_retry is not None:
                on_retry(attempt, error)
            await asyncio.sleep(delay)
            delay *= 2

    raise AssertionError("unreachable")
