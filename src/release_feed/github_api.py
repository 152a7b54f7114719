"""GitHub API 비동기 클라이언트 팩토리.

access token으로 인증된 클라이언트를 생성한다.
- primary/secondary rate limit 대기 후 재시도 (retries 상한)
- 5xx 지수 백오프 재시도 (같은 상한)
- 400/401/403/404/422는 재시도하지 않음
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

import httpx

from release_feed.config import GitHubApiConfig

logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"


class GitHubApiError(Exception):
    """GitHub API 호출 실패 (재시도 상한 초과 또는 재시도 불가 상태 코드)."""

    def __init__(
        self,
        status_code: int,
        message: str,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.status_code = status_code
        self.message = message
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        super().__init__(f"GitHub API error {status_code}: {message}")


def _error_message(resp: httpx.Response) -> str:
    """응답 본문에서 오류 메시지를 추출한다."""
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.text or resp.reason_phrase


class GitHubClient:
    """GraphQL + Atom 피드용 비동기 클라이언트.

    클라이언트 간 공유 상태는 없다. 전송 계층 예외(httpx.TimeoutException,
    httpx.TransportError)는 그대로 전파되어 errors.classify_error가 분류한다.
    """

    def __init__(
        self,
        access_token: str,
        config: GitHubApiConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")

        self._config = config
        self._token = access_token
        self._client = httpx.AsyncClient(
            base_url=config.api_base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "User-Agent": config.user_agent,
                "X-GitHub-Api-Version": _API_VERSION,
            },
            timeout=config.request_timeout_sec,
            transport=transport,
        )
        self._rate_remaining: int | None = None

    @property
    def access_token(self) -> str:
        return self._token

    @property
    def rate_remaining(self) -> int | None:
        """마지막 응답 헤더 기준 남은 rate limit."""
        return self._rate_remaining

    # ── rate limit 판별 ─────────────────────────────────────

    @staticmethod
    def _is_rate_limited(resp: httpx.Response, message: str) -> bool:
        if resp.status_code not in (403, 429):
            return False
        if resp.headers.get("x-ratelimit-remaining") == "0":
            return True
        if resp.headers.get("retry-after"):
            return True
        return "rate limit" in message.lower()

    def _rate_limit_wait(self, resp: httpx.Response) -> float:
        """rate limit 응답의 대기 시간(초)을 계산한다."""
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(0.0, float(retry_after))
            except ValueError:
                pass
        reset_at = resp.headers.get("x-ratelimit-reset")
        if reset_at and resp.headers.get("x-ratelimit-remaining") == "0":
            try:
                return max(0.0, float(reset_at) - time.time()) + 1
            except ValueError:
                pass
        return self._config.retry_after_sec

    def _backoff(self, attempt: int) -> float:
        return self._config.backoff_factor ** attempt + random.uniform(0, 1)

    # ── 공통 요청 ──────────────────────────────────────────

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """공통 요청 메서드 (요청 → rate limit/5xx 재시도)."""
        retries = self._config.retries
        kwargs: dict[str, Any] = {"json": json_body, "headers": headers}
        if timeout is not None:
            kwargs["timeout"] = timeout

        for attempt in range(retries + 1):
            resp = await self._client.request(method, url, **kwargs)

            remaining = resp.headers.get("x-ratelimit-remaining")
            if remaining is not None and remaining.isdigit():
                self._rate_remaining = int(remaining)

            if resp.status_code < 400:
                return resp

            message = _error_message(resp)

            # primary / secondary rate limit
            if self._is_rate_limited(resp, message):
                wait = self._rate_limit_wait(resp)
                if attempt < retries and wait <= self._config.max_rate_limit_wait_sec:
                    logger.warning(
                        "Rate limited (%d) on %s %s, retry %d/%d in %.0fs",
                        resp.status_code,
                        method,
                        url,
                        attempt + 1,
                        retries,
                        wait,
                        extra={"event_code": "RATE_LIMITED"},
                    )
                    await asyncio.sleep(wait)
                    continue
                raise GitHubApiError(resp.status_code, message, dict(resp.headers))

            # 4xx (400/401/403/404/422 등): 재시도 없음
            if resp.status_code < 500:
                raise GitHubApiError(resp.status_code, message, dict(resp.headers))

            # 5xx: 재시도
            if attempt < retries:
                delay = self._backoff(attempt)
                logger.warning(
                    "Server error %d, retry %d/%d in %.1fs",
                    resp.status_code,
                    attempt + 1,
                    retries,
                    delay,
                    extra={"event_code": "SERVER_ERROR"},
                )
                await asyncio.sleep(delay)
                continue
            raise GitHubApiError(
                resp.status_code,
                f"{message} (after {retries} retries)",
                dict(resp.headers),
            )

        # retries + 1회 안에 반드시 return 또는 raise
        raise AssertionError("unreachable")

    # ── 공개 API ─────────────────────────────────────────

    async def graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """POST /graphql 요청 후 `data` 객체를 반환한다.

        본문에 errors만 있고 data가 없으면 GitHubApiError를 발생시킨다.
        """
        resp = await self._request("POST", "/graphql", json_body={"query": query, "variables": variables or {}})
        try:
            body = resp.json()
        except ValueError as exc:
            raise GitHubApiError(resp.status_code, f"Invalid JSON body: {exc}") from exc

        errors = body.get("errors") if isinstance(body, dict) else None
        data = body.get("data") if isinstance(body, dict) else None
        if errors:
            messages = "; ".join(str(e.get("message", e)) for e in errors)
            if data is None:
                if any(e.get("type") == "RATE_LIMITED" for e in errors):
                    raise GitHubApiError(403, f"API rate limit exceeded: {messages}", dict(resp.headers))
                raise GitHubApiError(resp.status_code, messages, dict(resp.headers))
            logger.warning("GraphQL partial errors: %s", messages)
        if not isinstance(data, dict):
            raise GitHubApiError(resp.status_code, "GraphQL response has no data object")
        return data

    async def fetch_text(self, url: str, *, headers: dict[str, str] | None = None) -> str:
        """github.com 등 API 외부 URL의 텍스트 본문을 가져온다 (Atom 피드)."""
        request_headers = {"Authorization": f"token {self._token}"}
        request_headers.update(headers or {})
        resp = await self._request("GET", url, headers=request_headers, timeout=self._config.feed_timeout_sec)
        return resp.text

    async def close(self) -> None:
        """httpx.AsyncClient를 종료한다."""
        await self._client.aclose()

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


def create_github_client(
    access_token: str,
    *,
    retries: int | None = None,
    retry_after_sec: float | None = None,
    timeout_sec: float | None = None,
    config: GitHubApiConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> GitHubClient:
    """throttling/retry 정책이 적용된 GitHubClient를 생성한다.

    Args:
        access_token: 사용자 access token
        retries: rate limit/5xx 재시도 상한 (기본: config.retries)
        retry_after_sec: 헤더가 없을 때의 rate limit 대기 시간
        timeout_sec: 요청당 타임아웃
        config: 기본값을 제공하는 GitHubApiConfig
        transport: 테스트용 httpx transport
    """
    base = config or GitHubApiConfig()
    overrides: dict[str, Any] = {}
    if retries is not None:
        overrides["retries"] = retries
    if retry_after_sec is not None:
        overrides["retry_after_sec"] = retry_after_sec
    if timeout_sec is not None:
        overrides["request_timeout_sec"] = timeout_sec
    effective = base.model_copy(update=overrides) if overrides else base
    return GitHubClient(access_token, effective, transport=transport)
