"""인증 협력자 계약.

OAuth 핸드셰이크/세션 관리는 외부 책임이다. 수집기는 다음 두 가지만 사용한다.
- get_access_token(): 현재 사용자의 access token (없으면 None)
- on_session_invalid(): bad credentials 발생 시 세션 갱신을 요청
"""

from __future__ import annotations

import hashlib
import logging
import os
from typing import Protocol

logger = logging.getLogger(__name__)


class AuthProvider(Protocol):
    def get_access_token(self) -> str | None: ...

    def on_session_invalid(self) -> None: ...


class EnvTokenProvider:
    """환경변수에서 토큰을 읽는 AuthProvider (CLI용).

    세션 갱신 수단이 없으므로 on_session_invalid()는 토큰을 무효 처리하고 경고만 남긴다.
    """

    def __init__(self, env_var: str = "GITHUB_TOKEN") -> None:
        self._env_var = env_var
        self._invalidated = False

    def get_access_token(self) -> str | None:
        if self._invalidated:
            return None
        return os.environ.get(self._env_var) or None

    def on_session_invalid(self) -> None:
        self._invalidated = True
        logger.warning(
            "Access token from %s was rejected by GitHub",
            self._env_var,
            extra={"event_code": "SESSION_INVALID"},
        )


def user_id_for_token(access_token: str) -> str:
    """캐시 키용 사용자 식별자 (토큰 해시 앞 16자)."""
    return hashlib.sha256(access_token.encode()).hexdigest()[:16]
