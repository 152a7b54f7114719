"""JSON 구조화 로깅 설정.

로그는 stderr로 보낸다. stdout은 CLI 요약과 JSONL 출력 전용이다.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# 로거 호출 시 extra=로 전달되는 구조화 필드
_EXTRA_KEYS = (
    "event_code",
    "cache_status",
    "cursor",
    "repo",
    "rate_limit_remaining",
    "rate_limit_cost",
    "rate_limit_reset_at",
    "duration_ms",
    "counts",
)

# 요청마다 INFO 로그를 남기는 서드파티 로거
_NOISY_LOGGERS = ("httpx", "httpcore")


class JsonFormatter(logging.Formatter):
    """로그 레코드를 한 줄 JSON으로 직렬화한다."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        log_entry: dict[str, Any] = {
            "timestamp": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        log_entry.update(
            {key: getattr(record, key) for key in _EXTRA_KEYS if getattr(record, key, None) is not None}
        )

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(*, json_format: bool = True, level: int = logging.INFO) -> None:
    """release_feed 로거에 stderr 핸들러를 하나만 붙인다.

    Args:
        json_format: True이면 JSON 한 줄, False이면 사람이 읽는 포맷
        level: release_feed 로그 레벨. httpx 계열은 최소 WARNING으로 유지
    """
    package_logger = logging.getLogger("release_feed")
    package_logger.setLevel(level)
    package_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter() if json_format else logging.Formatter("%(asctime)s %(levelname)-7s %(name)s | %(message)s")
    )
    package_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
