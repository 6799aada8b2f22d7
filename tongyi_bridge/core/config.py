"""Configuration constants and the Valves model.

This module centralizes every tunable knob of the bridge:
- Vendor hosts and fixed browser headers
- Retry envelope defaults (attempt count, fixed backoff)
- File reference limits and content-safety scan polling constants
- Video generation polling constants
- Outbound stream queue sizing
- User-visible notice templates

Valve defaults read from environment variables so a deployment can be
configured without code changes.
"""

from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field

# -----------------------------------------------------------------------------
# Vendor constants
# -----------------------------------------------------------------------------

QWEN_HOST = "https://qianwen.biz.aliyun.com"
AGENT_HOST = "https://api.tongyi.com"
OSS_UPLOAD_URL = "https://broadscope-dialogue-new.oss-cn-beijing.aliyuncs.com/"

LAW_AGENT_ID = "A-0002-C0000001"
SOLVE_AGENT_ID = "A-B70463-a3e151d8"

# Query string the creative task endpoint expects, header={"X-Platform":"app"}.
CREATIVE_TASK_QUERY = "from=qianwen_saas&header=%7B%22X-Platform%22%3A%22app%22%7D"

FAKE_HEADERS: dict[str, str] = {
    "Accept": "application/json, text/plain, */*",
    "Accept-Encoding": "gzip, deflate",
    "Accept-Language": "zh-CN,zh;q=0.9",
    "Cache-Control": "no-cache",
    "Origin": "https://tongyi.aliyun.com",
    "Pragma": "no-cache",
    "Sec-Ch-Ua": '"Chromium";v="122", "Not(A:Brand";v="24", "Google Chrome";v="122"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "empty",
    "Sec-Fetch-Mode": "cors",
    "Sec-Fetch-Site": "same-site",
    "Referer": "https://tongyi.aliyun.com/",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
    ),
    "X-Platform": "pc_tongyi",
    "X-Xsrf-Token": "48b9ee49-a184-45e2-9f67-fa87213edcdc",
}

# Tickets longer than this are treated as aliyun account tickets.
ALIYUN_TICKET_MIN_LENGTH = 100

_BYTES_PER_MB = 1024 * 1024

DEFAULT_MODERATION_NOTICE = "\n[内容由于不合规被停止生成，我们换个话题吧]"
DEFAULT_ERROR_SUFFIX_TEMPLATE = "服务暂时不可用，第三方响应错误：{error_code}"
DEFAULT_IMAGE_PROMPT_PREFIX = "请画："
DEFAULT_VIDEO_DONE_TEMPLATE = "数字人视频生成完成！\n\n视频地址：{video_url}\n封面图片：{poster}"


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

class Valves(BaseModel):
    """Global valve configuration shared across requests."""

    # Vendor endpoints
    QWEN_BASE_URL: str = Field(
        default=((os.getenv("TONGYI_QWEN_BASE_URL") or "").strip() or QWEN_HOST),
        description="Base URL of the general chat variant conversation API.",
    )
    AGENT_BASE_URL: str = Field(
        default=((os.getenv("TONGYI_AGENT_BASE_URL") or "").strip() or AGENT_HOST),
        description="Base URL used by agent variants (law, solve, digital people).",
    )
    OSS_UPLOAD_URL: str = Field(
        default=((os.getenv("TONGYI_OSS_UPLOAD_URL") or "").strip() or OSS_UPLOAD_URL),
        description="Object store endpoint that receives multipart file uploads.",
    )
    DIGITAL_PEOPLE_AGENT_ID: str = Field(
        default=(os.getenv("TONGYI_DIGITAL_PEOPLE_AGENT_ID") or "").strip(),
        description="Agent id of the digital people video workflow. Required for the Digital-people model.",
    )

    # Retry envelope
    MAX_ATTEMPTS: int = Field(
        default=_env_int("TONGYI_MAX_ATTEMPTS", 4),
        ge=1,
        description="Total physical attempts per logical request (first attempt plus retries).",
    )
    RETRY_DELAY_SECONDS: float = Field(
        default=_env_float("TONGYI_RETRY_DELAY_SECONDS", 5.0),
        ge=0,
        description="Fixed backoff between attempts after a transport or protocol failure.",
    )

    # HTTP timeouts
    HTTP_CONNECT_TIMEOUT_SECONDS: float = Field(
        default=_env_float("TONGYI_HTTP_CONNECT_TIMEOUT_SECONDS", 10.0),
        gt=0,
        description="Seconds allowed to establish a connection to the vendor.",
    )
    HTTP_TOTAL_TIMEOUT_SECONDS: float = Field(
        default=_env_float("TONGYI_HTTP_TOTAL_TIMEOUT_SECONDS", 120.0),
        gt=0,
        description="Overall timeout for one vendor exchange, including the streamed body.",
    )
    HTTP_SOCK_READ_SECONDS: float = Field(
        default=_env_float("TONGYI_HTTP_SOCK_READ_SECONDS", 60.0),
        gt=0,
        description="Idle read timeout between two chunks of a streamed response.",
    )

    # File references
    FILE_MAX_SIZE_MB: int = Field(
        default=_env_int("TONGYI_FILE_MAX_SIZE_MB", 100),
        ge=1,
        description="Maximum size of a referenced file or image.",
    )
    SCAN_INITIAL_DELAY_SECONDS: float = Field(
        default=0.5,
        ge=0,
        description="Delay before the first content-safety scan status check.",
    )
    SCAN_POLL_INTERVAL_SECONDS: float = Field(
        default=1.0,
        ge=0,
        description="Interval between content-safety scan status checks.",
    )
    SCAN_MAX_ATTEMPTS: int = Field(
        default=120,
        ge=1,
        description="Maximum content-safety scan status checks before timing out.",
    )

    # Video generation job
    VIDEO_INITIAL_DELAY_SECONDS: float = Field(
        default=_env_float("TONGYI_VIDEO_INITIAL_DELAY_SECONDS", 30.0),
        ge=0,
        description="Delay before the first video generation status check.",
    )
    VIDEO_POLL_INTERVAL_SECONDS: float = Field(
        default=_env_float("TONGYI_VIDEO_POLL_INTERVAL_SECONDS", 5.0),
        ge=0,
        description="Interval between video generation status checks.",
    )
    VIDEO_MAX_ATTEMPTS: int = Field(
        default=_env_int("TONGYI_VIDEO_MAX_ATTEMPTS", 120),
        ge=1,
        description="Maximum video generation status checks before timing out.",
    )

    # Outbound stream
    STREAM_QUEUE_MAXSIZE: int = Field(
        default=_env_int("TONGYI_STREAM_QUEUE_MAXSIZE", 64),
        ge=1,
        description="Frames buffered between the transcoder and a slow caller.",
    )
    STREAM_QUEUE_PUT_TIMEOUT_SECONDS: float = Field(
        default=_env_float("TONGYI_STREAM_QUEUE_PUT_TIMEOUT_SECONDS", 30.0),
        gt=0,
        description="Seconds the transcoder waits for queue room before treating the caller as stalled.",
    )

    # Notices
    MODERATION_NOTICE: str = Field(
        default=DEFAULT_MODERATION_NOTICE,
        description="Appended to the final content when the vendor flags it as not shareable.",
    )
    ERROR_SUFFIX_TEMPLATE: str = Field(
        default=DEFAULT_ERROR_SUFFIX_TEMPLATE,
        description="Appended to the final content when the vendor reports an error code. Supports {error_code}.",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default=(os.getenv("TONGYI_LOG_LEVEL") or "INFO").strip().upper() or "INFO",  # type: ignore[assignment]
        description="Console log level for bridge loggers.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=_env_bool("TONGYI_ENABLE_TIMING_LOG", False),
        description="Write per-request function timing events as JSONL.",
    )
    TIMING_LOG_FILE: str = Field(
        default=(os.getenv("TONGYI_TIMING_LOG_FILE") or "logs/timing.jsonl"),
        description="Destination of timing events when ENABLE_TIMING_LOG is on.",
    )

    @property
    def file_max_size_bytes(self) -> int:
        return self.FILE_MAX_SIZE_MB * _BYTES_PER_MB
