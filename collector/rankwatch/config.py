"""設定モジュール — 環境変数・定数定義."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from rankwatch.errors import ConfigurationError

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")


def require_env(name: str) -> str:
    """必須の環境変数を取得する. 未設定なら ConfigurationError."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} environment variable is not set")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer: {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number: {raw!r}") from e


# --- Supabase ---
SUPABASE_SCHEMA = "rank_tracker"

# --- 検索 API (Google Programmable Search) ---
SEARCH_ENDPOINT = "https://www.googleapis.com/customsearch/v1"
PAGE_SIZE = 10
REQUEST_TIMEOUT = 15  # 秒
RATE_LIMIT_RETRY_WAIT_MIN = 5.0
RATE_LIMIT_RETRY_WAIT_MAX = 30.0

# --- 順位チェック ---
DEFAULT_MAX_POSITION = 50
QUICK_MAX_POSITION = 10
DEEP_MAX_POSITION = 100
MAX_COMPETITORS = 50

# --- バッチ処理デフォルト ---
CHUNK_SIZE = 6
KEYWORD_DELAY = 8.0  # 秒
ERROR_DELAY = 15.0  # 秒
TIME_BUDGET = 50.0  # 秒 (ホスト側の上限 60 秒)
SIGNIFICANCE_THRESHOLD = 3
BATCH_MAX_POSITION = 20
MAX_ATTEMPTS = 5
LEASE_SECONDS = 90.0
PAGE_DELAY = 0.05  # 秒
STATUS_WINDOW_HOURS = 2
AVG_KEYWORD_SECONDS = 12.0
CLEANUP_MAX_AGE_DAYS = 7

# --- ログ ---
LOG_DIR = Path(__file__).resolve().parent.parent / "logs"


@dataclass(frozen=True)
class SchedulerConfig:
    """バッチスケジューラの数値パラメータ."""

    chunk_size: int = CHUNK_SIZE
    keyword_delay: float = KEYWORD_DELAY
    error_delay: float = ERROR_DELAY
    time_budget: float = TIME_BUDGET
    significance_threshold: int = SIGNIFICANCE_THRESHOLD
    batch_max_position: int = BATCH_MAX_POSITION
    max_attempts: int = MAX_ATTEMPTS
    lease_seconds: float = LEASE_SECONDS
    status_window_hours: float = STATUS_WINDOW_HOURS
    avg_keyword_seconds: float = AVG_KEYWORD_SECONDS

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigurationError("chunk_size must be >= 1")
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be >= 1")
        if self.lease_seconds <= self.time_budget:
            raise ConfigurationError("lease_seconds must be longer than time_budget")

    @classmethod
    def from_env(cls) -> SchedulerConfig:
        """環境変数 (RANK_*) で上書きした設定を返す."""
        return cls(
            chunk_size=_env_int("RANK_CHUNK_SIZE", CHUNK_SIZE),
            keyword_delay=_env_float("RANK_KEYWORD_DELAY", KEYWORD_DELAY),
            error_delay=_env_float("RANK_ERROR_DELAY", ERROR_DELAY),
            time_budget=_env_float("RANK_TIME_BUDGET", TIME_BUDGET),
            significance_threshold=_env_int(
                "RANK_SIGNIFICANCE_THRESHOLD", SIGNIFICANCE_THRESHOLD
            ),
            batch_max_position=_env_int("RANK_BATCH_MAX_POSITION", BATCH_MAX_POSITION),
            max_attempts=_env_int("RANK_MAX_ATTEMPTS", MAX_ATTEMPTS),
            lease_seconds=_env_float("RANK_LEASE_SECONDS", LEASE_SECONDS),
        )


def page_delay() -> float:
    """ページ取得間の待機秒数."""
    return _env_float("RANK_PAGE_DELAY", PAGE_DELAY)


def notify_webhook_url() -> str | None:
    return os.getenv("RANK_NOTIFY_WEBHOOK_URL") or None
