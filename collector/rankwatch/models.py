"""データモデル定義."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# 圏外を表す番兵. 順位は 1 始まりの int、見つからなければ None
NOT_FOUND = None


def to_iso(value: datetime | None) -> str | None:
    """UTC の ISO 8601 文字列 (末尾 Z) に変換する."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_ts(value: str | datetime | None) -> datetime | None:
    """DB から返った時刻文字列を aware datetime に変換する."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class UnitStatus(str, Enum):
    """処理ユニットの状態. pending → processing → completed | failed."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (UnitStatus.COMPLETED, UnitStatus.FAILED)


ACTIVE_STATUSES = (UnitStatus.PENDING, UnitStatus.PROCESSING)


@dataclass
class Keyword:
    """追跡対象キーワード (管理者が登録、コアからは読み取り専用)."""

    id: str  # uuid
    text: str
    is_active: bool = True


@dataclass
class SearchItem:
    """検索 API が返す 1 件."""

    title: str
    url: str
    snippet: str = ""


@dataclass
class SearchPage:
    """検索 API の 1 ページ分のレスポンス."""

    items: list[SearchItem]
    total_results_reported: int = 0
    search_latency: float = 0.0  # 秒 (API 申告値)


@dataclass
class Competitor:
    """ターゲット以外の検索結果."""

    position: int  # 全体での順位（1始まり）
    title: str
    url: str
    snippet: str = ""


@dataclass
class ValidationResult:
    is_valid: bool
    warnings: list[str] = field(default_factory=list)


@dataclass
class RankingMetadata:
    """順位チェックの監査用メタデータ."""

    total_results_reported: int = 0
    search_latency: float = 0.0
    results_examined: int = 0
    validation_passed: bool = True
    validation_warnings: list[str] = field(default_factory=list)
    api_calls_used: int = 0
    search_depth_requested: int = 0
    max_position_examined: int = 0


@dataclass
class RankingResult:
    """RankSearchClient の戻り値."""

    position: int | None  # None = 圏外
    resolved_url: str
    competitors: list[Competitor]
    metadata: RankingMetadata

    @property
    def found(self) -> bool:
        return self.position is not None


@dataclass
class RankingObservation:
    """DB に書き込む順位レコード (追記のみ)."""

    keyword_id: str  # uuid
    keyword_text: str
    observed_at: datetime
    position: int | None  # None = 圏外
    resolved_url: str
    competitors: list[Competitor] = field(default_factory=list)
    metadata: RankingMetadata = field(default_factory=RankingMetadata)
    id: str | None = None

    @classmethod
    def from_result(
        cls, keyword: Keyword, result: RankingResult, observed_at: datetime
    ) -> RankingObservation:
        return cls(
            keyword_id=keyword.id,
            keyword_text=keyword.text,
            observed_at=observed_at,
            position=result.position,
            resolved_url=result.resolved_url,
            competitors=list(result.competitors),
            metadata=result.metadata,
        )

    def to_record(self) -> dict[str, Any]:
        record = {
            "keyword_id": self.keyword_id,
            "keyword": self.keyword_text,
            "observed_at": to_iso(self.observed_at),
            "position": self.position,
            "url": self.resolved_url,
            "competitors": [asdict(c) for c in self.competitors],
            "metadata": asdict(self.metadata),
        }
        if self.id is not None:
            record["id"] = self.id
        return record

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> RankingObservation:
        return cls(
            id=row.get("id"),
            keyword_id=row["keyword_id"],
            keyword_text=row.get("keyword", ""),
            observed_at=parse_ts(row["observed_at"]),
            position=row.get("position"),
            resolved_url=row.get("url", ""),
            competitors=[Competitor(**c) for c in row.get("competitors") or []],
            metadata=RankingMetadata(**(row.get("metadata") or {})),
        )


@dataclass
class ProcessingUnit:
    """処理ユニット (バッチ). keyword_ids は作成後に変更しない."""

    id: str  # uuid
    keyword_ids: list[str]
    status: UnitStatus
    created_at: datetime
    processed_count: int = 0  # 試行済みキーワード数 (成功 + 失敗)
    error_count: int = 0
    attempts: int = 0  # 進捗なしで claim された連続回数
    started_at: datetime | None = None
    completed_at: datetime | None = None
    claim_token: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None

    @property
    def total_count(self) -> int:
        return len(self.keyword_ids)

    @property
    def remaining(self) -> int:
        return self.total_count - self.processed_count

    def lease_is_live(self, now: datetime) -> bool:
        return self.lease_expires_at is not None and self.lease_expires_at > now

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "keyword_ids": list(self.keyword_ids),
            "status": self.status.value,
            "processed_count": self.processed_count,
            "error_count": self.error_count,
            "total_count": self.total_count,
            "attempts": self.attempts,
            "created_at": to_iso(self.created_at),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
            "claim_token": self.claim_token,
            "lease_expires_at": to_iso(self.lease_expires_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> ProcessingUnit:
        return cls(
            id=row["id"],
            keyword_ids=list(row.get("keyword_ids") or []),
            status=UnitStatus(row["status"]),
            created_at=parse_ts(row["created_at"]),
            processed_count=row.get("processed_count") or 0,
            error_count=row.get("error_count") or 0,
            attempts=row.get("attempts") or 0,
            started_at=parse_ts(row.get("started_at")),
            completed_at=parse_ts(row.get("completed_at")),
            claim_token=row.get("claim_token"),
            lease_expires_at=parse_ts(row.get("lease_expires_at")),
            last_error=row.get("last_error"),
        )


@dataclass
class SignificantChange:
    """通知対象の順位変動. 永続化しない."""

    keyword_text: str
    previous_position: int | None
    current_position: int | None
    delta: int  # 正 = 上昇
    observed_at: datetime
    resolved_url: str

    @property
    def improved(self) -> bool:
        return self.delta > 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["observed_at"] = to_iso(self.observed_at)
        return data


@dataclass
class BatchCreationResult:
    batches_created: int
    total_keywords: int
    deleted_stale: int
    message: str


@dataclass
class UnitProcessResult:
    """process_next_unit の戻り値."""

    unit_id: str | None
    status: UnitStatus | None
    processed_count: int
    error_count: int
    total_count: int
    checked_now: int  # 今回の呼び出しで試行したキーワード数
    significant_changes: int
    is_complete: bool
    has_more: bool
    message: str
    busy: bool = False


@dataclass
class KeywordProgress:
    keyword_id: str
    keyword: str
    status: str  # "completed" / "processing" / "pending"


@dataclass
class UnitDetail:
    unit_id: str
    status: UnitStatus
    processed_count: int
    total_count: int
    error_count: int
    started_at: datetime | None
    keyword_progress: list[KeywordProgress] = field(default_factory=list)


@dataclass
class SchedulerStatus:
    """ダッシュボード向けの進捗サマリ."""

    total_units: int
    pending_units: int
    processing_units: int
    completed_units: int
    failed_units: int
    total_keywords: int
    processed_keywords: int
    total_errors: int
    progress_percent: int
    current_unit: UnitDetail | None = None
    estimated_time_remaining: float | None = None  # 秒

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.current_unit is not None:
            data["current_unit"]["status"] = self.current_unit.status.value
            data["current_unit"]["started_at"] = to_iso(self.current_unit.started_at)
        return data


@dataclass
class KeywordDiagnosis:
    keyword: str
    position: int | None
    warnings: list[str] = field(default_factory=list)


@dataclass
class DiagnosticResult:
    """検索エンジン設定の診断結果."""

    is_healthy: bool
    issues: list[str]
    recommendations: list[str]
    test_results: list[KeywordDiagnosis]
