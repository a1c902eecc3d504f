"""実行イベントの記録.

スケジューラは処理件数・エラー件数・所要時間をイベントとして送出する.
テストではイベントを直接検証できる.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# イベント名
BATCHES_CREATED = "batches.created"
UNIT_CLAIMED = "unit.claimed"
UNIT_BUSY = "unit.busy"
UNIT_TIME_BUDGET = "unit.time_budget_exceeded"
UNIT_COMPLETED = "unit.completed"
UNIT_FAILED = "unit.failed"
KEYWORD_CHECKED = "keyword.checked"
KEYWORD_FAILED = "keyword.failed"
KEYWORD_SKIPPED = "keyword.skipped"
CHANGE_DETECTED = "change.detected"
NOTIFICATION_SENT = "notification.sent"
NOTIFICATION_FAILED = "notification.failed"
UNITS_CLEANED = "units.cleaned"


class EventSink(Protocol):
    def emit(self, name: str, **fields: Any) -> None:
        ...


class LoggingEventSink:
    """イベントを DEBUG ログに出し、件数とレイテンシを集計する."""

    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()
        self.latencies: dict[str, list[float]] = defaultdict(list)

    def emit(self, name: str, **fields: Any) -> None:
        self.counts[name] += 1
        latency = fields.get("latency")
        if latency is not None:
            self.latencies[name].append(float(latency))
        logger.debug("event=%s %s", name, fields)

    def summary(self) -> dict[str, Any]:
        """件数とレイテンシの要約 (件数・平均・最大)."""
        latency_summary = {
            name: {
                "count": len(values),
                "mean": sum(values) / len(values),
                "max": max(values),
            }
            for name, values in self.latencies.items()
            if values
        }
        return {"counts": dict(self.counts), "latency": latency_summary}
