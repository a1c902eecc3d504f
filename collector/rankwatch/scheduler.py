"""バッチスケジューラ — 時間制限付きの順位チェック.

処理フロー:
  1. create_batches: 有効キーワードを chunk_size 件ずつのユニットに分割して保存
  2. process_next_unit: 最も古い未完了ユニットを確保し、続きから処理する
     - キーワードごとに経過時間を確認し、time_budget を超えたら中断
     - 1 キーワード処理するたびに進捗を保存 (クラッシュ時の損失は最大 1 件)
  3. 外部トリガー (cron 等) が has_more=False になるまで 2 を繰り返し呼ぶ

1 回の呼び出しは 1 ユニットを逐次処理する. 並列実行はしない.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone

from rankwatch import events
from rankwatch.changes import classify
from rankwatch.config import CLEANUP_MAX_AGE_DAYS, SchedulerConfig
from rankwatch.db import RankingStore
from rankwatch.errors import ConfigurationError, SearchError
from rankwatch.events import EventSink, LoggingEventSink
from rankwatch.models import (
    ACTIVE_STATUSES,
    BatchCreationResult,
    Keyword,
    KeywordProgress,
    ProcessingUnit,
    RankingObservation,
    SchedulerStatus,
    SignificantChange,
    UnitDetail,
    UnitProcessResult,
    UnitStatus,
)
from rankwatch.notifier import Notifier
from rankwatch.ranker import RankSearchClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BatchScheduler:
    """キーワード集合をユニットに分けて、呼び出しをまたいで処理する状態機械."""

    def __init__(
        self,
        store: RankingStore,
        ranker: RankSearchClient,
        notifier: Notifier,
        target_domain: str,
        config: SchedulerConfig | None = None,
        event_sink: EventSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._ranker = ranker
        self._notifier = notifier
        self._target_domain = target_domain
        self._config = config or SchedulerConfig()
        self._events = event_sink or LoggingEventSink()
        self._sleep = sleep
        self._clock = clock
        self._now = now

    # ------------------------------------------------------------------
    # ユニット作成
    # ------------------------------------------------------------------

    def create_batches(self) -> BatchCreationResult:
        """有効キーワードからユニットを作り直す.

        既存の未完了ユニットは削除してから作成するため、同時に存在する
        ユニットの世代は常に 1 つだけになる.
        """
        keywords = self._store.list_active_keywords()
        if not keywords:
            logger.warning("有効なキーワードがありません。ユニットは作成しません。")
            return BatchCreationResult(
                batches_created=0,
                total_keywords=0,
                deleted_stale=0,
                message="No active keywords to process",
            )

        deleted = self._store.delete_active_units()
        if deleted:
            logger.info("未完了のユニットを %d 件削除", deleted)

        keyword_ids = [k.id for k in keywords]
        size = self._config.chunk_size
        created_at = self._now()
        units = [
            ProcessingUnit(
                id=str(uuid.uuid4()),
                keyword_ids=keyword_ids[start:start + size],
                status=UnitStatus.PENDING,
                # 作成順を created_at で保証する
                created_at=created_at + timedelta(microseconds=index),
            )
            for index, start in enumerate(range(0, len(keyword_ids), size))
        ]
        self._store.insert_units(units)

        logger.info("ユニット作成: %d 件 (キーワード %d 件)", len(units), len(keyword_ids))
        self._events.emit(
            events.BATCHES_CREATED,
            units=len(units),
            keywords=len(keyword_ids),
            deleted_stale=deleted,
        )
        return BatchCreationResult(
            batches_created=len(units),
            total_keywords=len(keyword_ids),
            deleted_stale=deleted,
            message=f"Created {len(units)} batches for {len(keyword_ids)} keywords",
        )

    # ------------------------------------------------------------------
    # ユニット処理
    # ------------------------------------------------------------------

    def process_next_unit(self) -> UnitProcessResult:
        """最も古い未完了ユニットを確保し、時間の許す限り処理する.

        Returns:
            UnitProcessResult。has_more が True なら再度呼び出す必要がある。

        Raises:
            ConfigurationError: ターゲットドメインが未設定の場合
        """
        started = self._clock()
        if not self._target_domain or not self._target_domain.strip():
            raise ConfigurationError("TARGET_DOMAIN environment variable is not set")

        candidate = self._store.find_oldest_active_unit()
        if candidate is None:
            return self._idle_result(
                has_more=False,
                message="No batches to process - all ranking checks complete",
            )

        now = self._now()
        if candidate.lease_is_live(now):
            return self._busy_result(candidate)

        token = uuid.uuid4().hex
        lease_until = now + timedelta(seconds=self._config.lease_seconds)
        unit = self._store.claim_unit(candidate, token, lease_until, now)
        if unit is None:
            return self._busy_result(candidate)

        logger.info(
            "ユニット処理開始: %s (%d/%d 完了, 停滞 %d 回目)",
            unit.id, unit.processed_count, unit.total_count, unit.attempts,
        )
        self._events.emit(
            events.UNIT_CLAIMED,
            unit_id=unit.id,
            processed=unit.processed_count,
            total=unit.total_count,
            attempt=unit.attempts,
        )

        if unit.attempts > self._config.max_attempts:
            return self._give_up(unit)

        keywords = {k.id: k for k in self._store.get_keywords(unit.keyword_ids)}
        changes: list[SignificantChange] = []
        checked = 0
        lease_lost = False

        for index in range(unit.processed_count, unit.total_count):
            elapsed = self._clock() - started
            if elapsed > self._config.time_budget:
                self._stop_for_time(unit, elapsed)
                break

            keyword = keywords.get(unit.keyword_ids[index])
            if keyword is None:
                # 外部で削除されたキーワード
                logger.warning("キーワードが見つかりません: id=%s", unit.keyword_ids[index])
                unit.error_count += 1
                unit.processed_count += 1
                unit.attempts = 0
                self._events.emit(events.KEYWORD_SKIPPED, unit_id=unit.id, keyword_id=unit.keyword_ids[index])
                if not self._store.save_unit(unit):
                    lease_lost = True
                    break
                continue

            try:
                change = self._check_keyword(keyword)
            except SearchError as e:
                logger.error("キーワード処理失敗: keyword=%s, error=%s", keyword.text, e)
                unit.error_count += 1
                unit.last_error = str(e)
                delay = self._config.error_delay
                self._events.emit(events.KEYWORD_FAILED, unit_id=unit.id, keyword=keyword.text, error=str(e))
            else:
                if change is not None:
                    changes.append(change)
                delay = self._config.keyword_delay

            unit.processed_count += 1
            # 進捗があれば停滞カウントを数え直す
            unit.attempts = 0
            checked += 1
            if not self._store.save_unit(unit):
                lease_lost = True
                break

            if index < unit.total_count - 1:
                elapsed = self._clock() - started
                if elapsed + delay > self._config.time_budget:
                    # 待機後に次のキーワードを始める時間は無い
                    self._stop_for_time(unit, elapsed)
                    break
                self._sleep(delay)

        if lease_lost:
            logger.warning("ユニット %s の確保が失われたため処理を中断", unit.id)
        else:
            if unit.processed_count >= unit.total_count:
                unit.status = UnitStatus.COMPLETED
                unit.completed_at = self._now()
                logger.info(
                    "ユニット完了: %s (処理 %d 件, エラー %d 件)",
                    unit.id, unit.processed_count, unit.error_count,
                )
                self._events.emit(
                    events.UNIT_COMPLETED,
                    unit_id=unit.id,
                    processed=unit.processed_count,
                    errors=unit.error_count,
                )
            else:
                logger.info(
                    "ユニット一時中断: %s (%d/%d)",
                    unit.id, unit.processed_count, unit.total_count,
                )
            unit.lease_expires_at = None
            self._store.save_unit(unit)

        if changes:
            self._notify(changes)

        is_complete = unit.status is UnitStatus.COMPLETED
        has_more = self._store.find_oldest_active_unit() is not None
        if is_complete:
            message = f"Batch completed: processed {unit.processed_count} keywords"
        else:
            message = (
                f"Batch partially processed: {unit.processed_count}/{unit.total_count} keywords"
            )
        return UnitProcessResult(
            unit_id=unit.id,
            status=unit.status,
            processed_count=unit.processed_count,
            error_count=unit.error_count,
            total_count=unit.total_count,
            checked_now=checked,
            significant_changes=len(changes),
            is_complete=is_complete,
            has_more=has_more,
            message=message,
        )

    def _check_keyword(self, keyword: Keyword) -> SignificantChange | None:
        """1 キーワードの順位を取得・保存し、前回からの変動を判定する."""
        started = self._clock()
        result = self._ranker.resolve_position(
            keyword.text, self._target_domain, self._config.batch_max_position
        )
        observation = self._store.insert_ranking(
            RankingObservation.from_result(keyword, result, self._now())
        )
        previous = self._store.get_previous_ranking(keyword.id, observation.id)
        change = classify(observation, previous, self._config.significance_threshold)

        self._events.emit(
            events.KEYWORD_CHECKED,
            keyword=keyword.text,
            position=result.position,
            api_calls=result.metadata.api_calls_used,
            validation_passed=result.metadata.validation_passed,
            latency=self._clock() - started,
        )
        if change is not None:
            logger.info(
                "順位変動: %s %s → %s (%+d)",
                keyword.text,
                change.previous_position or "圏外",
                change.current_position or "圏外",
                change.delta,
            )
            self._events.emit(events.CHANGE_DETECTED, keyword=keyword.text, delta=change.delta)
        return change

    def _stop_for_time(self, unit: ProcessingUnit, elapsed: float) -> None:
        logger.info(
            "時間制限に近づいたため中断: %.1f 秒経過 (%d/%d)",
            elapsed, unit.processed_count, unit.total_count,
        )
        self._events.emit(
            events.UNIT_TIME_BUDGET,
            unit_id=unit.id,
            elapsed=elapsed,
            processed=unit.processed_count,
        )

    def _give_up(self, unit: ProcessingUnit) -> UnitProcessResult:
        """試行回数の上限を超えたユニットを failed にする."""
        unit.status = UnitStatus.FAILED
        unit.completed_at = self._now()
        unit.lease_expires_at = None
        unit.last_error = f"gave up after {self._config.max_attempts} attempts without progress"
        self._store.save_unit(unit)
        logger.error(
            "ユニット失敗: %s (%d/%d 処理済み, 進捗なしの試行上限 %d 回)",
            unit.id, unit.processed_count, unit.total_count, self._config.max_attempts,
        )
        self._events.emit(events.UNIT_FAILED, unit_id=unit.id, attempts=unit.attempts)
        return UnitProcessResult(
            unit_id=unit.id,
            status=unit.status,
            processed_count=unit.processed_count,
            error_count=unit.error_count,
            total_count=unit.total_count,
            checked_now=0,
            significant_changes=0,
            is_complete=False,
            has_more=self._store.find_oldest_active_unit() is not None,
            message=f"Batch failed: {unit.last_error}",
        )

    def _notify(self, changes: Sequence[SignificantChange]) -> None:
        """変動をまとめて 1 回通知する. 失敗しても保存済みのデータには影響させない."""
        try:
            self._notifier.notify(changes)
        except Exception:
            logger.exception("順位変動の通知に失敗 (%d 件)", len(changes))
            self._events.emit(events.NOTIFICATION_FAILED, changes=len(changes))
            return
        logger.info("順位変動 %d 件を通知", len(changes))
        self._events.emit(events.NOTIFICATION_SENT, changes=len(changes))

    def _idle_result(self, has_more: bool, message: str, busy: bool = False) -> UnitProcessResult:
        return UnitProcessResult(
            unit_id=None,
            status=None,
            processed_count=0,
            error_count=0,
            total_count=0,
            checked_now=0,
            significant_changes=0,
            is_complete=not has_more,
            has_more=has_more,
            message=message,
            busy=busy,
        )

    def _busy_result(self, unit: ProcessingUnit) -> UnitProcessResult:
        logger.info("ユニット %s は別の呼び出しが処理中", unit.id)
        self._events.emit(events.UNIT_BUSY, unit_id=unit.id)
        return self._idle_result(
            has_more=True,
            message=f"Batch {unit.id} is being processed by another invocation",
            busy=True,
        )

    # ------------------------------------------------------------------
    # 進捗・後片付け
    # ------------------------------------------------------------------

    def get_status(self) -> SchedulerStatus:
        """現在の世代のユニットの進捗を返す.

        未完了のユニットと、status_window_hours 以内に終了したユニットのみを数える.
        """
        now = self._now()
        cutoff = now - timedelta(hours=self._config.status_window_hours)
        units = self._store.list_status_units(cutoff)

        by_status = {status: 0 for status in UnitStatus}
        for unit in units:
            by_status[unit.status] += 1

        total_keywords = sum(u.total_count for u in units)
        processed_keywords = sum(u.processed_count for u in units)
        progress = round(processed_keywords / total_keywords * 100) if total_keywords else 0

        active = [u for u in units if u.status in ACTIVE_STATUSES]
        current = active[0] if active else None
        remaining = sum(u.remaining for u in active)

        estimate: float | None = None
        if remaining > 0:
            if (
                current is not None
                and current.status is UnitStatus.PROCESSING
                and current.started_at is not None
                and current.processed_count > 0
            ):
                elapsed = (now - current.started_at).total_seconds()
                estimate = elapsed / current.processed_count * remaining
            else:
                estimate = remaining * self._config.avg_keyword_seconds

        return SchedulerStatus(
            total_units=len(units),
            pending_units=by_status[UnitStatus.PENDING],
            processing_units=by_status[UnitStatus.PROCESSING],
            completed_units=by_status[UnitStatus.COMPLETED],
            failed_units=by_status[UnitStatus.FAILED],
            total_keywords=total_keywords,
            processed_keywords=processed_keywords,
            total_errors=sum(u.error_count for u in units),
            progress_percent=progress,
            current_unit=self._unit_detail(current) if current else None,
            estimated_time_remaining=estimate,
        )

    def _unit_detail(self, unit: ProcessingUnit) -> UnitDetail:
        texts = {k.id: k.text for k in self._store.get_keywords(unit.keyword_ids)}
        progress = []
        for index, keyword_id in enumerate(unit.keyword_ids):
            if index < unit.processed_count:
                status = "completed"
            elif index == unit.processed_count and unit.status is UnitStatus.PROCESSING:
                status = "processing"
            else:
                status = "pending"
            progress.append(KeywordProgress(
                keyword_id=keyword_id,
                keyword=texts.get(keyword_id, ""),
                status=status,
            ))
        return UnitDetail(
            unit_id=unit.id,
            status=unit.status,
            processed_count=unit.processed_count,
            total_count=unit.total_count,
            error_count=unit.error_count,
            started_at=unit.started_at,
            keyword_progress=progress,
        )

    def cleanup_old_units(self, max_age_days: int = CLEANUP_MAX_AGE_DAYS) -> int:
        """max_age_days より前に完了したユニットを削除する."""
        cutoff = self._now() - timedelta(days=max_age_days)
        deleted = self._store.delete_completed_before(cutoff)
        logger.info("古い完了済みユニットを %d 件削除", deleted)
        self._events.emit(events.UNITS_CLEANED, deleted=deleted, max_age_days=max_age_days)
        return deleted
