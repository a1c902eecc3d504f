"""テスト用のフェイク (インメモリストア・時計・検索サービス)."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone

import pytest

from rankwatch.errors import SearchError
from rankwatch.models import (
    ACTIVE_STATUSES,
    Keyword,
    ProcessingUnit,
    RankingObservation,
    SearchItem,
    SearchPage,
    UnitStatus,
)

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """sleep で進む時計. monotonic と wall clock の両方を提供する."""

    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.t = 0.0
        self.start = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds

    def advance(self, seconds: float) -> None:
        self.t += seconds

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.t)


class FakeSearchService:
    """キーワードごとの順位付き URL リストを返す検索サービス.

    Args:
        results: keyword -> 順位順の URL リスト
        clock: 呼び出しごとに cost 秒進める時計
        fail_keywords: 常に SearchError を送出するキーワード
        fail_pages: SearchError を送出する (keyword, offset)
    """

    def __init__(
        self,
        results: dict[str, list[str]] | None = None,
        clock: FakeClock | None = None,
        cost: float = 0.0,
        fail_keywords: set[str] | None = None,
        fail_pages: set[tuple[str, int]] | None = None,
    ) -> None:
        self.results = results or {}
        self.clock = clock
        self.cost = cost
        self.fail_keywords = fail_keywords or set()
        self.fail_pages = fail_pages or set()
        self.calls: list[tuple[str, int, int]] = []

    def search(self, query: str, page_offset: int, page_size: int) -> SearchPage:
        self.calls.append((query, page_offset, page_size))
        if self.clock is not None:
            self.clock.advance(self.cost)
        if query in self.fail_keywords or (query, page_offset) in self.fail_pages:
            raise SearchError(f"injected failure: {query} @ {page_offset}")
        urls = self.results.get(query, [])
        chunk = urls[page_offset - 1:page_offset - 1 + page_size]
        items = [
            SearchItem(title=f"title {page_offset + i}", url=url, snippet=f"snippet {page_offset + i}")
            for i, url in enumerate(chunk)
        ]
        return SearchPage(items=items, total_results_reported=len(urls), search_latency=0.25)


class FakeStore:
    """RankingStore のインメモリ実装."""

    def __init__(self, keywords: list[Keyword] | None = None) -> None:
        self.keywords = list(keywords or [])
        self.rankings: list[RankingObservation] = []
        self.units: dict[str, ProcessingUnit] = {}
        self.save_calls = 0

    def list_active_keywords(self) -> list[Keyword]:
        return [k for k in self.keywords if k.is_active]

    def get_keywords(self, keyword_ids):
        by_id = {k.id: k for k in self.keywords}
        return [by_id[kid] for kid in keyword_ids if kid in by_id]

    def insert_ranking(self, observation: RankingObservation) -> RankingObservation:
        saved = copy.deepcopy(observation)
        saved.id = f"r{len(self.rankings) + 1}"
        self.rankings.append(saved)
        return copy.deepcopy(saved)

    def get_previous_ranking(self, keyword_id, exclude_id):
        candidates = [
            (r.observed_at, index, r)
            for index, r in enumerate(self.rankings)
            if r.keyword_id == keyword_id and r.id != exclude_id
        ]
        if not candidates:
            return None
        return copy.deepcopy(max(candidates, key=lambda c: (c[0], c[1]))[2])

    def delete_active_units(self) -> int:
        stale = [uid for uid, u in self.units.items() if u.status in ACTIVE_STATUSES]
        for uid in stale:
            del self.units[uid]
        return len(stale)

    def insert_units(self, units) -> None:
        for unit in units:
            self.units[unit.id] = copy.deepcopy(unit)

    def find_oldest_active_unit(self):
        active = sorted(
            (u for u in self.units.values() if u.status in ACTIVE_STATUSES),
            key=lambda u: (u.created_at, u.id),
        )
        return copy.deepcopy(active[0]) if active else None

    def claim_unit(self, unit, token, lease_until, now):
        stored = self.units.get(unit.id)
        if stored is None or stored.status not in ACTIVE_STATUSES:
            return None
        if stored.attempts != unit.attempts or stored.lease_is_live(now):
            return None
        stored.status = UnitStatus.PROCESSING
        stored.claim_token = token
        stored.lease_expires_at = lease_until
        stored.attempts += 1
        if stored.started_at is None:
            stored.started_at = now
        return copy.deepcopy(stored)

    def save_unit(self, unit) -> bool:
        self.save_calls += 1
        stored = self.units.get(unit.id)
        if stored is None or stored.claim_token != unit.claim_token:
            return False
        stored.status = unit.status
        stored.processed_count = unit.processed_count
        stored.error_count = unit.error_count
        stored.attempts = unit.attempts
        stored.completed_at = unit.completed_at
        stored.lease_expires_at = unit.lease_expires_at
        stored.last_error = unit.last_error
        return True

    def list_status_units(self, cutoff):
        return sorted(
            (
                copy.deepcopy(u)
                for u in self.units.values()
                if u.status in ACTIVE_STATUSES
                or (u.completed_at is not None and u.completed_at >= cutoff)
            ),
            key=lambda u: u.created_at,
        )

    def delete_completed_before(self, cutoff) -> int:
        old = [
            uid
            for uid, u in self.units.items()
            if u.status is UnitStatus.COMPLETED and u.completed_at < cutoff
        ]
        for uid in old:
            del self.units[uid]
        return len(old)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[list] = []
        self.fail = fail

    def notify(self, changes) -> None:
        self.calls.append(list(changes))
        if self.fail:
            raise RuntimeError("smtp down")


class RecordingEvents:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def emit(self, name: str, **fields) -> None:
        self.events.append((name, fields))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]


def make_keywords(*texts: str) -> list[Keyword]:
    return [Keyword(id=f"kw-{i}", text=text) for i, text in enumerate(texts)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def recorder() -> RecordingEvents:
    return RecordingEvents()
