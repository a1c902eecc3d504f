"""notifier / events / config のユニットテスト."""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from rankwatch.config import SchedulerConfig
from rankwatch.errors import ConfigurationError
from rankwatch.events import KEYWORD_CHECKED, LoggingEventSink
from rankwatch.models import SignificantChange
from rankwatch.notifier import LogNotifier, WebhookNotifier

CHANGES = [
    SignificantChange(
        keyword_text="bounce house",
        previous_position=10,
        current_position=5,
        delta=5,
        observed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        resolved_url="https://example.com/rentals",
    ),
    SignificantChange(
        keyword_text="party rentals",
        previous_position=4,
        current_position=None,
        delta=-97,
        observed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        resolved_url="https://example.com",
    ),
]


class TestWebhookNotifier:
    """WebhookNotifier のテスト."""

    def test_posts_json(self):
        session = MagicMock()
        notifier = WebhookNotifier("https://hooks.example.com/x", session=session)

        notifier.notify(CHANGES)

        session.post.assert_called_once()
        assert session.post.call_args.args[0] == "https://hooks.example.com/x"
        payload = session.post.call_args.kwargs["json"]
        assert payload["subject"] == "Search Ranking Changes Alert"
        assert len(payload["changes"]) == 2
        assert payload["changes"][0]["observed_at"] == "2026-03-01T00:00:00.000000Z"
        assert "bounce house: 10 → 5" in payload["text"]
        assert "圏外" in payload["text"]

    def test_http_error_propagates(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("500")
        notifier = WebhookNotifier("https://hooks.example.com/x", session=session)

        with pytest.raises(requests.HTTPError):
            notifier.notify(CHANGES)


class TestLogNotifier:
    """LogNotifier のテスト."""

    def test_logs_each_change(self, caplog):
        with caplog.at_level(logging.INFO, logger="rankwatch.notifier"):
            LogNotifier().notify(CHANGES)

        assert "順位変動 2 件" in caplog.text
        assert "party rentals" in caplog.text


class TestLoggingEventSink:
    """LoggingEventSink のテスト."""

    def test_counts_and_latency(self):
        sink = LoggingEventSink()

        sink.emit(KEYWORD_CHECKED, keyword="a", latency=1.0)
        sink.emit(KEYWORD_CHECKED, keyword="b", latency=3.0)
        sink.emit("unit.busy")

        summary = sink.summary()
        assert summary["counts"] == {KEYWORD_CHECKED: 2, "unit.busy": 1}
        assert summary["latency"][KEYWORD_CHECKED] == {"count": 2, "mean": 2.0, "max": 3.0}


class TestSchedulerConfig:
    """SchedulerConfig のテスト."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("RANK_CHUNK_SIZE", "4")
        monkeypatch.setenv("RANK_KEYWORD_DELAY", "2.5")

        config = SchedulerConfig.from_env()

        assert config.chunk_size == 4
        assert config.keyword_delay == 2.5
        assert config.significance_threshold == 3

    def test_invalid_number(self, monkeypatch):
        monkeypatch.setenv("RANK_CHUNK_SIZE", "six")

        with pytest.raises(ConfigurationError):
            SchedulerConfig.from_env()

    def test_lease_must_exceed_time_budget(self):
        with pytest.raises(ConfigurationError):
            SchedulerConfig(time_budget=50.0, lease_seconds=30.0)

    def test_chunk_size_positive(self):
        with pytest.raises(ConfigurationError):
            SchedulerConfig(chunk_size=0)
