"""順位変動の通知.

通知の送信手段 (メール等) はコアの外側. ここではプロトコルと、
ログ出力・Webhook POST の 2 実装のみを持つ.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import requests

from rankwatch.config import REQUEST_TIMEOUT
from rankwatch.models import SignificantChange

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, changes: Sequence[SignificantChange]) -> None:
        """変動リストをまとめて 1 回通知する. 失敗時は例外を送出してよい."""
        ...


def _describe(change: SignificantChange) -> str:
    previous = change.previous_position or "圏外"
    current = change.current_position or "圏外"
    direction = "上昇" if change.improved else "下降"
    return f"{change.keyword_text}: {previous} → {current} ({abs(change.delta)} 位{direction})"


class LogNotifier:
    """変動をログに出すだけの Notifier."""

    def notify(self, changes: Sequence[SignificantChange]) -> None:
        logger.info("順位変動 %d 件", len(changes))
        for change in changes:
            logger.info("  %s %s", _describe(change), change.resolved_url)


class WebhookNotifier:
    """変動リストを JSON で Webhook に POST する."""

    def __init__(
        self,
        url: str,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
    ) -> None:
        self._url = url
        self._session = session or requests.Session()
        self._timeout = timeout

    def notify(self, changes: Sequence[SignificantChange]) -> None:
        payload = {
            "subject": "Search Ranking Changes Alert",
            "text": "\n".join(_describe(c) for c in changes),
            "changes": [c.to_dict() for c in changes],
        }
        resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        resp.raise_for_status()
        logger.info("Webhook 通知送信: %d 件", len(changes))
