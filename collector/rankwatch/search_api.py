"""外部検索 API クライアント.

コアが依存するのは SearchService プロトコル (1 ページ分の検索) のみ.
本番では Google Programmable Search (Custom Search JSON API) を使う.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from rankwatch.config import (
    PAGE_SIZE,
    RATE_LIMIT_RETRY_WAIT_MAX,
    RATE_LIMIT_RETRY_WAIT_MIN,
    REQUEST_TIMEOUT,
    SEARCH_ENDPOINT,
    require_env,
)
from rankwatch.errors import RateLimitError, SearchError
from rankwatch.models import SearchItem, SearchPage

logger = logging.getLogger(__name__)


class SearchService(Protocol):
    """レート制限のあるキーワード検索サービス."""

    def search(self, query: str, page_offset: int, page_size: int) -> SearchPage:
        """page_offset (1 始まり) から page_size 件を返す.

        失敗時は SearchError (レート制限なら RateLimitError) を送出する.
        """
        ...


def parse_search_response(data: Any) -> SearchPage:
    """Custom Search API の JSON を SearchPage に変換する.

    Raises:
        SearchError: JSON の構造が想定と異なる場合
    """
    if not isinstance(data, dict):
        raise SearchError(f"malformed search response: expected object, got {type(data).__name__}")
    raw_items = data.get("items") or []
    if not isinstance(raw_items, list):
        raise SearchError("malformed search response: items is not a list")

    items = []
    for item in raw_items:
        if not isinstance(item, dict):
            raise SearchError("malformed search response: item is not an object")
        link = item.get("link")
        if not link:
            continue
        if not isinstance(link, str):
            raise SearchError("malformed search response: link is not a string")
        items.append(SearchItem(
            title=str(item.get("title") or ""),
            url=link,
            snippet=str(item.get("snippet") or ""),
        ))

    info = data.get("searchInformation")
    if not isinstance(info, dict):
        info = {}
    try:
        total = int(info.get("totalResults") or 0)
    except (TypeError, ValueError):
        total = 0
    try:
        latency = float(info.get("searchTime") or 0.0)
    except (TypeError, ValueError):
        latency = 0.0
    return SearchPage(items=items, total_results_reported=total, search_latency=latency)


class GoogleCustomSearch:
    """Google Custom Search JSON API の SearchService 実装.

    HTTP 429 を受けたら同じページを 1 回だけ再試行する (待機は指数的に 5〜30 秒).
    """

    def __init__(
        self,
        api_key: str,
        cx: str,
        session: requests.Session | None = None,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_key = api_key
        self._cx = cx
        self._session = session or requests.Session()
        self._timeout = timeout
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> GoogleCustomSearch:
        """GOOGLE_API_KEY / GOOGLE_CX から生成する. 未設定なら ConfigurationError."""
        return cls(api_key=require_env("GOOGLE_API_KEY"), cx=require_env("GOOGLE_CX"))

    def search(self, query: str, page_offset: int, page_size: int = PAGE_SIZE) -> SearchPage:
        retrying = Retrying(
            stop=stop_after_attempt(2),
            wait=wait_exponential(
                multiplier=RATE_LIMIT_RETRY_WAIT_MIN,
                min=RATE_LIMIT_RETRY_WAIT_MIN,
                max=RATE_LIMIT_RETRY_WAIT_MAX,
            ),
            retry=retry_if_exception_type(RateLimitError),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._fetch_page, query, page_offset, page_size)

    def _fetch_page(self, query: str, page_offset: int, page_size: int) -> SearchPage:
        params = {
            "key": self._api_key,
            "cx": self._cx,
            "q": query,
            "start": page_offset,
            "num": page_size,
        }
        try:
            resp = self._session.get(SEARCH_ENDPOINT, params=params, timeout=self._timeout)
        except requests.RequestException as e:
            raise SearchError(f"search request failed: query={query!r}, start={page_offset}: {e}") from e

        if resp.status_code == 429:
            logger.warning("レート制限: query=%s, start=%d", query, page_offset)
            raise RateLimitError(f"rate limited: query={query!r}, start={page_offset}")

        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise SearchError(
                f"search API returned {resp.status_code}: query={query!r}, start={page_offset}"
            ) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise SearchError(f"malformed search response: query={query!r}") from e

        return parse_search_response(data)
