"""検索順位の取得モジュール.

取得戦略:
  1. 10 件ずつページングして検索 API を呼ぶ (offset 1, 11, 21, ...)
  2. ターゲットドメインが見つかる / 結果が尽きる / max_position に達するまで続ける
  3. 1 ページの取得失敗はスキップして次のページへ (全ページ失敗時のみエラー)
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence

from rankwatch.config import (
    DEEP_MAX_POSITION,
    DEFAULT_MAX_POSITION,
    MAX_COMPETITORS,
    PAGE_SIZE,
    QUICK_MAX_POSITION,
    page_delay,
)
from rankwatch.errors import ConfigurationError, SearchError
from rankwatch.models import (
    Competitor,
    DiagnosticResult,
    KeywordDiagnosis,
    RankingMetadata,
    RankingResult,
)
from rankwatch.search_api import SearchService
from rankwatch.urls import fallback_url, matches_domain, normalize_domain
from rankwatch.validator import validate_search_results

logger = logging.getLogger(__name__)


class RankSearchClient:
    """1 キーワードについてターゲットドメインの順位を調べる."""

    def __init__(
        self,
        service: SearchService,
        page_delay_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._service = service
        self._page_delay = page_delay() if page_delay_seconds is None else page_delay_seconds
        self._sleep = sleep

    def resolve_position(
        self,
        keyword: str,
        target_domain: str,
        max_position: int = DEFAULT_MAX_POSITION,
    ) -> RankingResult:
        """検索結果を最大 max_position 位まで調べ、ターゲットの順位を返す.

        Args:
            keyword: 検索キーワード
            target_domain: ターゲットドメイン (スキーム・www. 付きでも可)
            max_position: 調べる最大順位

        Returns:
            RankingResult。圏外なら position=None、resolved_url はターゲットの URL。

        Raises:
            SearchError: 全ページの取得に失敗した場合
            ConfigurationError: ターゲットドメインが空の場合
        """
        target = normalize_domain(target_domain)
        if not target:
            raise ConfigurationError("target domain is empty")

        max_pages = max(1, math.ceil(max_position / PAGE_SIZE))
        position: int | None = None
        resolved_url = ""
        competitors: list[Competitor] = []
        api_calls = 0
        failed_pages = 0
        examined = 0
        max_examined = 0
        total_reported = 0
        latency = 0.0

        for page in range(max_pages):
            if page > 0:
                self._sleep(self._page_delay)
            offset = page * PAGE_SIZE + 1

            try:
                result_page = self._service.search(keyword, offset, PAGE_SIZE)
            except SearchError as e:
                failed_pages += 1
                logger.warning(
                    "ページ取得失敗、スキップ: keyword=%s, page=%d, error=%s",
                    keyword, page + 1, e,
                )
                continue

            if api_calls == 0:
                total_reported = result_page.total_results_reported
                latency = result_page.search_latency
            api_calls += 1

            for index, item in enumerate(result_page.items):
                rank = offset + index
                examined += 1
                max_examined = max(max_examined, rank)
                if matches_domain(item.url, target):
                    if position is None:
                        position = rank
                        resolved_url = item.url
                    continue
                competitors.append(Competitor(
                    position=rank,
                    title=item.title,
                    url=item.url,
                    snippet=item.snippet,
                ))

            if position is not None:
                break
            # 1 ページ分に満たなければ結果の終端
            if len(result_page.items) < PAGE_SIZE:
                break

        if api_calls == 0:
            raise SearchError(f"all {failed_pages} result pages failed for keyword {keyword!r}")

        if position is None:
            resolved_url = fallback_url(target_domain)

        first_page = [c for c in competitors if c.position <= PAGE_SIZE]
        validation = validate_search_results(
            position if position is not None and position <= PAGE_SIZE else None,
            first_page,
            target_domain,
            keyword,
        )
        if not validation.is_valid:
            for warning in validation.warnings:
                logger.warning("検証警告: keyword=%s: %s", keyword, warning)

        status = f"{position}位" if position else "圏外"
        logger.info(
            "順位取得: keyword=%s → %s (API 呼び出し %d 回, %d 件確認)",
            keyword, status, api_calls, examined,
        )

        return RankingResult(
            position=position,
            resolved_url=resolved_url,
            competitors=competitors[:MAX_COMPETITORS],
            metadata=RankingMetadata(
                total_results_reported=total_reported,
                search_latency=latency,
                results_examined=examined,
                validation_passed=validation.is_valid,
                validation_warnings=validation.warnings,
                api_calls_used=api_calls,
                search_depth_requested=max_position,
                max_position_examined=max_examined,
            ),
        )

    def quick_check(self, keyword: str, target_domain: str) -> RankingResult:
        """1 ページ目 (上位 10 件) のみを調べる."""
        return self.resolve_position(keyword, target_domain, QUICK_MAX_POSITION)

    def deep_check(self, keyword: str, target_domain: str) -> RankingResult:
        """上位 100 件まで調べる."""
        return self.resolve_position(keyword, target_domain, DEEP_MAX_POSITION)

    def diagnose_configuration(
        self, test_keywords: Sequence[str], target_domain: str
    ) -> DiagnosticResult:
        """複数キーワードで検索し、検索エンジンの設定ミスを診断する.

        上位 2 位に入るキーワードが過半数なら、検索対象がサイト限定に
        なっている可能性が高いと判断する.
        """
        issues: list[str] = []
        recommendations: list[str] = []
        test_results: list[KeywordDiagnosis] = []

        for keyword in test_keywords:
            try:
                result = self.resolve_position(keyword, target_domain)
            except SearchError as e:
                logger.error("診断キーワードの検索失敗: keyword=%s, error=%s", keyword, e)
                issues.append(f'Failed to test keyword "{keyword}": {e}')
                continue

            test_results.append(KeywordDiagnosis(
                keyword=keyword,
                position=result.position,
                warnings=list(result.metadata.validation_warnings),
            ))
            if result.position is not None and result.position <= 2:
                issues.append(
                    f'Keyword "{keyword}" ranks suspiciously high at position {result.position}'
                )

        high_ranking = sum(
            1 for r in test_results if r.position is not None and r.position <= 2
        )
        if test_results and high_ranking / len(test_results) > 0.5:
            issues.append(
                f"{high_ranking}/{len(test_results)} keywords rank in top 2 positions - "
                "likely search engine restriction"
            )
            recommendations.extend([
                "Check the Programmable Search Engine settings",
                'Ensure "Search the entire web" is enabled',
                "Remove any site restrictions from the search engine configuration",
            ])

        is_healthy = not issues
        if not is_healthy:
            for issue in issues:
                logger.warning("診断: %s", issue)

        return DiagnosticResult(
            is_healthy=is_healthy,
            issues=issues,
            recommendations=recommendations,
            test_results=test_results,
        )
