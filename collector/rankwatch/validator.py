"""検索結果の妥当性チェック.

検索エンジン側の設定ミス (特定サイトのみを検索対象にしている等) の兆候を
検出して警告を返す. 警告はメタデータとして保存するだけで、順位の記録は妨げない.
"""

from __future__ import annotations

from collections.abc import Sequence

from rankwatch.models import Competitor, ValidationResult
from rankwatch.urls import host_of, normalize_domain, strip_url

# この件数以上の競合があるのにドメイン種類がこれ未満なら多様性不足とみなす
MIN_DISTINCT_DOMAINS = 5


def validate_search_results(
    position: int | None,
    competitors: Sequence[Competitor],
    target_domain: str,
    keyword: str,
) -> ValidationResult:
    """1 ページ目の検索結果を検査する.

    Args:
        position: 1 ページ目でのターゲット順位. 圏外または 2 ページ目以降なら None
        competitors: 1 ページ目のターゲット以外の結果
        target_domain: ターゲットドメイン
        keyword: 検索キーワード

    Returns:
        ValidationResult。警告が 1 つでもあれば is_valid=False。
    """
    warnings: list[str] = []

    if position is not None and 1 <= position <= 2:
        warnings.append(
            f"Target domain ranks in position {position} for '{keyword}' - "
            "this may indicate the search engine is restricted to specific sites"
        )

    distinct_hosts = {host_of(c.url) for c in competitors}
    if len(competitors) >= MIN_DISTINCT_DOMAINS and len(distinct_hosts) < MIN_DISTINCT_DOMAINS:
        warnings.append(
            f"Low domain diversity in results ({len(distinct_hosts)} unique domains) - "
            "may indicate the search engine is restricted"
        )

    target = normalize_domain(target_domain)
    if competitors and all(target in strip_url(c.url) for c in competitors):
        warnings.append(
            "All search results appear to be from the target domain - "
            "the search engine is likely restricted to this site only"
        )

    return ValidationResult(is_valid=not warnings, warnings=warnings)
