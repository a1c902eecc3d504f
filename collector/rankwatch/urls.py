"""URL・ドメインの正規化ユーティリティ."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)
_WWW_PATTERN = re.compile(r"^www\.", re.IGNORECASE)


def strip_url(url: str) -> str:
    """小文字化し、スキームと先頭の www. を除去する.

    例: "https://www.Example.com/a" → "example.com/a"
    """
    stripped = _SCHEME_PATTERN.sub("", url.strip().lower())
    return _WWW_PATTERN.sub("", stripped)


def normalize_domain(domain: str) -> str:
    """ターゲットドメインを比較用に正規化する (末尾の / も除去)."""
    return strip_url(domain).rstrip("/")


def host_of(url: str) -> str:
    """URL のホスト名 (www. 除去済み) を返す. パースできなければ URL をそのまま返す."""
    candidate = url if _SCHEME_PATTERN.match(url.strip()) else f"https://{url.strip()}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        return url
    if not host:
        return url
    return _WWW_PATTERN.sub("", host.lower())


def matches_domain(url: str, normalized_target: str) -> bool:
    """検索結果 URL がターゲットドメインのものか判定する.

    正規化した URL がターゲットと一致するか、"target/" または "target." で
    始まる場合のみ一致とみなす. URL 内の他の位置に現れても一致にしない.
    """
    if not normalized_target:
        return False
    normalized = strip_url(url)
    return (
        normalized == normalized_target
        or normalized.startswith(normalized_target + "/")
        or normalized.startswith(normalized_target + ".")
    )


def fallback_url(target_domain: str) -> str:
    """圏外時に保存する URL. スキームが無ければ https:// を付ける."""
    target = target_domain.strip()
    if _SCHEME_PATTERN.match(target):
        return target
    return f"https://{target}"
