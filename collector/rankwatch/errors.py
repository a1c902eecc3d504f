"""例外定義."""


class RankwatchError(Exception):
    """本パッケージの基底例外."""


class ConfigurationError(RankwatchError):
    """必須設定の欠落・不正. 実行全体を中断し、自動リトライしない."""


class SearchError(RankwatchError):
    """検索 API 呼び出しの一時的な失敗 (タイムアウト・5xx・不正レスポンス)."""


class RateLimitError(SearchError):
    """検索 API のレート制限 (HTTP 429)."""
