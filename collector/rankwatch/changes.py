"""順位変動の判定."""

from __future__ import annotations

from rankwatch.config import SIGNIFICANCE_THRESHOLD
from rankwatch.models import RankingObservation, SignificantChange

# 圏外の計算上の順位. ディープチェック (100 位) より必ず悪い値
NOT_FOUND_POSITION = 101


def effective_position(position: int | None) -> int:
    return NOT_FOUND_POSITION if position is None else position


def position_delta(previous: int | None, current: int | None) -> int:
    """前回順位 − 今回順位. 正なら上昇."""
    return effective_position(previous) - effective_position(current)


def classify(
    current: RankingObservation,
    previous: RankingObservation | None,
    threshold: int = SIGNIFICANCE_THRESHOLD,
) -> SignificantChange | None:
    """直前の観測と比較し、閾値以上の変動なら SignificantChange を返す.

    前回の観測が無ければ今回をベースラインとして扱い、None を返す.
    """
    if previous is None:
        return None

    delta = position_delta(previous.position, current.position)
    if abs(delta) < threshold:
        return None

    return SignificantChange(
        keyword_text=current.keyword_text,
        previous_position=previous.position,
        current_position=current.position,
        delta=delta,
        observed_at=current.observed_at,
        resolved_url=current.resolved_url,
    )
