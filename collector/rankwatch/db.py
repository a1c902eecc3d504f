"""Supabase データベース操作モジュール.

全テーブルは rank_tracker スキーマに配置。
Supabase client のスキーマ指定は .schema() で行う。

テーブル:
  keywords        追跡キーワード (id, keyword, is_active, created_at)
  rankings        順位の観測ログ (追記のみ)
  ranking_units   バッチ処理ユニット
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from supabase import Client, create_client

from rankwatch.config import SUPABASE_SCHEMA, require_env
from rankwatch.models import (
    ACTIVE_STATUSES,
    Keyword,
    ProcessingUnit,
    RankingObservation,
    UnitStatus,
    to_iso,
)

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]
_ACTIVE_LIST = ",".join(_ACTIVE)


class RankingStore(Protocol):
    """スケジューラが必要とする永続化操作."""

    def list_active_keywords(self) -> list[Keyword]: ...

    def get_keywords(self, keyword_ids: Sequence[str]) -> list[Keyword]: ...

    def insert_ranking(self, observation: RankingObservation) -> RankingObservation: ...

    def get_previous_ranking(
        self, keyword_id: str, exclude_id: str | None
    ) -> RankingObservation | None: ...

    def delete_active_units(self) -> int: ...

    def insert_units(self, units: Sequence[ProcessingUnit]) -> None: ...

    def find_oldest_active_unit(self) -> ProcessingUnit | None: ...

    def claim_unit(
        self, unit: ProcessingUnit, token: str, lease_until: datetime, now: datetime
    ) -> ProcessingUnit | None: ...

    def save_unit(self, unit: ProcessingUnit) -> bool: ...

    def list_status_units(self, cutoff: datetime) -> list[ProcessingUnit]: ...

    def delete_completed_before(self, cutoff: datetime) -> int: ...


class SupabaseStore:
    """RankingStore の Supabase 実装."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def from_env(cls) -> SupabaseStore:
        """SUPABASE_URL / SUPABASE_SECRET_KEY からクライアントを生成する."""
        client = create_client(require_env("SUPABASE_URL"), require_env("SUPABASE_SECRET_KEY"))
        return cls(client)

    def _table(self, name: str):
        """rank_tracker スキーマのテーブルを参照する."""
        return self._client.schema(SUPABASE_SCHEMA).table(name)

    # --- キーワード ---

    def list_active_keywords(self) -> list[Keyword]:
        """有効なキーワードを登録順に取得する."""
        resp = (
            self._table("keywords")
            .select("id, keyword, is_active")
            .eq("is_active", True)
            .order("created_at")
            .execute()
        )
        return [
            Keyword(id=row["id"], text=row["keyword"], is_active=row.get("is_active", True))
            for row in resp.data
        ]

    def get_keywords(self, keyword_ids: Sequence[str]) -> list[Keyword]:
        """ID 指定でキーワードを取得する. 戻り値は keyword_ids の順序に揃える."""
        if not keyword_ids:
            return []
        resp = (
            self._table("keywords")
            .select("id, keyword, is_active")
            .in_("id", list(keyword_ids))
            .execute()
        )
        by_id = {
            row["id"]: Keyword(id=row["id"], text=row["keyword"], is_active=row.get("is_active", True))
            for row in resp.data
        }
        return [by_id[kid] for kid in keyword_ids if kid in by_id]

    # --- 順位 ---

    def insert_ranking(self, observation: RankingObservation) -> RankingObservation:
        resp = self._table("rankings").insert(observation.to_record()).execute()
        saved = RankingObservation.from_record(resp.data[0])
        logger.debug("rankings に挿入: id=%s, keyword=%s", saved.id, saved.keyword_text)
        return saved

    def get_previous_ranking(
        self, keyword_id: str, exclude_id: str | None
    ) -> RankingObservation | None:
        """指定キーワードの最新の観測 (exclude_id を除く) を返す."""
        query = self._table("rankings").select("*").eq("keyword_id", keyword_id)
        if exclude_id is not None:
            query = query.neq("id", exclude_id)
        resp = query.order("observed_at", desc=True).limit(1).execute()
        if not resp.data:
            return None
        return RankingObservation.from_record(resp.data[0])

    # --- 処理ユニット ---

    def delete_active_units(self) -> int:
        """未完了 (pending / processing) のユニットを全て削除する."""
        resp = self._table("ranking_units").delete().in_("status", _ACTIVE).execute()
        return len(resp.data or [])

    def insert_units(self, units: Sequence[ProcessingUnit]) -> None:
        if not units:
            return
        self._table("ranking_units").insert([u.to_record() for u in units]).execute()
        logger.info("ranking_units に %d 件挿入", len(units))

    def find_oldest_active_unit(self) -> ProcessingUnit | None:
        resp = (
            self._table("ranking_units")
            .select("*")
            .in_("status", _ACTIVE)
            .order("created_at")
            .order("id")
            .limit(1)
            .execute()
        )
        if not resp.data:
            return None
        return ProcessingUnit.from_record(resp.data[0])

    def claim_unit(
        self, unit: ProcessingUnit, token: str, lease_until: datetime, now: datetime
    ) -> ProcessingUnit | None:
        """ユニットを条件付き UPDATE で確保する.

        status が未完了、attempts が読み取り時の値のまま、かつリースが空いている
        (未設定または期限切れ) 場合のみ更新される. 他の呼び出しに先を越されたら None.
        """
        patch = {
            "status": UnitStatus.PROCESSING.value,
            "claim_token": token,
            "lease_expires_at": to_iso(lease_until),
            "attempts": unit.attempts + 1,
        }
        if unit.started_at is None:
            patch["started_at"] = to_iso(now)

        resp = (
            self._table("ranking_units")
            .update(patch)
            .eq("id", unit.id)
            .eq("attempts", unit.attempts)
            .in_("status", _ACTIVE)
            .or_(f"lease_expires_at.is.null,lease_expires_at.lt.{to_iso(now)}")
            .execute()
        )
        if not resp.data:
            return None
        return ProcessingUnit.from_record(resp.data[0])

    def save_unit(self, unit: ProcessingUnit) -> bool:
        """進捗を書き込む. claim_token が一致する行のみ更新される.

        attempts も書き戻す. 進捗があったユニットは scheduler 側で 0 に戻している.
        """
        patch = {
            "status": unit.status.value,
            "processed_count": unit.processed_count,
            "error_count": unit.error_count,
            "attempts": unit.attempts,
            "completed_at": to_iso(unit.completed_at),
            "lease_expires_at": to_iso(unit.lease_expires_at),
            "last_error": unit.last_error,
        }
        resp = (
            self._table("ranking_units")
            .update(patch)
            .eq("id", unit.id)
            .eq("claim_token", unit.claim_token)
            .execute()
        )
        return bool(resp.data)

    def list_status_units(self, cutoff: datetime) -> list[ProcessingUnit]:
        """未完了のユニットと、cutoff 以降に終了したユニットを作成順に返す."""
        resp = (
            self._table("ranking_units")
            .select("*")
            .or_(f"status.in.({_ACTIVE_LIST}),completed_at.gte.{to_iso(cutoff)}")
            .order("created_at")
            .execute()
        )
        return [ProcessingUnit.from_record(row) for row in resp.data]

    def delete_completed_before(self, cutoff: datetime) -> int:
        resp = (
            self._table("ranking_units")
            .delete()
            .eq("status", UnitStatus.COMPLETED.value)
            .lt("completed_at", to_iso(cutoff))
            .execute()
        )
        return len(resp.data or [])
