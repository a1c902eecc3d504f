"""検索順位チェック — メインエントリーポイント.

外部スケジューラ (cron 等) から呼ばれるコマンド:
  create   有効キーワードからユニットを作り直す
  process  最も古い未完了ユニットを 1 回分処理する
  status   進捗を JSON で出力する
  cleanup  古い完了済みユニットを削除する
  diagnose 検索エンジン設定の診断
  run      create の後、ユニットが無くなるまで process を繰り返す (ローカル実行用)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from dataclasses import asdict
from datetime import datetime

from rankwatch.config import (
    CLEANUP_MAX_AGE_DAYS,
    LOG_DIR,
    SchedulerConfig,
    notify_webhook_url,
    require_env,
)
from rankwatch.db import SupabaseStore
from rankwatch.errors import ConfigurationError
from rankwatch.events import LoggingEventSink
from rankwatch.notifier import LogNotifier, Notifier, WebhookNotifier
from rankwatch.ranker import RankSearchClient
from rankwatch.scheduler import BatchScheduler
from rankwatch.search_api import GoogleCustomSearch

logger = logging.getLogger(__name__)

# run コマンドで別の呼び出しが処理中だった場合の待機
BUSY_WAIT_SECONDS = 10.0


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / f"collector_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def build_notifier() -> Notifier:
    url = notify_webhook_url()
    if url:
        return WebhookNotifier(url)
    return LogNotifier()


def build_scheduler(event_sink: LoggingEventSink) -> BatchScheduler:
    """環境変数から本番構成のスケジューラを組み立てる."""
    target_domain = require_env("TARGET_DOMAIN")
    return BatchScheduler(
        store=SupabaseStore.from_env(),
        ranker=RankSearchClient(GoogleCustomSearch.from_env()),
        notifier=build_notifier(),
        target_domain=target_domain,
        config=SchedulerConfig.from_env(),
        event_sink=event_sink,
    )


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def run(scheduler: BatchScheduler, max_invocations: int = 1000) -> None:
    """ユニットを作成し、全ユニットが終わるまで処理する."""
    logger.info("=== 検索順位チェック 開始 ===")
    start_time = time.time()

    created = scheduler.create_batches()
    logger.info(created.message)
    if created.batches_created == 0:
        return

    for _ in range(max_invocations):
        result = scheduler.process_next_unit()
        logger.info(result.message)
        if not result.has_more:
            break
        if result.busy:
            time.sleep(BUSY_WAIT_SECONDS)
    else:
        logger.warning("呼び出し回数の上限 (%d 回) に達しました", max_invocations)

    status = scheduler.get_status()
    elapsed = time.time() - start_time
    logger.info("=== 検索順位チェック 完了 ===")
    logger.info(
        "処理: %d/%d 件, エラー: %d 件, 所要時間: %.1f 秒",
        status.processed_keywords, status.total_keywords, status.total_errors, elapsed,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rankwatch", description="検索順位チェック")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("create", help="ユニットを作成する")
    sub.add_parser("process", help="次のユニットを処理する")
    sub.add_parser("status", help="進捗を表示する")
    cleanup = sub.add_parser("cleanup", help="古い完了済みユニットを削除する")
    cleanup.add_argument("--days", type=int, default=CLEANUP_MAX_AGE_DAYS)
    diagnose = sub.add_parser("diagnose", help="検索エンジン設定を診断する")
    diagnose.add_argument("keywords", nargs="*", help="テスト用キーワード (省略時は登録済みから 3 件)")
    sub.add_parser("run", help="全ユニットを処理する (ローカル実行用)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    event_sink = LoggingEventSink()

    try:
        scheduler = build_scheduler(event_sink)

        if args.command == "create":
            _print_json(asdict(scheduler.create_batches()))
        elif args.command == "process":
            _print_json(asdict(scheduler.process_next_unit()))
        elif args.command == "status":
            _print_json(scheduler.get_status().to_dict())
        elif args.command == "cleanup":
            _print_json({"deleted": scheduler.cleanup_old_units(args.days)})
        elif args.command == "diagnose":
            keywords = args.keywords or [
                k.text for k in SupabaseStore.from_env().list_active_keywords()[:3]
            ]
            if not keywords:
                logger.error("診断に使うキーワードがありません")
                return 1
            ranker = RankSearchClient(GoogleCustomSearch.from_env())
            _print_json(asdict(ranker.diagnose_configuration(keywords, require_env("TARGET_DOMAIN"))))
        elif args.command == "run":
            run(scheduler)
    except ConfigurationError as e:
        logger.error("設定エラー: %s", e)
        return 2

    logger.info("イベント集計: %s", event_sink.summary())
    return 0


if __name__ == "__main__":
    sys.exit(main())
