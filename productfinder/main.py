"""Keepa ベストセラー商品収集 — メインエントリーポイント.

処理フロー:
  1. 各カテゴリのベストセラー ASIN を取得（180 日以内に取得済みならスキップ）
  2. ASIN リストをカテゴリごとに JSON 保存
  3. 各 ASIN の商品詳細を取得（保存済み ASIN はスキップ）
  4. 1件処理するごとに商品詳細 JSON を書き直す（中断しても再開できる）
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime

from productfinder.config import CATEGORIES, ENRICH_CACHED, KEEPA_API_KEY, LOG_DIR, OUTPUT_DIR
from productfinder.pipeline import Orchestrator
from productfinder.store import CheckpointStore

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """ロギングの初期設定."""
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / f"productfinder_{datetime.now().strftime('%Y%m%d')}.log"
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(log_file, encoding="utf-8"),
        ],
    )


def get_categories() -> list[dict]:
    """設定済みカテゴリを [{"name", "id"}, ...] で返す."""
    return [{"name": name, "id": cid} for name, cid in CATEGORIES.items()]


def load_all_product_details() -> list[dict]:
    """保存済みの全カテゴリの商品詳細を返す."""
    return CheckpointStore(OUTPUT_DIR).load_all_product_details()


async def run_pipeline() -> dict:
    """パイプラインを1回実行する."""
    orchestrator = Orchestrator.from_config(KEEPA_API_KEY, enrich_cached=ENRICH_CACHED)
    try:
        return await orchestrator.run()
    finally:
        await orchestrator.close()


def run() -> None:
    """メイン処理."""
    setup_logging()

    if not KEEPA_API_KEY:
        logger.error("KEEPA_API_KEY が設定されていません。終了します。")
        sys.exit(1)

    logger.info("=== ベストセラー商品収集 開始 === 出力先: %s", OUTPUT_DIR)
    asyncio.run(run_pipeline())


if __name__ == "__main__":
    run()
