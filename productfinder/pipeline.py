"""ベストセラー取得 → 商品詳細取得のパイプライン.

処理フロー:
  Phase 1 (CategoryDiscoveryStage)
    カテゴリを設定順に1つずつ処理。最終取得から REFRESH_DAYS 日以内ならスキップ。
  Phase 2 (DetailEnrichmentStage)
    Phase 1 で ASIN が取れたカテゴリを並行に処理。
    カテゴリ内は DETAIL_BATCH_SIZE 件ずつのバッチを順番に処理する。
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

import httpx

from productfinder.client import CatalogAPIClient
from productfinder.config import (
    CATEGORIES,
    CATEGORY_DELAY_SECONDS,
    DETAIL_BATCH_SIZE,
    MIN_REQUEST_INTERVAL_SECONDS,
    OUTPUT_DIR,
    REFRESH_DAYS,
    TOKEN_REFRESH_SECONDS,
    TOKEN_SAFETY_MARGIN_SECONDS,
    TOKENS_PER_MINUTE,
)
from productfinder.models import CategorySpec, ProductRecord, RankedIdList
from productfinder.ratelimit import AdmissionController, FixedDelayPolicy, TokenBucket
from productfinder.store import CheckpointStore, PersistenceError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_categories(mapping: dict[str, int] | None = None) -> list[CategorySpec]:
    """カテゴリ設定を CategorySpec のリストにする（設定順を保つ）."""
    mapping = CATEGORIES if mapping is None else mapping
    return [CategorySpec(name=name, external_id=cid) for name, cid in mapping.items()]


class CategoryDiscoveryStage:
    """カテゴリごとのベストセラー ASIN リストを取得・保存する."""

    def __init__(
        self,
        client: CatalogAPIClient,
        store: CheckpointStore,
        admission: AdmissionController,
        refresh_days: int = REFRESH_DAYS,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.store = store
        self.admission = admission
        self.refresh_window = timedelta(days=refresh_days)
        self._now = now

    async def run(self, categories: list[CategorySpec]) -> list[RankedIdList]:
        """全カテゴリを順番に処理し、今回取得できた ASIN リストを返す."""
        discovered: list[RankedIdList] = []
        for category in categories:
            ranked = await self.discover(category)
            if ranked is not None:
                discovered.append(ranked)
            # キャッシュの有無にかかわらずカテゴリ間で待機
            await self.admission.cooldown()
        return discovered

    def is_fresh(self, category: CategorySpec) -> bool:
        last_fetched = self.store.get_last_fetched(category.name)
        if last_fetched is None:
            return False

        age = self._now() - last_fetched
        if age < self.refresh_window:
            logger.info("スキップ: %s (%d 日前に取得済み)", category.name, age.days)
            return True
        return False

    async def discover(self, category: CategorySpec) -> RankedIdList | None:
        """1カテゴリ分の ASIN リストを取得する. スキップ・失敗・0件は None."""
        if self.is_fresh(category):
            return None

        ids = await self.client.fetch_ranked_ids(category)
        if not ids:
            return None

        ranked = RankedIdList(
            category_name=category.name,
            category_id=category.external_id,
            ids=ids,
        )
        try:
            self.store.save_ranked_ids(ranked)
            self.store.update_metadata(category.name, self._now())
        except PersistenceError as e:
            logger.error("ASIN リストの保存に失敗: %s, error=%s", category.name, e)
        return ranked


class DetailEnrichmentStage:
    """ASIN リストから商品詳細を取得し、1件ごとに保存する."""

    def __init__(
        self,
        client: CatalogAPIClient,
        store: CheckpointStore,
        admission: AdmissionController,
        batch_size: int = DETAIL_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1: {batch_size}")
        self.client = client
        self.store = store
        self.admission = admission
        self.batch_size = batch_size

    async def run(self, ranked: RankedIdList) -> list[ProductRecord]:
        """1カテゴリ分の商品詳細を取得する.

        保存済みの ASIN は API を呼ばずにスキップする。
        バッチ内は並行に取得し、結果は入力順に保存する。

        Returns:
            カテゴリの商品詳細リスト（保存済み分を含む）
        """
        category = CategorySpec(name=ranked.category_name, external_id=ranked.category_id)
        known = {record.asin for record in self.store.get_category_records(category)}
        total = len(ranked.ids)
        processed = 0
        start_time = time.monotonic()

        logger.info(
            "%s: %d 件の商品を処理 (保存済み %d 件)",
            category.name, total, len(known),
        )

        for batch in _chunked(ranked.ids, self.batch_size):
            calls = []
            for asin in batch:
                if not asin:
                    logger.warning("ASIN が未定義のためスキップ: category=%s", category.name)
                    calls.append(_skipped())
                elif asin in known:
                    logger.info("スキップ: ASIN %s は保存済み", asin)
                    calls.append(_skipped())
                else:
                    known.add(asin)
                    calls.append(self.client.fetch_product_record(asin, category))

            results = await asyncio.gather(*calls)

            for record in results:
                try:
                    if record is not None:
                        self.store.append_record(category, record)
                    else:
                        self.store.flush_records(category)
                except PersistenceError as e:
                    logger.error("進捗の保存に失敗: %s, error=%s", category.name, e)

                processed += 1
                logger.info(
                    "進捗: %.2f%% (%d/%d) - 経過時間: %.2f 秒 [%s]",
                    processed / total * 100, processed, total,
                    time.monotonic() - start_time, category.name,
                )

        await self.admission.cooldown()

        records = self.store.get_category_records(category)
        logger.info("完了: %s, %d 件の商品詳細を保存", category.name, len(records))
        return records


class Orchestrator:
    """Phase 1 → Phase 2 を実行する.

    TokenBucket はこのオブジェクトが所有し、AdmissionController 経由でクライアントに渡す。
    """

    def __init__(
        self,
        categories: list[CategorySpec],
        client: CatalogAPIClient,
        store: CheckpointStore,
        admission: AdmissionController,
        refresh_days: int = REFRESH_DAYS,
        batch_size: int = DETAIL_BATCH_SIZE,
        enrich_cached: bool = False,
    ):
        self.categories = list(categories)
        self.client = client
        self.store = store
        self.admission = admission
        self.enrich_cached = enrich_cached
        self.discovery = CategoryDiscoveryStage(client, store, admission, refresh_days)
        self.enrichment = DetailEnrichmentStage(client, store, admission, batch_size)

    @classmethod
    def from_config(
        cls,
        api_key: str,
        categories: list[CategorySpec] | None = None,
        output_dir: Path | str = OUTPUT_DIR,
        http_client: httpx.AsyncClient | None = None,
        enrich_cached: bool = False,
    ) -> Orchestrator:
        """config の定数から各コンポーネントを組み立てる."""
        if not api_key:
            raise ValueError("api_key is required")

        bucket = TokenBucket(
            capacity=TOKENS_PER_MINUTE,
            window_seconds=TOKEN_REFRESH_SECONDS,
            safety_margin=TOKEN_SAFETY_MARGIN_SECONDS,
        )
        admission = AdmissionController(
            [bucket, FixedDelayPolicy(MIN_REQUEST_INTERVAL_SECONDS)],
            cooldown_seconds=CATEGORY_DELAY_SECONDS,
        )
        return cls(
            categories=load_categories() if categories is None else categories,
            client=CatalogAPIClient(api_key, admission, http_client=http_client),
            store=CheckpointStore(output_dir),
            admission=admission,
            enrich_cached=enrich_cached,
        )

    async def close(self) -> None:
        await self.client.close()

    async def run(self) -> dict:
        """全カテゴリのパイプラインを実行し、サマリを返す."""
        start_time = time.monotonic()

        logger.info("=== Phase 1: ASIN 取得 (%d カテゴリ) ===", len(self.categories))
        discovered = await self.discovery.run(self.categories)

        targets = [r for r in discovered if r.ids]
        if self.enrich_cached:
            targets.extend(self._cached_targets({r.category_name for r in targets}))

        logger.info("=== Phase 2: 商品詳細取得 (%d カテゴリ) ===", len(targets))
        results = await asyncio.gather(
            *(self.enrichment.run(ranked) for ranked in targets),
            return_exceptions=True,
        )

        products = 0
        errors = 0
        for ranked, result in zip(targets, results):
            if isinstance(result, BaseException):
                errors += 1
                logger.error(
                    "商品詳細の取得に失敗: %s", ranked.category_name, exc_info=result,
                )
                continue
            products += len(result)

        summary = {
            "categories": len(self.categories),
            "discovered": len(discovered),
            "enriched": len(targets) - errors,
            "products": products,
            "errors": errors,
            "elapsed_seconds": round(time.monotonic() - start_time, 1),
        }
        logger.info("=== 完了 === %s", summary)
        return summary

    def _cached_targets(self, exclude: set[str]) -> list[RankedIdList]:
        """今回取得しなかったカテゴリの保存済み ASIN リスト（中断からの再開用）."""
        targets = []
        for category in self.categories:
            if category.name in exclude:
                continue
            ranked = self.store.load_ranked_ids(category)
            if ranked is not None and ranked.ids:
                targets.append(ranked)
        return targets


async def _skipped() -> None:
    return None


def _chunked(items: list[str], size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]
