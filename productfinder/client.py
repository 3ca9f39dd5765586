"""Keepa API クライアントモジュール.

エンドポイント:
  - list   : /bestsellers  カテゴリのベストセラー ASIN リスト
  - detail : /product      ASIN の商品詳細

レスポンスの tokensLeft が負の場合はレート制限超過。
refillIn (ミリ秒) + バッファだけ待って同じリクエストを再発行する。
それ以外の失敗はすべて警告ログを出して None を返す。
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass

import httpx

from productfinder.config import (
    KEEPA_BASE_URL,
    KEEPA_DOMAIN_ID,
    MAX_RATE_LIMIT_RETRIES,
    RATE_LIMIT_BUFFER_MS,
    REQUEST_TIMEOUT,
)
from productfinder.models import MISSING, CategorySpec, ProductRecord
from productfinder.ratelimit import AdmissionController

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "list": "/bestsellers",
    "detail": "/product",
}

# 1リクエストあたりの消費トークン（list / detail とも 1）
ENDPOINT_COST = 1


@dataclass
class RetryPolicy:
    """レート制限超過時の再試行ポリシー."""

    max_attempts: int = MAX_RATE_LIMIT_RETRIES
    buffer_ms: int = RATE_LIMIT_BUFFER_MS
    max_total_wait_seconds: float | None = None  # None = 待機合計の上限なし


class CatalogAPIClient:
    """Keepa API の読み取りクライアント.

    Args:
        api_key: Keepa API キー
        admission: admit(cost) を持つアドミッション制御
        http_client: 注入する httpx.AsyncClient。None なら内部で生成する。
    """

    def __init__(
        self,
        api_key: str,
        admission: AdmissionController,
        http_client: httpx.AsyncClient | None = None,
        base_url: str = KEEPA_BASE_URL,
        domain_id: int = KEEPA_DOMAIN_ID,
        retry_policy: RetryPolicy | None = None,
        sleep=asyncio.sleep,
    ):
        self.api_key = api_key
        self.admission = admission
        self.base_url = base_url.rstrip("/")
        self.domain_id = domain_id
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

    async def __aenter__(self) -> CatalogAPIClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def fetch(self, kind: str, params: dict) -> dict | None:
        """API を呼び出してレスポンス JSON を返す.

        Args:
            kind: "list" or "detail"
            params: エンドポイント固有のクエリパラメータ

        Returns:
            レスポンス JSON。失敗時・再試行上限到達時は None。
        """
        if kind not in ENDPOINTS:
            raise ValueError(f"unknown endpoint kind: {kind}")

        url = f"{self.base_url}{ENDPOINTS[kind]}"
        query = {"key": self.api_key, "domain": self.domain_id, **params}
        policy = self.retry_policy
        attempts = 0
        total_wait = 0.0

        while True:
            attempts += 1
            try:
                await self.admission.admit(ENDPOINT_COST)
            except Exception as e:
                logger.warning("トークン待機に失敗: kind=%s, params=%s, error=%s", kind, params, e)
                return None

            try:
                resp = await self._http.get(url, params=query)
            except httpx.HTTPError as e:
                logger.warning("API 呼び出し失敗: kind=%s, params=%s, error=%s", kind, params, e)
                return None

            try:
                payload = resp.json()
            except ValueError as e:
                logger.warning(
                    "レスポンス JSON パースエラー: kind=%s, params=%s, status=%d, error=%s",
                    kind, params, resp.status_code, e,
                )
                return None

            if not isinstance(payload, dict):
                logger.warning("想定外のレスポンス形式: kind=%s, params=%s", kind, params)
                return None

            if _is_rate_limited(payload):
                refill_ms = payload.get("refillIn") or 0
                wait_time = (refill_ms + policy.buffer_ms) / 1000
                over_budget = (
                    policy.max_total_wait_seconds is not None
                    and total_wait + wait_time > policy.max_total_wait_seconds
                )
                if attempts >= policy.max_attempts or over_budget:
                    logger.warning(
                        "レート制限の再試行上限に到達: kind=%s, params=%s, attempts=%d, waited=%.1f 秒",
                        kind, params, attempts, total_wait,
                    )
                    return None

                logger.info(
                    "レート制限に到達。%d 秒後に再試行: kind=%s, params=%s",
                    math.ceil(wait_time), kind, params,
                )
                await self._sleep(wait_time)
                total_wait += wait_time
                continue

            if resp.is_error:
                logger.warning(
                    "API エラー: kind=%s, params=%s, status=%d, error=%s",
                    kind, params, resp.status_code, payload.get("error"),
                )
                return None

            return payload

    async def fetch_ranked_ids(self, category: CategorySpec) -> list[str] | None:
        """カテゴリのベストセラー ASIN リストを取得する.

        Returns:
            ランキング順の ASIN リスト。該当なしは空リスト、失敗時は None。
        """
        logger.info("ベストセラー取得中: %s (%d)", category.name, category.external_id)

        payload = await self.fetch("list", {"category": category.external_id, "range": 0})
        if payload is None:
            return None

        asin_list = _deep_get(payload, "bestSellersList", "asinList")
        if not asin_list:
            logger.warning("ASIN が見つかりません: %s", category.name)
            return []

        ids = [str(asin) for asin in asin_list]
        logger.info("%s: %d 件の ASIN を取得", category.name, len(ids))
        return ids

    async def fetch_product_record(
        self, asin: str, category: CategorySpec
    ) -> ProductRecord | None:
        """ASIN の商品詳細を取得する. 失敗時・データなしは None."""
        if not asin:
            logger.warning("ASIN が未定義のためスキップ: category=%s", category.name)
            return None

        payload = await self.fetch("detail", {"asin": asin})
        if payload is None:
            return None

        products = payload.get("products") or []
        product = products[0] if products else None
        if not isinstance(product, dict):
            logger.warning("商品データが見つかりません: asin=%s", asin)
            return None

        return parse_product_record(product, category, asin=asin)


def parse_product_record(
    product: dict, category: CategorySpec, asin: str | None = None
) -> ProductRecord:
    """Keepa の product オブジェクトを ProductRecord に変換する.

    空値・欠損値は MISSING に置き換える。asin は要求した値を優先し、
    無ければレスポンスの値を使う（保存済み判定は要求した ASIN で行うため）。
    """
    return ProductRecord(
        asin=asin or product.get("asin") or MISSING,
        title=product.get("title") or MISSING,
        images_csv=product.get("imagesCSV") or MISSING,
        manufacturer=product.get("manufacturer") or MISSING,
        brand=product.get("brand") or MISSING,
        features=list(product.get("features") or []),
        description=product.get("description") or MISSING,
        parent_title=product.get("parentTitle") or MISSING,
        star_rating=product.get("reviewRating") or MISSING,
        category=category.name,
        category_id=category.external_id,
    )


def _is_rate_limited(payload: dict) -> bool:
    tokens_left = payload.get("tokensLeft")
    return isinstance(tokens_left, (int, float)) and tokens_left < 0


def _deep_get(d: dict, *keys: str):
    """ネストされた dict から安全に値を取得する."""
    for key in keys:
        if not isinstance(d, dict):
            return None
        d = d.get(key)
    return d
