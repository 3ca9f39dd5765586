"""データモデル定義."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

# 欠損フィールドのセンチネル値
MISSING = "N/A"


@dataclass(frozen=True)
class CategorySpec:
    """取得対象カテゴリ（静的設定）."""

    name: str  # カテゴリ名 (例: Home & Kitchen)
    external_id: int  # Amazon カテゴリ ID


@dataclass
class FetchMetadataEntry:
    """カテゴリごとの最終取得日時."""

    category_name: str
    last_fetched_at: datetime  # UTC


@dataclass
class RankedIdList:
    """ベストセラー順の ASIN リスト. 順序はプロバイダのランキングのまま保持する."""

    category_name: str
    category_id: int
    ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "categoryName": self.category_name,
            "categoryId": self.category_id,
            "ids": list(self.ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> RankedIdList:
        return cls(
            category_name=data["categoryName"],
            category_id=data["categoryId"],
            ids=list(data.get("ids") or []),
        )


@dataclass
class ProductRecord:
    """商品詳細レコード. 欠損値は省略せず MISSING で埋める."""

    asin: str
    title: str = MISSING
    images_csv: str = MISSING  # 画像ファイル名の CSV
    manufacturer: str = MISSING
    brand: str = MISSING
    features: list[str] = field(default_factory=list)
    description: str = MISSING
    parent_title: str = MISSING
    star_rating: int | float | str = MISSING
    category: str = MISSING
    category_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "asin": self.asin,
            "title": self.title,
            "imagesCSV": self.images_csv,
            "manufacturer": self.manufacturer,
            "brand": self.brand,
            "features": list(self.features),
            "description": self.description,
            "parentTitle": self.parent_title,
            "starRating": self.star_rating,
            "category": self.category,
            "categoryId": self.category_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProductRecord:
        return cls(
            asin=data.get("asin", MISSING),
            title=data.get("title", MISSING),
            images_csv=data.get("imagesCSV", MISSING),
            manufacturer=data.get("manufacturer", MISSING),
            brand=data.get("brand", MISSING),
            features=list(data.get("features") or []),
            description=data.get("description", MISSING),
            parent_title=data.get("parentTitle", MISSING),
            star_rating=data.get("starRating", MISSING),
            category=data.get("category", MISSING),
            category_id=data.get("categoryId"),
        )


@dataclass
class TokenBucketState:
    """トークンバケットの状態スナップショット."""

    capacity: int
    available: int  # 0..capacity
    window_start: float  # monotonic 秒


@dataclass
class AdmissionRequest:
    """トークン待ちキューの1リクエスト.

    FIFO 順は sequence で明示する。future の結果が許可、例外が失敗を表す。
    """

    sequence: int
    tokens_needed: int
    future: asyncio.Future
