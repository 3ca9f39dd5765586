"""チェックポイント（JSON ファイル）操作モジュール.

ディレクトリ構成:
  root/metadata.json                                  カテゴリ別の最終取得日時
  root/<カテゴリ>/<カテゴリ>_<カテゴリID>_ids.json       ベストセラー ASIN リスト
  root/<カテゴリ>/<カテゴリ>_<カテゴリID>_details.json   商品詳細リスト

書き込みはすべてファイル全体の上書き。一時ファイルに書いてから os.replace で
置き換えるため、途中で落ちても壊れた JSON は残らない。
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path

from productfinder.models import (
    CategorySpec,
    FetchMetadataEntry,
    ProductRecord,
    RankedIdList,
)

logger = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
IDS_SUFFIX = "_ids.json"
DETAILS_SUFFIX = "_details.json"


class PersistenceError(Exception):
    """チェックポイントの書き込みに失敗した."""


def category_slug(name: str) -> str:
    """カテゴリ名をフォルダ・ファイル名用に変換する (例: "Home & Kitchen" -> "Home_Kitchen")."""
    return re.sub(r"\s+", "_", name.replace(" & ", "_"))


class CheckpointStore:
    """ファイルベースのチェックポイントストア.

    商品詳細はカテゴリごとにメモリ上のリストを持ち、変更のたびにファイル全体を書き直す。
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self._records: dict[str, list[ProductRecord]] = {}

    # --- パス ---

    def category_dir(self, category_name: str) -> Path:
        return self.root / category_slug(category_name)

    def ids_path(self, category: CategorySpec) -> Path:
        slug = category_slug(category.name)
        return self.category_dir(category.name) / f"{slug}_{category.external_id}{IDS_SUFFIX}"

    def details_path(self, category: CategorySpec) -> Path:
        slug = category_slug(category.name)
        return self.category_dir(category.name) / f"{slug}_{category.external_id}{DETAILS_SUFFIX}"

    # --- メタデータ ---

    def list_metadata(self) -> list[FetchMetadataEntry]:
        """全カテゴリの最終取得日時を返す. 読めない場合は空リスト."""
        path = self.root / METADATA_FILE
        if not path.exists():
            return []

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return [
                FetchMetadataEntry(
                    category_name=item["categoryName"],
                    last_fetched_at=_parse_timestamp(item["timestamp"]),
                )
                for item in raw
            ]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("メタデータを読み込めません。空として扱います: %s", e)
            return []

    def get_last_fetched(self, category_name: str) -> datetime | None:
        for entry in self.list_metadata():
            if entry.category_name == category_name:
                return entry.last_fetched_at
        return None

    def update_metadata(self, category_name: str, fetched_at: datetime) -> None:
        """カテゴリの最終取得日時を更新する. 既存エントリの順序は保つ."""
        entries = self.list_metadata()
        for entry in entries:
            if entry.category_name == category_name:
                entry.last_fetched_at = fetched_at
                break
        else:
            entries.append(FetchMetadataEntry(category_name, fetched_at))

        self._write_json(
            self.root / METADATA_FILE,
            [
                {"categoryName": e.category_name, "timestamp": _format_timestamp(e.last_fetched_at)}
                for e in entries
            ],
        )

    # --- ASIN リスト ---

    def save_ranked_ids(self, ranked: RankedIdList) -> Path:
        category = CategorySpec(ranked.category_name, ranked.category_id)
        path = self.ids_path(category)
        self._write_json(path, ranked.to_dict())
        logger.info("ASIN リストを保存: %s", path)
        return path

    def load_ranked_ids(self, category: CategorySpec) -> RankedIdList | None:
        path = self.ids_path(category)
        if not path.exists():
            return None
        try:
            return RankedIdList.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning("ASIN リストを読み込めません: %s, error=%s", path, e)
            return None

    # --- 商品詳細 ---

    def get_category_records(self, category: CategorySpec) -> list[ProductRecord]:
        """カテゴリの商品詳細リストを返す. 初回はファイルから読み込む."""
        return list(self._load_records(category))

    def append_record(self, category: CategorySpec, record: ProductRecord) -> None:
        """レコードを追加してファイル全体を書き直す.

        書き込みに失敗してもメモリ上には残り、次回の書き込みで保存される。
        """
        self._load_records(category).append(record)
        self.flush_records(category)

    def flush_records(self, category: CategorySpec) -> None:
        """メモリ上の商品詳細リストでファイル全体を書き直す."""
        records = self._load_records(category)
        self._write_json(
            self.details_path(category),
            {"productDetails": [r.to_dict() for r in records]},
        )

    def load_all_product_details(self) -> list[dict]:
        """root 配下の全 *_details.json を読み込む.

        Returns:
            [{"category": フォルダ名, "fileName": ファイル名, "productDetails": [...]}, ...]
        """
        if not self.root.is_dir():
            logger.warning("出力ディレクトリがありません: %s", self.root)
            return []

        results = []
        for folder in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for path in sorted(folder.glob(f"*{DETAILS_SUFFIX}")):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                except (OSError, ValueError) as e:
                    logger.error("JSON パースエラー: %s, error=%s", path.name, e)
                    continue
                results.append({
                    "category": folder.name,
                    "fileName": path.name,
                    "productDetails": data.get("productDetails", []) if isinstance(data, dict) else [],
                })
        return results

    # --- 内部 ---

    def _load_records(self, category: CategorySpec) -> list[ProductRecord]:
        if category.name in self._records:
            return self._records[category.name]

        records: list[ProductRecord] = []
        path = self.details_path(category)
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                records = [ProductRecord.from_dict(item) for item in data.get("productDetails", [])]
            except (OSError, ValueError, AttributeError, TypeError) as e:
                logger.warning("商品詳細を読み込めません。空として扱います: %s, error=%s", path, e)
                records = []

        self._records[category.name] = records
        return records

    def _write_json(self, path: Path, data) -> None:
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"書き込み失敗: {path}: {e}") from e


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
