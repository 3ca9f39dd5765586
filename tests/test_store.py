"""store モジュールのユニットテスト."""

import json
from datetime import datetime, timezone

import pytest

from productfinder.models import CategorySpec, ProductRecord, RankedIdList
from productfinder.store import CheckpointStore, PersistenceError, category_slug

HOME = CategorySpec("Home & Kitchen", 1055398)


class TestCategorySlug:
    """category_slug のテスト."""

    def test_ampersand(self):
        assert category_slug("Home & Kitchen") == "Home_Kitchen"

    def test_spaces_and_comma(self):
        assert category_slug("Clothing, Shoes & Jewelry") == "Clothing,_Shoes_Jewelry"

    def test_plain(self):
        assert category_slug("Books") == "Books"


class TestMetadata:
    """メタデータの読み書きテスト."""

    def test_missing_file(self, tmp_path):
        assert CheckpointStore(tmp_path).list_metadata() == []

    def test_update_keeps_order(self, tmp_path):
        store = CheckpointStore(tmp_path)
        t1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        t2 = datetime(2026, 2, 1, tzinfo=timezone.utc)

        store.update_metadata("Books", t1)
        store.update_metadata("Electronics", t1)
        store.update_metadata("Books", t2)

        raw = json.loads((tmp_path / "metadata.json").read_text(encoding="utf-8"))
        assert [item["categoryName"] for item in raw] == ["Books", "Electronics"]
        assert store.get_last_fetched("Books") == t2
        assert store.get_last_fetched("Automotive") is None

    def test_js_timestamp(self, tmp_path):
        """末尾 Z の ISO 8601 も読めること."""
        (tmp_path / "metadata.json").write_text(
            json.dumps([{"categoryName": "Books", "timestamp": "2025-03-01T12:00:00.000Z"}]),
            encoding="utf-8",
        )
        last = CheckpointStore(tmp_path).get_last_fetched("Books")
        assert last == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_corrupt_file(self, tmp_path):
        (tmp_path / "metadata.json").write_text("{not json", encoding="utf-8")
        assert CheckpointStore(tmp_path).list_metadata() == []


class TestRankedIds:
    """ASIN リストの保存テスト."""

    def test_save_and_load(self, tmp_path):
        store = CheckpointStore(tmp_path)
        ranked = RankedIdList("Home & Kitchen", 1055398, ["B3", "B1", "B2"])

        path = store.save_ranked_ids(ranked)

        assert path == tmp_path / "Home_Kitchen" / "Home_Kitchen_1055398_ids.json"
        assert json.loads(path.read_text(encoding="utf-8")) == {
            "categoryName": "Home & Kitchen",
            "categoryId": 1055398,
            "ids": ["B3", "B1", "B2"],
        }
        assert store.load_ranked_ids(HOME).ids == ["B3", "B1", "B2"]

    def test_load_missing(self, tmp_path):
        assert CheckpointStore(tmp_path).load_ranked_ids(HOME) is None


class TestCategoryRecords:
    """商品詳細の保存テスト."""

    def test_append_rewrites_file(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.append_record(HOME, ProductRecord(asin="A1", title="Kettle"))
        store.append_record(HOME, ProductRecord(asin="A2"))

        path = tmp_path / "Home_Kitchen" / "Home_Kitchen_1055398_details.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert [p["asin"] for p in data["productDetails"]] == ["A1", "A2"]
        assert data["productDetails"][1]["title"] == "N/A"
        assert not path.with_name(path.name + ".tmp").exists()

    def test_reload_from_disk(self, tmp_path):
        CheckpointStore(tmp_path).append_record(HOME, ProductRecord(asin="A1", title="Kettle"))

        records = CheckpointStore(tmp_path).get_category_records(HOME)

        assert len(records) == 1
        assert records[0].asin == "A1"
        assert records[0].title == "Kettle"

    def test_flush_empty(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.flush_records(HOME)

        data = json.loads(store.details_path(HOME).read_text(encoding="utf-8"))
        assert data == {"productDetails": []}

    def test_corrupt_details(self, tmp_path):
        store = CheckpointStore(tmp_path)
        path = store.details_path(HOME)
        path.parent.mkdir(parents=True)
        path.write_text("[broken", encoding="utf-8")

        assert store.get_category_records(HOME) == []

    def test_write_failure(self, tmp_path):
        root = tmp_path / "not_a_dir"
        root.write_text("", encoding="utf-8")

        with pytest.raises(PersistenceError):
            CheckpointStore(root).append_record(HOME, ProductRecord(asin="A1"))


class TestLoadAllProductDetails:
    """load_all_product_details のテスト."""

    def test_collects_and_skips_corrupt(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.append_record(HOME, ProductRecord(asin="A1"))
        store.append_record(CategorySpec("Books", 283155), ProductRecord(asin="B1"))
        broken = tmp_path / "Automotive" / "Automotive_15684181_details.json"
        broken.parent.mkdir()
        broken.write_text("{", encoding="utf-8")

        results = store.load_all_product_details()

        assert [r["category"] for r in results] == ["Books", "Home_Kitchen"]
        assert results[0]["fileName"] == "Books_283155_details.json"
        assert results[1]["productDetails"][0]["asin"] == "A1"

    def test_missing_root(self, tmp_path):
        assert CheckpointStore(tmp_path / "nope").load_all_product_details() == []
