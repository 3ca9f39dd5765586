"""設定モジュール — 環境変数・定数定義."""

import os
from pathlib import Path

from dotenv import load_dotenv

# .env はプロジェクトルートに配置
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# --- Keepa API ---
# 未設定の場合は main.run() が起動時に終了させる
KEEPA_API_KEY: str = os.environ.get("KEEPA_API_KEY", "")
KEEPA_BASE_URL = "https://api.keepa.com"
KEEPA_DOMAIN_ID = 1  # Amazon US

# --- カテゴリ (カテゴリ名 -> Amazon カテゴリ ID) ---
CATEGORIES: dict[str, int] = {
    "Electronics": 172282,
    "Books": 283155,
    "Clothing, Shoes & Jewelry": 7141123011,
    "Home & Kitchen": 1055398,
    "Beauty & Personal Care": 11091801,
    "Health & Household": 3760901,
    "Toys & Games": 165793011,
    "Sports & Outdoors": 3375251,
    "Automotive": 15684181,
    "Industrial & Scientific": 16310091,
}

# --- トークン管理 ---
TOKENS_PER_MINUTE = 20
TOKEN_REFRESH_SECONDS = 60.0
TOKEN_SAFETY_MARGIN_SECONDS = 1.0

# --- レート制限超過時のリトライ ---
RATE_LIMIT_BUFFER_MS = 1000
MAX_RATE_LIMIT_RETRIES = 10

# --- リクエスト設定 ---
REQUEST_TIMEOUT = 30.0  # 秒
MIN_REQUEST_INTERVAL_SECONDS = 0.0  # 0 = 間隔制御なし
CATEGORY_DELAY_SECONDS = 3.0
DETAIL_BATCH_SIZE = 2

# --- キャッシュ ---
REFRESH_DAYS = 180
ENRICH_CACHED = os.environ.get("PRODUCTFINDER_ENRICH_CACHED", "false").lower() == "true"

# --- 出力先 ---
OUTPUT_DIR = Path(
    os.environ.get("PRODUCTFINDER_OUTPUT_DIR", str(_PROJECT_ROOT / "productfinder_data"))
)

# --- ログ ---
LOG_DIR = _PROJECT_ROOT / "logs"
