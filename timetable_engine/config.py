# timetable_engine/config.py
"""
エンジン設定モジュール

環境変数（.env があれば main.py 側で load_dotenv 済み）から Settings を組み立てる。
テストでは Settings(...) を直接生成して差し込む。
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import List, Literal

from pydantic import BaseModel

# プロジェクトルートの timetable.db を既定値とする
BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_DATABASE_URL = f"sqlite:///{BASE_DIR / 'timetable.db'}"

CycleTieBreak = Literal["keep_first_seen", "keep_last_seen"]


class Settings(BaseModel):
    """エンジン全体の設定"""
    database_url: str = DEFAULT_DATABASE_URL
    # 24:00:00 以降の深夜便を許容する上限（時間）。これを超える入力は不正とみなす
    max_service_hours: int = 48
    # 循環を切るときの同数タイブレーク
    cycle_tie_break: CycleTieBreak = "keep_first_seen"
    frontend_urls: List[str] = ["http://localhost:5173"]
    log_level: str = "INFO"


def _split_origins(raw: str) -> List[str]:
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def load_settings() -> Settings:
    """環境変数から Settings を生成する（未設定の項目は既定値）"""
    values = {}

    db_url = os.getenv("TIMETABLE_DB_URL", "").strip()
    if db_url:
        values["database_url"] = db_url

    max_hours = os.getenv("MAX_SERVICE_HOURS", "").strip()
    if max_hours:
        values["max_service_hours"] = int(max_hours)

    tie_break = os.getenv("CYCLE_TIE_BREAK", "").strip()
    if tie_break:
        values["cycle_tie_break"] = tie_break

    origins = os.getenv("FRONTEND_URL", "").strip()
    if origins:
        values["frontend_urls"] = _split_origins(origins)

    log_level = os.getenv("LOG_LEVEL", "").strip()
    if log_level:
        values["log_level"] = log_level.upper()

    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()
