"""
Centralized configuration for shelfsync.

All environment variables are loaded here and exported as a singleton
Settings instance. Import `settings` from this module. Only the API
wiring in main.py and the scripts read it; services receive a SyncConfig.
"""

import os

from dotenv import load_dotenv

from models.job import DelayPolicy, FeishuConfig, SyncConfig
from models.record import ContentKind

load_dotenv()


class Settings:
    """Application settings loaded from environment variables."""

    def __init__(self):
        self.APP_ENV = os.getenv("APP_ENV", "development")

        self.FEISHU_APP_ID = os.getenv("FEISHU_APP_ID", "")
        self.FEISHU_APP_SECRET = os.getenv("FEISHU_APP_SECRET", "")
        self.FEISHU_APP_TOKEN = os.getenv("FEISHU_APP_TOKEN", "")
        self.FEISHU_TABLE_BOOKS = os.getenv("FEISHU_TABLE_BOOKS", "")
        self.FEISHU_TABLE_MOVIES = os.getenv("FEISHU_TABLE_MOVIES", "")
        self.FEISHU_TABLE_TV = os.getenv("FEISHU_TABLE_TV", "")
        self.FEISHU_TABLE_DOCUMENTARY = os.getenv("FEISHU_TABLE_DOCUMENTARY", "")

        self.DOUBAN_COOKIE = os.getenv("DOUBAN_COOKIE", "")

        self.FETCH_BASE_DELAY_MS = int(os.getenv("FETCH_BASE_DELAY_MS", "4000"))
        self.FETCH_JITTER_MS = int(os.getenv("FETCH_JITTER_MS", "4000"))
        self.FETCH_SLOW_THRESHOLD = int(os.getenv("FETCH_SLOW_THRESHOLD", "200"))
        self.FETCH_SLOW_BASE_DELAY_MS = int(os.getenv("FETCH_SLOW_BASE_DELAY_MS", "10000"))
        self.FETCH_SLOW_JITTER_MS = int(os.getenv("FETCH_SLOW_JITTER_MS", "5000"))
        self.FETCH_MAX_RETRIES = int(os.getenv("FETCH_MAX_RETRIES", "3"))

        self.MAX_CONCURRENT_JOBS = int(os.getenv("MAX_CONCURRENT_JOBS", "2"))

        self.CONTRACT_LOG_DIR = os.getenv("CONTRACT_LOG_DIR", os.path.join("logs", "contract-failures"))
        self.MONGO_URI = os.getenv("MONGO_URI", "")
        self.DATABASE_NAME = os.getenv("DATABASE_NAME", "shelfsync")

    def table_ids(self) -> dict:
        tables = {
            ContentKind.BOOK: self.FEISHU_TABLE_BOOKS,
            ContentKind.MOVIE: self.FEISHU_TABLE_MOVIES,
            ContentKind.TV: self.FEISHU_TABLE_TV,
            ContentKind.DOCUMENTARY: self.FEISHU_TABLE_DOCUMENTARY,
        }
        return {kind: table_id for kind, table_id in tables.items() if table_id}

    def to_sync_config(self) -> SyncConfig:
        """Snapshot the current settings for one job."""
        return SyncConfig(
            feishu=FeishuConfig(
                app_id=self.FEISHU_APP_ID,
                app_secret=self.FEISHU_APP_SECRET,
                app_token=self.FEISHU_APP_TOKEN,
                table_ids=self.table_ids(),
            ),
            delay=DelayPolicy(
                base_ms=self.FETCH_BASE_DELAY_MS,
                jitter_ms=self.FETCH_JITTER_MS,
                slow_threshold=self.FETCH_SLOW_THRESHOLD,
                slow_base_ms=self.FETCH_SLOW_BASE_DELAY_MS,
                slow_jitter_ms=self.FETCH_SLOW_JITTER_MS,
                max_retries=self.FETCH_MAX_RETRIES,
            ),
            douban_cookie=self.DOUBAN_COOKIE,
        )


settings = Settings()
