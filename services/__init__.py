"""
Services for shelfsync
"""

from .fetcher import RateLimitedFetcher
from .feishu_client import FeishuClient
from .sync_orchestrator import SyncOrchestrator

__all__ = [
    "RateLimitedFetcher",
    "FeishuClient",
    "SyncOrchestrator",
]
