"""
Sync job models - Request/response schemas and per-job configuration.

SyncConfig is built once at job creation and handed to the orchestrator;
services never read process settings directly.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.record import Category, ContentKind, UserStatus


class JobState(str, Enum):
    """Lifecycle state of a sync job."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

ALLOWED_TRANSITIONS = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.CANCELLED, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED}),
}


class TriggerType(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class ItemOutcome(str, Enum):
    WRITTEN = "written"
    SKIPPED = "skipped"
    FAILED = "failed"


class DelayPolicy(BaseModel):
    """Anti-bot delay schedule for one fetcher. All values in milliseconds."""
    model_config = ConfigDict(frozen=True)

    base_ms: int = Field(default=4000, ge=0)
    jitter_ms: int = Field(default=4000, ge=0)
    slow_threshold: int = Field(
        default=200,
        ge=0,
        description="Request count after which the slow schedule applies",
    )
    slow_base_ms: int = Field(default=10000, ge=0)
    slow_jitter_ms: int = Field(default=5000, ge=0)
    retry_base_ms: int = Field(default=5000, ge=0)
    retry_jitter_ms: int = Field(default=5000, ge=0)
    max_retries: int = Field(default=3, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)


class FeishuConfig(BaseModel):
    """Credentials and table routing for the destination Bitable."""
    model_config = ConfigDict(frozen=True)

    app_id: str
    app_secret: str
    app_token: str
    table_ids: Dict[ContentKind, str] = Field(default_factory=dict)
    id_field_name: str = "Subject ID"

    def route(self, kind: ContentKind) -> Tuple[Optional[str], ContentKind]:
        """
        Table id for a content kind, plus the kind whose columns that table has.

        tv and documentary fall back to the movies table when they have no
        table of their own, and are then written with the movie columns.
        """
        table_id = self.table_ids.get(kind)
        if table_id:
            return table_id, kind
        if kind in (ContentKind.TV, ContentKind.DOCUMENTARY):
            return self.table_ids.get(ContentKind.MOVIE), ContentKind.MOVIE
        return None, kind

    def table_for(self, kind: ContentKind) -> Optional[str]:
        return self.route(kind)[0]


class SyncConfig(BaseModel):
    """Everything one sync job needs to know about the outside world."""
    model_config = ConfigDict(frozen=True)

    feishu: FeishuConfig
    delay: DelayPolicy = Field(default_factory=DelayPolicy)
    douban_cookie: str = ""


class SyncRequest(BaseModel):
    """Request body for enqueueing a sync job."""
    user_id: str = Field(..., min_length=1, description="Douban user id or slug")
    categories: List[Category] = Field(default_factory=lambda: [Category.BOOKS])
    statuses: List[UserStatus] = Field(
        default_factory=lambda: [UserStatus.WISH, UserStatus.DO, UserStatus.COLLECT],
    )
    subject_ids: List[str] = Field(
        default_factory=list,
        description="Explicit subject ids to sync instead of enumerating the library",
    )
    limit: Optional[int] = Field(default=None, ge=1, le=5000)
    trigger_type: TriggerType = TriggerType.MANUAL

    @model_validator(mode="after")
    def _check_scope(self):
        if not self.categories:
            raise ValueError("at least one category is required")
        if not self.statuses and not self.subject_ids:
            raise ValueError("statuses or subject_ids must be provided")
        return self


class SyncJob(BaseModel):
    """Full status of a sync job (for the polling endpoint and history)."""
    job_id: str
    user_id: str
    request: SyncRequest
    state: JobState = JobState.QUEUED
    items_seen: int = 0
    items_written: int = 0
    items_skipped: int = 0
    items_failed: int = 0
    fields_dropped: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def items_processed(self) -> int:
        return self.items_written + self.items_skipped + self.items_failed

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SyncJobResponse(BaseModel):
    """Response from enqueueing a sync job."""
    job_id: str
    state: JobState = JobState.QUEUED
    stream_url: str
    status_url: str
