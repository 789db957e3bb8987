"""
Pydantic models for shelfsync
"""

from .record import (
    CanonicalRecord, Category, ContentKind, ItemHint, UserStatus,
    LIST_DELIMITER, join_values,
)
from .destination import DestinationField, FieldMappingRule, FieldType
from .job import (
    DelayPolicy, FeishuConfig, JobState, SyncConfig, SyncJob,
    SyncJobResponse, SyncRequest, TriggerType,
)

__all__ = [
    "CanonicalRecord", "Category", "ContentKind", "ItemHint", "UserStatus",
    "LIST_DELIMITER", "join_values",
    "DestinationField", "FieldMappingRule", "FieldType",
    "DelayPolicy", "FeishuConfig", "JobState", "SyncConfig", "SyncJob",
    "SyncJobResponse", "SyncRequest", "TriggerType",
]
