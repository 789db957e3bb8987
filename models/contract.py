"""
Contract models - expected shapes of Feishu Open API responses, plus the
failure record written when a response does not match.

Every Feishu response carries `code` and `msg`; a missing `msg` is a
contract break even when `code` is 0. The `data` block is only required
on success, since error responses (code != 0) omit it.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, Field, model_validator


class FeishuEnvelope(BaseModel):
    code: int
    msg: str


class TokenResponse(FeishuEnvelope):
    tenant_access_token: Optional[str] = None
    expire: Optional[int] = None

    @model_validator(mode="after")
    def _require_token_on_success(self):
        if self.code == 0 and (not self.tenant_access_token or not self.expire):
            raise ValueError("tenant_access_token and expire are required when code is 0")
        return self


class FeishuDataResponse(FeishuEnvelope):
    """Envelope whose `data` block is mandatory when code is 0."""

    @model_validator(mode="after")
    def _require_data_on_success(self):
        if self.code == 0 and getattr(self, "data", None) is None:
            raise ValueError("data is required when code is 0")
        return self


class FeishuFieldItem(BaseModel):
    field_id: str
    field_name: str
    type: int
    ui_type: Optional[str] = None
    is_primary: bool = False
    property: Optional[dict] = None


class FieldListData(BaseModel):
    items: Optional[List[FeishuFieldItem]] = Field(default_factory=list)
    has_more: bool = False
    page_token: Optional[str] = None
    total: int = 0


class FieldListResponse(FeishuDataResponse):
    data: Optional[FieldListData] = None


class RecordItem(BaseModel):
    record_id: str
    fields: dict = Field(default_factory=dict)


class RecordSearchData(BaseModel):
    items: Optional[List[RecordItem]] = Field(default_factory=list)
    has_more: bool = False
    page_token: Optional[str] = None
    total: Optional[int] = None


class RecordSearchResponse(FeishuDataResponse):
    data: Optional[RecordSearchData] = None


class RecordCreateData(BaseModel):
    record: RecordItem


class RecordCreateResponse(FeishuDataResponse):
    data: Optional[RecordCreateData] = None


class FieldCreateData(BaseModel):
    field: FeishuFieldItem


class FieldCreateResponse(FeishuDataResponse):
    data: Optional[FieldCreateData] = None


class ContractFailureRecord(BaseModel):
    """One line of the day-partitioned contract failure log."""
    timestamp: str
    endpoint: str
    errors: List[Any]
    actual_data: Any


class LastFailure(BaseModel):
    endpoint: str
    error: str
    timestamp: str


class ContractStats(BaseModel):
    total_validations: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_failure: Optional[LastFailure] = None


class DailyFailureStats(BaseModel):
    total_failures: int = 0
    affected_endpoints: List[str] = Field(default_factory=list)
    latest_failure_time: Optional[str] = None
