"""
Feishu Bitable client - the destination REST API.

Covers tenant token auth (cached until shortly before expiry), table schema
introspection, the paged existing-id index, single-record creation and the
field-creation call used by provisioning. Every response passes through
the ContractValidator before anything reads it.

Records are written one at a time through the single-record endpoint. The
batch endpoint resolves field names differently for dynamically created
columns and fails with "field not found" where the single endpoint works.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Set, Type

import httpx
from pydantic import BaseModel

from models.contract import (
    FieldCreateResponse,
    FieldListResponse,
    RecordCreateResponse,
    RecordSearchResponse,
    TokenResponse,
)
from models.destination import DestinationField, FieldType
from models.job import FeishuConfig
from services.contract_validator import ContractValidator

logger = logging.getLogger("shelfsync")

FEISHU_BASE_URL = "https://open.feishu.cn"
TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
TOKEN_REFRESH_BUFFER_SECONDS = 300
SEARCH_PAGE_SIZE = 500
FIELD_PAGE_SIZE = 100

# Tenant token expired or invalid
TOKEN_INVALID_CODES = {99991661, 99991663, 99991668}


class FeishuAPIError(Exception):
    """Raised on transport errors, non-2xx responses or a non-zero Feishu code."""

    def __init__(self, status_code: int, code: Optional[int], message: str):
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(f"Feishu API error (HTTP {status_code}, code {code}): {message}")


def _field_from_item(item: dict) -> DestinationField:
    """Translate one raw field-list item into a DestinationField."""
    field_type = item.get("type")
    ui_type = item.get("ui_type")
    prop = item.get("property") or {}

    value_type = None
    if field_type == 1:
        value_type = FieldType.TEXT
    elif field_type == 2:
        value_type = FieldType.RATING if (ui_type == "Rating" or "rating" in prop) else FieldType.NUMBER
    elif field_type == 3:
        value_type = FieldType.SINGLE_SELECT
    elif field_type == 5:
        value_type = FieldType.DATETIME
    elif field_type == 15:
        value_type = FieldType.URL

    options = tuple(
        o.get("name") for o in (prop.get("options") or []) if isinstance(o, dict) and o.get("name")
    )

    return DestinationField(
        field_id=item.get("field_id", ""),
        display_name=item.get("field_name", ""),
        value_type=value_type,
        options=options,
        min_value=prop.get("min"),
        max_value=prop.get("max"),
        is_primary=bool(item.get("is_primary", False)),
    )


def cell_text(value: Any) -> Optional[str]:
    """Plain text of a record cell; text cells come back as rich-text segments."""
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, list):
        parts = [cell_text(part) for part in value]
        text = "".join(p for p in parts if p)
        return text.strip() or None
    if isinstance(value, dict):
        return cell_text(value.get("text") or value.get("link"))
    return None


class FeishuClient:
    """Async client for one Bitable app."""

    def __init__(
        self,
        config: FeishuConfig,
        validator: ContractValidator,
        base_url: str = FEISHU_BASE_URL,
        timeout: float = 30.0,
    ):
        self._config = config
        self._validator = validator
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def validator(self) -> ContractValidator:
        return self._validator

    def _table_path(self, table_id: str) -> str:
        return f"/open-apis/bitable/v1/apps/{self._config.app_token}/tables/{table_id}"

    # ── Auth ──────────────────────────────────────────────────────────────

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """Return a cached tenant token, fetching a new one near expiry."""
        if not force_refresh and self._token and time.time() < self._token_expires_at:
            return self._token

        data = await self._call(
            "POST",
            TOKEN_PATH,
            endpoint="auth.tenant_access_token",
            schema=TokenResponse,
            body={"app_id": self._config.app_id, "app_secret": self._config.app_secret},
            auth=False,
        )

        token = data.get("tenant_access_token")
        if not token:
            raise FeishuAPIError(200, data.get("code"), "token missing from auth response")

        expire = data.get("expire") or 0
        self._token = token
        self._token_expires_at = time.time() + max(int(expire) - TOKEN_REFRESH_BUFFER_SECONDS, 0)

        logger.info(
            "Feishu tenant token refreshed",
            extra={"event": "feishu_token_refreshed", "expire": expire},
        )
        return token

    def invalidate_token(self):
        self._token = None
        self._token_expires_at = 0.0

    # ── Schema ────────────────────────────────────────────────────────────

    async def list_fields(self, table_id: str) -> List[DestinationField]:
        """All columns of a table, following page tokens."""
        fields = []
        page_token = None

        while True:
            params = {"page_size": FIELD_PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token

            data = await self._call(
                "GET",
                f"{self._table_path(table_id)}/fields",
                endpoint="bitable.fields.list",
                schema=FieldListResponse,
                params=params,
            )
            block = data.get("data") or {}
            fields.extend(_field_from_item(item) for item in block.get("items") or [])

            page_token = block.get("page_token")
            if not block.get("has_more") or not page_token:
                break

        return fields

    async def create_field(self, table_id: str, payload: dict) -> DestinationField:
        """Create one column. Used by provisioning only, never during a sync."""
        data = await self._call(
            "POST",
            f"{self._table_path(table_id)}/fields",
            endpoint="bitable.fields.create",
            schema=FieldCreateResponse,
            body=payload,
        )
        item = (data.get("data") or {}).get("field") or {}
        return _field_from_item(item)

    # ── Records ───────────────────────────────────────────────────────────

    async def get_existing_ids(self, table_id: str, id_field_name: Optional[str] = None) -> Set[str]:
        """Every subject id already present in a table, read page by page."""
        id_field_name = id_field_name or self._config.id_field_name
        start = time.time()
        existing = set()
        page_token = None
        pages = 0

        while True:
            params = {"page_size": SEARCH_PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token

            data = await self._call(
                "POST",
                f"{self._table_path(table_id)}/records/search",
                endpoint="bitable.records.search",
                schema=RecordSearchResponse,
                body={"field_names": [id_field_name]},
                params=params,
            )
            pages += 1
            block = data.get("data") or {}
            for item in block.get("items") or []:
                subject_id = cell_text((item.get("fields") or {}).get(id_field_name))
                if subject_id:
                    existing.add(subject_id)

            page_token = block.get("page_token")
            if not block.get("has_more") or not page_token:
                break

        duration_ms = round((time.time() - start) * 1000, 2)
        logger.info(
            "Existing record index loaded",
            extra={"event": "feishu_index_loaded", "table_id": table_id,
                   "records": len(existing), "pages": pages, "duration_ms": duration_ms},
        )
        return existing

    async def create_record(self, table_id: str, fields: Dict[str, Any]) -> str:
        """Create one row and return its record id."""
        data = await self._call(
            "POST",
            f"{self._table_path(table_id)}/records",
            endpoint="bitable.records.create",
            schema=RecordCreateResponse,
            body={"fields": fields},
        )
        record = (data.get("data") or {}).get("record") or {}
        return record.get("record_id", "")

    # ── Transport ─────────────────────────────────────────────────────────

    async def _call(
        self,
        method: str,
        path: str,
        endpoint: str,
        schema: Type[BaseModel],
        body: Optional[dict] = None,
        params: Optional[dict] = None,
        auth: bool = True,
    ) -> dict:
        """Send, validate and check one request; retry once on an expired token."""
        data = await self._send(method, path, endpoint, schema, body, params, auth)

        if auth and data.get("code") in TOKEN_INVALID_CODES:
            logger.info(
                "Feishu token rejected, refreshing",
                extra={"event": "feishu_token_rejected", "endpoint": endpoint},
            )
            self.invalidate_token()
            data = await self._send(method, path, endpoint, schema, body, params, auth)

        code = data.get("code")
        if code != 0:
            message = str(data.get("msg", "unknown error"))
            logger.error(
                "Feishu API returned an error",
                extra={"event": "feishu_api_error", "endpoint": endpoint,
                       "code": code, "error": message},
            )
            raise FeishuAPIError(200, code, message)

        return data

    async def _send(
        self,
        method: str,
        path: str,
        endpoint: str,
        schema: Type[BaseModel],
        body: Optional[dict],
        params: Optional[dict],
        auth: bool,
    ) -> dict:
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if auth:
            headers["Authorization"] = f"Bearer {await self.get_access_token()}"

        try:
            async with httpx.AsyncClient() as client:
                resp = await client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=body,
                    params=params,
                    headers=headers,
                    timeout=self._timeout,
                )
        except httpx.HTTPError as e:
            logger.error(
                "Feishu request failed",
                extra={"event": "feishu_request_failed", "endpoint": endpoint, "error": str(e)},
            )
            raise FeishuAPIError(0, None, str(e))

        try:
            raw = resp.json()
        except ValueError:
            raise FeishuAPIError(resp.status_code, None, resp.text[:500])

        # Feishu reports business errors as 4xx with a JSON envelope
        data = self._validator.validate(raw, schema, endpoint)
        if not isinstance(data, dict):
            raise FeishuAPIError(resp.status_code, None, "response body is not an object")

        if resp.status_code >= 400 and data.get("code") in (0, None):
            raise FeishuAPIError(resp.status_code, None, resp.text[:500])

        return data
