"""
Contract Validator - Structural checks on every Feishu API response.

Strict mode (development, tests) raises on the first mismatch so API drift
surfaces immediately. Soft mode (production) appends a ContractFailureRecord
to a day-partitioned JSON-lines file and hands the raw payload back, so a
long sync keeps going over a cosmetic change in one endpoint.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Type

from pydantic import BaseModel, ValidationError

from models.contract import (
    ContractFailureRecord,
    ContractStats,
    DailyFailureStats,
    LastFailure,
)

logger = logging.getLogger("shelfsync")

DEFAULT_LOG_DIR = Path("logs") / "contract-failures"


class ContractMismatchError(Exception):
    """Raised in strict mode when a response does not match its expected shape."""

    def __init__(self, endpoint: str, errors: list):
        self.endpoint = endpoint
        self.errors = errors
        summary = "; ".join(_format_error(e) for e in errors[:3])
        super().__init__(f"Contract mismatch on '{endpoint}': {summary}")


def _format_error(error: Any) -> str:
    if isinstance(error, dict):
        loc = ".".join(str(part) for part in error.get("loc", ())) or "<root>"
        return f"{loc}: {error.get('msg', '')}"
    return str(error)


def failure_log_path(log_dir: Path, day: Optional[datetime] = None) -> Path:
    day = day or datetime.now(timezone.utc)
    return Path(log_dir) / f"contract-failures-{day.strftime('%Y-%m-%d')}.json"


class ContractValidator:
    """
    Validates raw destination responses against pydantic schemas.

    One instance is shared by a client; its counters cover every call made
    through it.
    """

    def __init__(self, strict: bool = True, log_dir: Path = DEFAULT_LOG_DIR):
        self.strict = strict
        self.log_dir = Path(log_dir)
        self._stats = ContractStats()

    @classmethod
    def for_environment(cls, environment: str, log_dir: Path = DEFAULT_LOG_DIR) -> "ContractValidator":
        """Soft mode in production, strict everywhere else."""
        return cls(strict=(environment or "").lower() != "production", log_dir=log_dir)

    @property
    def stats(self) -> ContractStats:
        return self._stats.model_copy(deep=True)

    def reset_stats(self):
        self._stats = ContractStats()

    def validate(self, raw: Any, schema: Type[BaseModel], endpoint: str) -> Any:
        """
        Validate one response payload.

        Returns:
            The validated payload as a dict, or in soft mode on mismatch,
            the raw payload unchanged.

        Raises:
            ContractMismatchError: On mismatch in strict mode.
        """
        self._stats.total_validations += 1

        try:
            validated = schema.model_validate(raw)
        except ValidationError as e:
            errors = e.errors(include_url=False, include_context=False)
            return self._handle_failure(raw, endpoint, errors)

        self._stats.success_count += 1
        return validated.model_dump()

    def _handle_failure(self, raw: Any, endpoint: str, errors: list) -> Any:
        now = datetime.now(timezone.utc)
        self._stats.failure_count += 1
        self._stats.last_failure = LastFailure(
            endpoint=endpoint,
            error=_format_error(errors[0]) if errors else "unknown",
            timestamp=now.isoformat(),
        )

        logger.error(
            "Destination API contract mismatch",
            extra={
                "event": "contract_mismatch",
                "endpoint": endpoint,
                "strict": self.strict,
                "errors": [_format_error(e) for e in errors],
            },
        )

        if self.strict:
            raise ContractMismatchError(endpoint, errors)

        self._append_failure(ContractFailureRecord(
            timestamp=now.isoformat(),
            endpoint=endpoint,
            errors=errors,
            actual_data=raw,
        ), now)
        return raw

    def _append_failure(self, record: ContractFailureRecord, now: datetime):
        """One JSON object per line; concurrent jobs rely on append semantics."""
        path = failure_log_path(self.log_dir, now)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record.model_dump(), ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            logger.warning(
                "Failed to write contract failure record",
                extra={"event": "contract_log_write_failed", "path": str(path), "error": str(e)},
            )

    def get_today_failure_stats(self) -> DailyFailureStats:
        """Summarize today's failure file. Operational tooling only."""
        path = failure_log_path(self.log_dir)
        if not path.exists():
            return DailyFailureStats()

        endpoints = []
        latest = None
        total = 0
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except ValueError:
                    continue
                total += 1
                endpoint = entry.get("endpoint")
                if endpoint and endpoint not in endpoints:
                    endpoints.append(endpoint)
                timestamp = entry.get("timestamp")
                if timestamp and (latest is None or timestamp > latest):
                    latest = timestamp

        return DailyFailureStats(
            total_failures=total,
            affected_endpoints=endpoints,
            latest_failure_time=latest,
        )
