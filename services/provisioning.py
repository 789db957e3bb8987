"""
Schema provisioning - creates the destination columns a rule set needs.

Runs before sync jobs, never during one. Idempotent: columns that already
exist are left alone, and a column whose type or options differ from its
rule is reported, not changed.
"""

import logging
import time
from typing import List

from pydantic import BaseModel, Field

from models.destination import FEISHU_TYPE_CODES, DestinationField, FieldMappingRule, FieldType
from models.record import ContentKind
from services.feishu_client import FeishuClient
from services.mapper import rules_for

logger = logging.getLogger("shelfsync")

# Feishu select colors, one per lifecycle status
SELECT_COLORS = (5, 4, 0)


class FieldMismatch(BaseModel):
    display_name: str
    reason: str


class ProvisionReport(BaseModel):
    table_id: str
    kind: ContentKind
    created: List[str] = Field(default_factory=list)
    existing: List[str] = Field(default_factory=list)
    mismatched: List[FieldMismatch] = Field(default_factory=list)


def field_payload(rule: FieldMappingRule) -> dict:
    """Request body for creating the column a rule writes to."""
    payload = {
        "field_name": rule.display_name,
        "type": FEISHU_TYPE_CODES[rule.value_type],
    }

    if rule.value_type == FieldType.RATING:
        payload["ui_type"] = "Rating"
        payload["property"] = {
            "formatter": "0",
            "min": int(rule.min_value if rule.min_value is not None else 1),
            "max": int(rule.max_value if rule.max_value is not None else 5),
            "rating": {"symbol": "star"},
        }
    elif rule.value_type == FieldType.NUMBER:
        prop = {"precision": 1}
        if rule.min_value is not None or rule.max_value is not None:
            prop["range"] = {"min": rule.min_value, "max": rule.max_value}
        payload["property"] = prop
    elif rule.value_type == FieldType.SINGLE_SELECT:
        payload["property"] = {
            "options": [
                {"name": name, "color": SELECT_COLORS[i % len(SELECT_COLORS)]}
                for i, name in enumerate(rule.options)
            ],
        }
    elif rule.value_type == FieldType.DATETIME:
        payload["property"] = {"date_formatter": "yyyy/MM/dd", "auto_fill": False}

    return payload


def _mismatch(rule: FieldMappingRule, column: DestinationField):
    if column.value_type != rule.value_type:
        actual = column.value_type.value if column.value_type else "unsupported"
        return f"type is {actual}, expected {rule.value_type.value}"
    if rule.value_type == FieldType.SINGLE_SELECT and set(column.options) != set(rule.options):
        return f"options are {sorted(column.options)}, expected {sorted(rule.options)}"
    return None


async def ensure_fields(client: FeishuClient, table_id: str, kind: ContentKind) -> ProvisionReport:
    """Create every column the kind's rule set needs that the table lacks."""
    start = time.time()
    report = ProvisionReport(table_id=table_id, kind=kind)
    columns = {f.display_name: f for f in await client.list_fields(table_id)}

    for rule in rules_for(kind):
        column = columns.get(rule.display_name)
        if column is None:
            created = await client.create_field(table_id, field_payload(rule))
            columns[rule.display_name] = created
            report.created.append(rule.display_name)
            logger.info(
                "Field created",
                extra={"event": "provision_field_created", "table_id": table_id,
                       "field": rule.display_name, "type": rule.value_type.value},
            )
            continue

        report.existing.append(rule.display_name)
        reason = _mismatch(rule, column)
        if reason:
            report.mismatched.append(FieldMismatch(display_name=rule.display_name, reason=reason))
            logger.warning(
                "Field differs from its mapping rule",
                extra={"event": "provision_field_mismatch", "table_id": table_id,
                       "field": rule.display_name, "reason": reason},
            )

    duration_ms = round((time.time() - start) * 1000, 2)
    logger.info(
        "Provisioning complete",
        extra={
            "event": "provision_complete",
            "table_id": table_id,
            "kind": kind.value,
            "fields_created": len(report.created),
            "fields_existing": len(report.existing),
            "fields_mismatched": len(report.mismatched),
            "duration_ms": duration_ms,
        },
    )
    return report
