"""
Field Mapper & Coercer - CanonicalRecord -> Feishu `fields` payload.

Each content kind has a static rule set binding record attributes to
destination display names. Values are coerced per destination type; a
value that cannot be coerced is dropped and reported, never forced into
shape (no clamping of out-of-range ratings, no implicit select options).
"""

import logging
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from models.destination import DestinationField, FieldMappingRule, FieldType
from models.record import CanonicalRecord, ContentKind, UserStatus

logger = logging.getLogger("shelfsync")


class CoercionDropped(Exception):
    """A value failed coercion. Counted as a warning, never fails the item."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MappingRuleError(Exception):
    """Raised when a static rule set is internally inconsistent."""

    def __init__(self, display_name: str, reason: str):
        self.display_name = display_name
        self.reason = reason
        super().__init__(f"Invalid mapping rule '{display_name}': {reason}")


class DroppedField(BaseModel):
    attribute: str
    display_name: str
    value: Any = None
    reason: str


class MappingResult(BaseModel):
    fields: Dict[str, Any] = Field(default_factory=dict)
    dropped: List[DroppedField] = Field(default_factory=list)


# ── Status labels ────────────────────────────────────────────────────────────

BOOK_STATUS_LABELS = {
    UserStatus.WISH: "想读",
    UserStatus.DO: "在读",
    UserStatus.COLLECT: "读过",
}

SCREEN_STATUS_LABELS = {
    UserStatus.WISH: "想看",
    UserStatus.DO: "在看",
    UserStatus.COLLECT: "看过",
}

STATUS_LABELS = {
    ContentKind.BOOK: BOOK_STATUS_LABELS,
    ContentKind.MOVIE: SCREEN_STATUS_LABELS,
    ContentKind.TV: SCREEN_STATUS_LABELS,
    ContentKind.DOCUMENTARY: SCREEN_STATUS_LABELS,
}


def _text(attribute: str, display_name: str, wrap_text: bool = False) -> FieldMappingRule:
    return FieldMappingRule(
        attribute=attribute,
        display_name=display_name,
        value_type=FieldType.TEXT,
        wrap_text=wrap_text,
    )


def _annotation_rules(kind: ContentKind) -> List[FieldMappingRule]:
    """Columns every table carries: identity, ratings, status and the user's notes."""
    return [
        _text("external_id", "Subject ID"),
        FieldMappingRule(
            attribute="douban_rating", display_name="豆瓣评分",
            value_type=FieldType.NUMBER, min_value=0, max_value=10,
        ),
        FieldMappingRule(
            attribute="my_rating", display_name="我的评分",
            value_type=FieldType.RATING, min_value=1, max_value=5,
        ),
        FieldMappingRule(
            attribute="my_status", display_name="我的状态",
            value_type=FieldType.SINGLE_SELECT,
            options=tuple(STATUS_LABELS[kind].values()),
        ),
        _text("my_tags", "我的标签"),
        _text("my_comment", "我的备注"),
        FieldMappingRule(attribute="cover_image", display_name="封面图", value_type=FieldType.URL),
        FieldMappingRule(attribute="mark_date", display_name="标记日期", value_type=FieldType.DATETIME),
    ]


BOOK_RULES: Sequence[FieldMappingRule] = tuple(_annotation_rules(ContentKind.BOOK) + [
    _text("title", "书名"),
    _text("subtitle", "副标题"),
    _text("original_title", "原作名"),
    _text("authors", "作者"),
    _text("translators", "译者"),
    _text("publisher", "出版社"),
    _text("publish_date", "出版年份"),
    _text("summary", "内容简介", wrap_text=True),
])

MOVIE_RULES: Sequence[FieldMappingRule] = tuple(_annotation_rules(ContentKind.MOVIE) + [
    _text("title", "电影名"),
    _text("genres", "类型"),
    _text("duration", "片长"),
    _text("release_date", "上映日期"),
    _text("directors", "导演"),
    _text("writers", "编剧"),
    _text("cast", "主演"),
    _text("countries", "制片地区"),
    _text("languages", "语言"),
    _text("summary", "剧情简介", wrap_text=True),
])

TV_RULES: Sequence[FieldMappingRule] = tuple(_annotation_rules(ContentKind.TV) + [
    _text("title", "片名"),
    _text("genres", "类型"),
    _text("episode_duration", "单集片长"),
    _text("episodes", "集数"),
    _text("release_date", "首播日期"),
    _text("directors", "导演"),
    _text("writers", "编剧"),
    _text("cast", "主演"),
    _text("countries", "制片地区"),
    _text("languages", "语言"),
    _text("summary", "剧情简介", wrap_text=True),
])

RULES_BY_KIND = {
    ContentKind.BOOK: BOOK_RULES,
    ContentKind.MOVIE: MOVIE_RULES,
    ContentKind.TV: TV_RULES,
    ContentKind.DOCUMENTARY: TV_RULES,
}


def rules_for(kind: ContentKind) -> Sequence[FieldMappingRule]:
    return RULES_BY_KIND[kind]


def validate_rules(rules: Iterable[FieldMappingRule]) -> None:
    """
    Check a rule set for orphaned or contradictory rules.

    Raises:
        MappingRuleError: On the first inconsistency found.
    """
    known_attributes = set(CanonicalRecord.model_fields)
    seen_names = set()

    for rule in rules:
        if rule.attribute not in known_attributes:
            raise MappingRuleError(rule.display_name, f"unknown attribute '{rule.attribute}'")
        if not rule.display_name.strip():
            raise MappingRuleError(rule.display_name, "display name is blank")
        if rule.display_name in seen_names:
            raise MappingRuleError(rule.display_name, "display name is mapped twice")
        seen_names.add(rule.display_name)

        if rule.value_type == FieldType.SINGLE_SELECT:
            if not rule.options:
                raise MappingRuleError(rule.display_name, "single-select rule has no options")
        elif rule.options:
            raise MappingRuleError(rule.display_name, "options are only valid on single-select rules")

        if (
            rule.min_value is not None
            and rule.max_value is not None
            and rule.min_value > rule.max_value
        ):
            raise MappingRuleError(rule.display_name, "min_value exceeds max_value")


for _rules in (BOOK_RULES, MOVIE_RULES, TV_RULES):
    validate_rules(_rules)


# ── Coercion ─────────────────────────────────────────────────────────────────


def normalize_text(value: Any) -> str:
    """Collapse runs of spaces, strip each line and drop blank lines."""
    if isinstance(value, Enum):
        value = value.value
    lines = str(value).replace("\r\n", "\n").split("\n")
    cleaned = [re.sub(r"[ \t\u00a0\u3000]+", " ", line).strip() for line in lines]
    return "\n".join(line for line in cleaned if line)


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        raise CoercionDropped("boolean is not numeric")
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            raise CoercionDropped(f"'{value}' is not numeric")
    if not math.isfinite(number):
        raise CoercionDropped(f"'{value}' is not finite")
    return number


def _check_bounds(number: float, rule: FieldMappingRule) -> None:
    if rule.min_value is not None and number < rule.min_value:
        raise CoercionDropped(f"{number:g} is below minimum {rule.min_value:g}")
    if rule.max_value is not None and number > rule.max_value:
        raise CoercionDropped(f"{number:g} is above maximum {rule.max_value:g}")


def coerce_number(value: Any, rule: FieldMappingRule, **_) -> float:
    number = _to_number(value)
    _check_bounds(number, rule)
    return number


def coerce_rating(value: Any, rule: FieldMappingRule, **_) -> int:
    number = _to_number(value)
    _check_bounds(number, rule)
    if not number.is_integer():
        raise CoercionDropped(f"rating {number:g} is not a whole number")
    return int(number)


def coerce_single_select(
    value: Any,
    rule: FieldMappingRule,
    kind: Optional[ContentKind] = None,
    options: Optional[Sequence[str]] = None,
    **_,
) -> str:
    if isinstance(value, UserStatus) and kind is not None:
        value = STATUS_LABELS[kind][value]
    elif isinstance(value, Enum):
        value = value.value
    label = str(value).strip()
    permitted = options if options is not None else rule.options
    if label not in permitted:
        raise CoercionDropped(f"'{label}' is not one of {list(permitted)}")
    return label


_DATE_PATTERNS = [
    re.compile(
        r"^(\d{4})\s*[-/.年]\s*(\d{1,2})\s*[-/.月]\s*(\d{1,2})\s*日?"
        r"(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
    ),
    re.compile(r"^(\d{4})\s*[-/.年]\s*(\d{1,2})\s*月?$"),
    re.compile(r"^(\d{4})\s*年?$"),
]


def to_epoch_ms(value: Any) -> int:
    """Textual date -> epoch milliseconds (UTC). A bare year means January 1st."""
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(moment.timestamp() * 1000)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)

    text = str(value).strip()
    for pattern in _DATE_PATTERNS:
        match = pattern.match(text)
        if not match:
            continue
        groups = list(match.groups()) + [None] * (6 - len(match.groups()))
        year, month, day, hour, minute, second = (
            int(g) if g else default for g, default in zip(groups, (0, 1, 1, 0, 0, 0))
        )
        try:
            moment = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
        except ValueError as e:
            raise CoercionDropped(f"'{text}' is not a valid date: {e}")
        return int(moment.timestamp() * 1000)

    raise CoercionDropped(f"'{text}' is not a recognised date")


def coerce_datetime(value: Any, rule: FieldMappingRule, **_) -> int:
    return to_epoch_ms(value)


def coerce_url(value: Any, rule: FieldMappingRule, **_) -> dict:
    url = str(value).strip()
    if not (url.startswith("http://") or url.startswith("https://")):
        raise CoercionDropped(f"'{url}' is not an http(s) URL")
    return {"link": url}


def coerce_text(value: Any, rule: FieldMappingRule, **_) -> str:
    text = normalize_text(value)
    if not text:
        raise CoercionDropped("empty after whitespace normalization")
    return text


COERCERS = {
    FieldType.TEXT: coerce_text,
    FieldType.NUMBER: coerce_number,
    FieldType.RATING: coerce_rating,
    FieldType.SINGLE_SELECT: coerce_single_select,
    FieldType.DATETIME: coerce_datetime,
    FieldType.URL: coerce_url,
}


# ── Entry point ──────────────────────────────────────────────────────────────


def map_record(
    record: CanonicalRecord,
    rules: Optional[Sequence[FieldMappingRule]] = None,
    destination_fields: Optional[Dict[str, DestinationField]] = None,
) -> MappingResult:
    """
    Build the destination `fields` dict for one record.

    Absent attributes emit no key. When `destination_fields` (keyed by
    display name) is given, rules for columns the table lacks are dropped,
    and single-select values must also be options the live column has.
    """
    rules = rules if rules is not None else rules_for(record.kind)
    result = MappingResult()

    for rule in rules:
        value = getattr(record, rule.attribute, None)
        if value is None or value == "":
            continue

        options = None
        if destination_fields is not None:
            column = destination_fields.get(rule.display_name)
            if column is None:
                _drop(result, record, rule, value, "destination table has no such column")
                continue
            if rule.value_type == FieldType.SINGLE_SELECT and column.options:
                options = [o for o in rule.options if o in column.options]

        try:
            result.fields[rule.display_name] = COERCERS[rule.value_type](
                value, rule, kind=record.kind, options=options,
            )
        except CoercionDropped as e:
            _drop(result, record, rule, value, e.reason)

    return result


def _drop(result: MappingResult, record: CanonicalRecord, rule: FieldMappingRule, value, reason: str):
    if isinstance(value, Enum):
        value = value.value
    result.dropped.append(DroppedField(
        attribute=rule.attribute,
        display_name=rule.display_name,
        value=value,
        reason=reason,
    ))
    logger.warning(
        "Field dropped during mapping",
        extra={
            "event": "mapping_field_dropped",
            "external_id": record.external_id,
            "field": rule.display_name,
            "reason": reason,
        },
    )
