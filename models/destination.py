"""
Destination schema models - Feishu Bitable columns and the static rules
that bind canonical attributes to them.
"""

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    """Destination value types the pipeline knows how to write."""
    TEXT = "text"
    NUMBER = "number"
    RATING = "rating"
    SINGLE_SELECT = "single_select"
    DATETIME = "datetime"
    URL = "url"


# Feishu numeric field type codes
FEISHU_TYPE_CODES = {
    FieldType.TEXT: 1,
    FieldType.NUMBER: 2,
    FieldType.RATING: 2,
    FieldType.SINGLE_SELECT: 3,
    FieldType.DATETIME: 5,
    FieldType.URL: 15,
}


class DestinationField(BaseModel):
    """One column of the destination table, as reported by the fields endpoint."""
    field_id: str = ""
    display_name: str
    value_type: Optional[FieldType] = Field(
        default=None,
        description="None when the column type is one the pipeline never writes",
    )
    options: Tuple[str, ...] = ()
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    is_primary: bool = False


class FieldMappingRule(BaseModel):
    """Binds one CanonicalRecord attribute to one destination column."""
    model_config = ConfigDict(frozen=True)

    attribute: str
    display_name: str
    value_type: FieldType
    options: Tuple[str, ...] = ()
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    wrap_text: bool = False

    def to_destination_field(self) -> DestinationField:
        return DestinationField(
            display_name=self.display_name,
            value_type=self.value_type,
            options=self.options,
            min_value=self.min_value,
            max_value=self.max_value,
        )
