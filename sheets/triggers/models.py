# sheets/triggers/models.py
from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TriggerType(str, Enum):
    """When a rule fires relative to the timestamp field value."""

    BEFORE = "BEFORE"
    EXACT = "EXACT"
    AFTER = "AFTER"


class TriggerStrategy(str, Enum):
    """How a data stream decides to call its webhook."""

    EVENT_BASED = "EVENT_BASED"
    TIME_BASED = "TIME_BASED"


class TriggerState(str, Enum):
    """Lifecycle of a scheduled trigger."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    FIRED = "FIRED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RecordEventType(str, Enum):
    """Record mutations that can (re)schedule triggers."""

    CREATE_RECORD = "create_record"
    UPDATE_RECORD = "update_record"
    DELETE_RECORD = "delete_record"


class CancelReason(str, Enum):
    """Reason codes written to last_error when a trigger is cancelled at fire time."""

    DATA_STREAM_DELETED = "DATA_STREAM_DELETED"
    NO_VIEWS_FOUND = "NO_VIEWS_FOUND"
    RECORD_DELETED_OR_INACTIVE = "RECORD_DELETED_OR_INACTIVE"
    FIELD_DELETED = "FIELD_DELETED"
    FIELD_INACTIVE = "FIELD_INACTIVE"
    TIMESTAMP_NULL = "TIMESTAMP_NULL"
    TIMESTAMP_CHANGED = "TIMESTAMP_CHANGED"
    VALIDATION_ERROR = "VALIDATION_ERROR"


ACTIVE = "active"
INACTIVE = "inactive"

# Field types whose cell value is a point in time
TIMESTAMP_FIELD_TYPES = frozenset({"DATE", "CREATED_TIME"})


class TriggerConfigError(ValueError):
    """Raised when a submitted trigger rule set cannot be accepted."""


class TriggerRule(BaseModel):
    """A time-based firing rule as submitted in a data stream's trigger config."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = Field(None, description="Existing rule id; omit to create a new rule")
    field_id: int = Field(..., description="Timestamp field the rule watches")
    type: TriggerType
    offset_minutes: int = Field(0, ge=0, description="Minutes before/after the timestamp")
    name: Optional[str] = Field(None, description="Display name")

    @model_validator(mode="after")
    def validate_offset(self) -> "TriggerRule":
        """BEFORE and AFTER rules need a positive offset."""
        if self.type in (TriggerType.BEFORE, TriggerType.AFTER) and self.offset_minutes <= 0:
            raise ValueError("offset_minutes must be greater than 0 for BEFORE and AFTER trigger types")
        return self

    def dedup_key(self) -> tuple[int, TriggerType, int]:
        offset = 0 if self.type == TriggerType.EXACT else self.offset_minutes
        return self.field_id, self.type, offset


class RecordEvent(BaseModel):
    """A record mutation notification from the table service."""

    table_id: str
    record_ids: List[int] = Field(default_factory=list)
    event_type: RecordEventType
    updated_field_ids: List[int] = Field(default_factory=list)
    # Backfill scoping
    data_stream_id: Optional[str] = None
    trigger_schedule_id: Optional[str] = None


class FieldInfo(BaseModel):
    """Field metadata as returned by the field catalog."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    db_field_name: str
    status: str = ACTIVE
    table_id: Optional[str] = None


class TableInfo(BaseModel):
    """Table metadata as returned by the table catalog."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    base_id: str
    db_table_name: str


def calculate_scheduled_time(
    timestamp: Optional[datetime], trigger_type: TriggerType, offset_minutes: int = 0
) -> datetime:
    """
    Compute when a rule should fire for a given field value.

    Raises:
        ValueError: If the timestamp is missing or the trigger type is unknown
    """
    if timestamp is None:
        raise ValueError("Timestamp is required to calculate scheduled time")

    trigger_type = TriggerType(trigger_type)
    if trigger_type == TriggerType.EXACT:
        return timestamp
    elif trigger_type == TriggerType.BEFORE:
        return timestamp - timedelta(minutes=offset_minutes)
    elif trigger_type == TriggerType.AFTER:
        return timestamp + timedelta(minutes=offset_minutes)
    else:
        raise ValueError(f"Unsupported trigger type: {trigger_type}")
