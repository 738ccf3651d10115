# trigger_server/schemas/data_streams.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from sheets.triggers.models import RecordEventType, TriggerRule, TriggerStrategy, TriggerType


class DataStreamCreateRequest(BaseModel):
    """Request to create a new data stream."""

    table_id: str = Field(..., description="Table whose records feed the webhook")
    webhook_url: str = Field(..., description="URL receiving POSTed payloads")
    trigger_type: TriggerStrategy = Field(TriggerStrategy.EVENT_BASED, description="EVENT_BASED or TIME_BASED")
    event_types: Optional[List[RecordEventType]] = Field(None, description="Record events for EVENT_BASED streams")
    is_streaming: bool = Field(True, description="Whether the stream is enabled")
    trigger_config: Optional[List[TriggerRule]] = Field(None, description="Time-based rules (TIME_BASED only)")


class DataStreamUpdateRequest(BaseModel):
    """Request to update a data stream. Omitted fields are left unchanged."""

    webhook_url: Optional[str] = None
    trigger_type: Optional[TriggerStrategy] = None
    event_types: Optional[List[RecordEventType]] = None
    is_streaming: Optional[bool] = None
    trigger_config: Optional[List[TriggerRule]] = Field(
        None, description="Full desired rule set; rules with an id are updated, rules without one are created"
    )


class TriggerScheduleResponse(BaseModel):
    """Persisted trigger rule."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    field_id: int
    type: TriggerType
    offset_minutes: int
    name: Optional[str] = None
    status: str


class DataStreamResponse(BaseModel):
    """Data stream response."""

    id: str
    table_id: str
    webhook_url: str
    trigger_type: TriggerStrategy
    event_types: Optional[List[str]] = None
    is_streaming: bool
    trigger_schedules: List[TriggerScheduleResponse] = Field(default_factory=list)
    created_time: datetime
    last_modified_time: datetime


class DataStreamListResponse(BaseModel):
    """List of data streams."""

    data_streams: list[DataStreamResponse]


class BackfillResponse(BaseModel):
    """A backfill queued for the listed rules."""

    data_stream_id: str
    trigger_schedule_ids: List[str] = Field(..., description="Active rules whose records will be re-evaluated")
