# trigger_server/schemas/scheduled_triggers.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict

from sheets.triggers.models import RecordEventType, TriggerState


class ScheduledTriggerResponse(BaseModel):
    """Scheduled trigger as seen by operators."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    data_stream_id: str
    trigger_schedule_id: str
    record_id: int
    table_id: str
    original_field_id: int
    scheduled_time: datetime
    original_time: datetime
    retry_count: int
    max_retries: int
    next_retry_time: Optional[datetime] = None
    last_error: Optional[str] = None
    state: TriggerState
    status: str
    last_modified_time: datetime


class ScheduledTriggerListResponse(BaseModel):
    """Paginated list of scheduled triggers."""

    triggers: list[ScheduledTriggerResponse]
    total: int
    limit: int
    offset: int


class RecordEventResponse(BaseModel):
    """Outcome of a record mutation event."""

    event_type: RecordEventType
    scheduled: int = 0
    cancelled: int = 0
