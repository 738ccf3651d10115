# trigger_server/routers/scheduled_triggers.py
from fastapi import APIRouter, Depends, Query

from sheets.triggers.models import TriggerState
from trigger_server.auth import verify_api_key
from trigger_server.schemas.scheduled_triggers import ScheduledTriggerListResponse, ScheduledTriggerResponse
from trigger_server.services.data_streams import list_scheduled_triggers

router = APIRouter()


@router.get("/scheduled-triggers", response_model=ScheduledTriggerListResponse)
def list_scheduled_triggers_endpoint(
    data_stream_id: str | None = Query(None, description="Filter by data stream"),
    record_id: int | None = Query(None, description="Filter by record"),
    state: TriggerState | None = Query(None, description="Filter by state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum number of results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    api_key: str = Depends(verify_api_key),
):
    """List scheduled triggers with their state and last error."""
    triggers, total = list_scheduled_triggers(
        data_stream_id=data_stream_id,
        record_id=record_id,
        state=state.value if state else None,
        limit=limit,
        offset=offset,
    )

    return ScheduledTriggerListResponse(
        triggers=[ScheduledTriggerResponse.model_validate(trigger) for trigger in triggers],
        total=total,
        limit=limit,
        offset=offset,
    )
