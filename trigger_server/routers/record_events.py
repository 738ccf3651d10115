# trigger_server/routers/record_events.py
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from sheets.triggers.models import RecordEvent, RecordEventType
from trigger_server.auth import verify_api_key
from trigger_server.schemas.scheduled_triggers import RecordEventResponse
from trigger_server.services.scheduler import handle_record_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/record-events", response_model=RecordEventResponse, status_code=status.HTTP_202_ACCEPTED)
def record_event_endpoint(event: RecordEvent, api_key: str = Depends(verify_api_key)):
    """Reschedule or cancel time-based triggers after records were created, updated or deleted."""
    try:
        count = handle_record_event(event)
    except Exception as e:
        logger.error("Error handling %s event for table %s: %s", event.event_type.value, event.table_id, e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Internal server error: {str(e)}"
        )

    if event.event_type == RecordEventType.DELETE_RECORD:
        return RecordEventResponse(event_type=event.event_type, cancelled=count)
    return RecordEventResponse(event_type=event.event_type, scheduled=count)
