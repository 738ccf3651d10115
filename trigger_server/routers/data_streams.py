# trigger_server/routers/data_streams.py
import logging
from datetime import datetime
from typing import Any, cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from sheets.triggers.models import TriggerConfigError, TriggerStrategy
from trigger_server.auth import verify_api_key
from trigger_server.db.models import DataStream
from trigger_server.schemas.data_streams import (
    BackfillResponse,
    DataStreamCreateRequest,
    DataStreamListResponse,
    DataStreamResponse,
    DataStreamUpdateRequest,
    TriggerScheduleResponse,
)
from trigger_server.services.backfill import enqueue_backfill
from trigger_server.services.data_streams import (
    create_data_stream,
    get_data_stream,
    list_data_streams,
    list_trigger_schedules,
    update_data_stream,
)
from trigger_server.services.scheduler import active_schedule_ids

logger = logging.getLogger(__name__)

router = APIRouter()


def _data_stream_to_response(data_stream: DataStream) -> DataStreamResponse:
    """Convert DataStream model to DataStreamResponse schema."""
    schedules = list_trigger_schedules(cast(str, data_stream.id))
    return DataStreamResponse(
        id=cast(str, data_stream.id),
        table_id=cast(str, data_stream.table_id),
        webhook_url=cast(str, data_stream.webhook_url),
        trigger_type=TriggerStrategy(cast(str, data_stream.trigger_type)),
        event_types=cast(list[str] | None, data_stream.event_types),
        is_streaming=cast(bool, data_stream.is_streaming),
        trigger_schedules=[TriggerScheduleResponse.model_validate(schedule) for schedule in schedules],
        created_time=cast(datetime, data_stream.created_time),
        last_modified_time=cast(datetime, data_stream.last_modified_time),
    )


@router.post("/data-streams", response_model=DataStreamResponse, status_code=status.HTTP_201_CREATED)
def create_data_stream_endpoint(request: DataStreamCreateRequest, api_key: str = Depends(verify_api_key)):
    """Create a data stream; TIME_BASED streams get their rules validated, stored and backfilled."""
    try:
        data_stream_id = create_data_stream(
            table_id=request.table_id,
            webhook_url=request.webhook_url,
            trigger_type=request.trigger_type,
            trigger_config=request.trigger_config,
            event_types=[event.value for event in request.event_types] if request.event_types else None,
            is_streaming=request.is_streaming,
        )
    except TriggerConfigError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    data_stream = get_data_stream(data_stream_id)
    if not data_stream:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create data stream")

    return _data_stream_to_response(data_stream)


@router.get("/data-streams", response_model=DataStreamListResponse)
def list_data_streams_endpoint(
    table_id: str | None = Query(None, description="Filter by table"),
    api_key: str = Depends(verify_api_key),
):
    """List data streams."""
    data_streams = list_data_streams(table_id=table_id)

    return DataStreamListResponse(data_streams=[_data_stream_to_response(ds) for ds in data_streams])


@router.get("/data-streams/{data_stream_id}", response_model=DataStreamResponse)
def get_data_stream_endpoint(data_stream_id: str, api_key: str = Depends(verify_api_key)):
    """Get a data stream with its active rules."""
    data_stream = get_data_stream(data_stream_id)
    if not data_stream:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Data stream not found")

    return _data_stream_to_response(data_stream)


@router.patch("/data-streams/{data_stream_id}", response_model=DataStreamResponse)
def update_data_stream_endpoint(
    data_stream_id: str, request: DataStreamUpdateRequest, api_key: str = Depends(verify_api_key)
):
    """Update a data stream and reconcile its trigger rules."""
    changes: dict[str, Any] = {
        "webhook_url": request.webhook_url,
        "trigger_type": request.trigger_type,
        "is_streaming": request.is_streaming,
        "trigger_config": request.trigger_config,
    }
    if request.event_types is not None:
        changes["event_types"] = [event.value for event in request.event_types]

    try:
        found = update_data_stream(data_stream_id, changes)
    except TriggerConfigError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not found:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Data stream not found")

    data_stream = get_data_stream(data_stream_id)
    if not data_stream:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Data stream not found")
    return _data_stream_to_response(data_stream)


@router.post(
    "/data-streams/{data_stream_id}/backfill",
    response_model=BackfillResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def backfill_data_stream_endpoint(data_stream_id: str, api_key: str = Depends(verify_api_key)):
    """Queue a re-evaluation of existing records against every active rule of the data stream."""
    if not get_data_stream(data_stream_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Data stream not found")

    schedule_ids = active_schedule_ids(data_stream_id)
    logger.info("Manual backfill requested for data stream %s (%d rule(s))", data_stream_id, len(schedule_ids))
    enqueue_backfill(data_stream_id, schedule_ids)
    return BackfillResponse(data_stream_id=data_stream_id, trigger_schedule_ids=schedule_ids)
