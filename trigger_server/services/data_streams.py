# trigger_server/services/data_streams.py
import logging
import uuid
from typing import Any, Dict, List, Optional

from sheets.catalog import sql_ports
from sheets.ports import PortsFactory
from sheets.triggers.models import ACTIVE, TriggerRule, TriggerStrategy
from sheets.triggers.utils import utc_now
from trigger_server.db.engine import get_session
from trigger_server.db.models import DataStream, ScheduledTrigger, TriggerSchedule
from trigger_server.services.backfill import enqueue_backfill
from trigger_server.services.reconciler import (
    apply_rule_diff,
    cancel_active_triggers,
    create_trigger_schedules,
    delete_trigger_schedules,
    reconcile_rules,
    validate_trigger_rules,
)

logger = logging.getLogger(__name__)


def create_data_stream(
    table_id: str,
    webhook_url: str,
    trigger_type: TriggerStrategy = TriggerStrategy.EVENT_BASED,
    trigger_config: Optional[List[TriggerRule]] = None,
    event_types: Optional[List[str]] = None,
    is_streaming: bool = True,
    ports_factory: PortsFactory = sql_ports,
) -> str:
    """
    Create a data stream and, for TIME_BASED streams, its trigger rules.

    Existing records are backfilled in the background once the rules are
    committed.

    Returns:
        data_stream_id (UUID string)

    Raises:
        TriggerConfigError: If the trigger rules are invalid
    """
    data_stream_id = str(uuid.uuid4())
    rules = list(trigger_config or [])

    session = get_session()
    try:
        if trigger_type == TriggerStrategy.TIME_BASED:
            validate_trigger_rules(rules, table_id, ports_factory(session).fields)

        session.add(
            DataStream(
                id=data_stream_id,
                table_id=table_id,
                webhook_url=webhook_url,
                trigger_type=trigger_type.value,
                event_types=event_types,
                is_streaming=is_streaming,
            )
        )
        session.flush()
        schedule_ids: List[str] = []
        if trigger_type == TriggerStrategy.TIME_BASED:
            schedule_ids = create_trigger_schedules(session, data_stream_id, rules)
        session.commit()

        logger.info(
            "Created data stream %s for table %s (%s, %d rule(s))",
            data_stream_id,
            table_id,
            trigger_type.value,
            len(schedule_ids),
        )
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    # Runs after commit; a failed backfill never undoes the change
    enqueue_backfill(data_stream_id, schedule_ids, ports_factory)
    return data_stream_id


def update_data_stream(
    data_stream_id: str, changes: Dict[str, Any], ports_factory: PortsFactory = sql_ports
) -> bool:
    """
    Update a data stream and reconcile its trigger rules.

    ``changes`` may hold webhook_url, event_types, is_streaming, trigger_type
    and trigger_config (a list of TriggerRule).

    Returns:
        False if the data stream does not exist

    Raises:
        TriggerConfigError: If the trigger rules are invalid; nothing is written
    """
    session = get_session()
    to_backfill: List[str] = []
    backfill_all = False
    try:
        data_stream = session.get(DataStream, data_stream_id)
        if not data_stream:
            return False

        was_time_based = data_stream.trigger_type == TriggerStrategy.TIME_BASED.value
        was_streaming = bool(data_stream.is_streaming)

        trigger_type = changes.get("trigger_type")
        new_type = TriggerStrategy(trigger_type) if trigger_type else TriggerStrategy(data_stream.trigger_type)
        trigger_config = changes.get("trigger_config")

        if new_type == TriggerStrategy.TIME_BASED and trigger_config is not None:
            validate_trigger_rules(trigger_config, data_stream.table_id, ports_factory(session).fields)

        for key in ("webhook_url", "event_types", "is_streaming"):
            if key in changes and changes[key] is not None:
                setattr(data_stream, key, changes[key])
        data_stream.trigger_type = new_type.value
        data_stream.last_modified_time = utc_now()

        existing = (
            session.query(TriggerSchedule)
            .filter(TriggerSchedule.data_stream_id == data_stream_id)
            .filter(TriggerSchedule.status == ACTIVE)
            .all()
        )

        if new_type == TriggerStrategy.TIME_BASED and trigger_config is not None:
            diff = reconcile_rules(existing, trigger_config)
            to_backfill = apply_rule_diff(session, data_stream_id, diff)
            logger.info(
                "Reconciled rules for data stream %s: %d created, %d updated, %d deleted",
                data_stream_id,
                len(diff.to_create),
                len(diff.to_update),
                len(diff.to_delete),
            )
        elif was_time_based and new_type != TriggerStrategy.TIME_BASED:
            delete_trigger_schedules(session, [schedule.id for schedule in existing])

        is_streaming = bool(data_stream.is_streaming)
        if was_streaming and not is_streaming:
            cancelled = cancel_active_triggers(session, ScheduledTrigger.data_stream_id == data_stream_id)
            logger.info("Streaming disabled for data stream %s, cancelled %d trigger(s)", data_stream_id, cancelled)
        elif not was_streaming and is_streaming and new_type == TriggerStrategy.TIME_BASED:
            backfill_all = True

        session.commit()
        logger.info("Updated data stream %s", data_stream_id)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if backfill_all:
        enqueue_backfill(data_stream_id, None, ports_factory)
    else:
        enqueue_backfill(data_stream_id, to_backfill, ports_factory)
    return True


def get_data_stream(data_stream_id: str) -> DataStream | None:
    """Get a data stream by ID."""
    session = get_session()
    try:
        return session.get(DataStream, data_stream_id)
    finally:
        session.close()


def list_data_streams(table_id: str | None = None) -> list[DataStream]:
    """List data streams, optionally filtered by table."""
    session = get_session()
    try:
        query = session.query(DataStream)
        if table_id:
            query = query.filter(DataStream.table_id == table_id)
        return query.order_by(DataStream.created_time.desc()).all()
    finally:
        session.close()


def list_trigger_schedules(data_stream_id: str) -> list[TriggerSchedule]:
    """List active trigger rules of a data stream."""
    session = get_session()
    try:
        return (
            session.query(TriggerSchedule)
            .filter(TriggerSchedule.data_stream_id == data_stream_id)
            .filter(TriggerSchedule.status == ACTIVE)
            .order_by(TriggerSchedule.created_time.asc())
            .all()
        )
    finally:
        session.close()


def list_scheduled_triggers(
    data_stream_id: str | None = None,
    record_id: int | None = None,
    state: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[ScheduledTrigger], int]:
    """
    List scheduled triggers with filtering.

    Returns:
        (triggers, total_count)
    """
    session = get_session()
    try:
        query = session.query(ScheduledTrigger)

        if data_stream_id:
            query = query.filter(ScheduledTrigger.data_stream_id == data_stream_id)
        if record_id is not None:
            query = query.filter(ScheduledTrigger.record_id == record_id)
        if state:
            query = query.filter(ScheduledTrigger.state == state)

        total = query.count()
        triggers = query.order_by(ScheduledTrigger.scheduled_time.asc()).offset(offset).limit(limit).all()

        return triggers, total
    finally:
        session.close()
