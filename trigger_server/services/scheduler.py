# trigger_server/services/scheduler.py
import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from sheets import conf
from sheets.catalog import sql_ports
from sheets.ports import PortsFactory, TriggerPorts
from sheets.triggers.models import (
    ACTIVE,
    TIMESTAMP_FIELD_TYPES,
    FieldInfo,
    RecordEvent,
    RecordEventType,
    TriggerState,
    TriggerStrategy,
    calculate_scheduled_time,
)
from sheets.triggers.utils import parse_timestamp, utc_now
from trigger_server.db.engine import get_session
from trigger_server.db.models import DataStream, ScheduledTrigger, TriggerSchedule
from trigger_server.services.reconciler import cancel_active_triggers

logger = logging.getLogger(__name__)

STALE_THRESHOLD = timedelta(seconds=conf.STALE_THRESHOLD_SECONDS)


def cancel_scheduled_triggers_for_record(session: Session, table_id: str, record_id: int) -> int:
    """Cancel pending triggers of a deleted record. In-flight deliveries are left alone."""
    return cancel_active_triggers(
        session,
        ScheduledTrigger.table_id == table_id,
        ScheduledTrigger.record_id == record_id,
        ScheduledTrigger.state == TriggerState.PENDING.value,
    )


def _applicable_schedules(session: Session, event: RecordEvent) -> List[TriggerSchedule]:
    streams_query = (
        session.query(DataStream.id)
        .filter(DataStream.table_id == event.table_id)
        .filter(DataStream.trigger_type == TriggerStrategy.TIME_BASED.value)
        .filter(DataStream.is_streaming == True)  # noqa: E712
    )
    if event.data_stream_id:
        streams_query = streams_query.filter(DataStream.id == event.data_stream_id)
    stream_ids = [row.id for row in streams_query.all()]
    if not stream_ids:
        return []

    query = (
        session.query(TriggerSchedule)
        .filter(TriggerSchedule.data_stream_id.in_(stream_ids))
        .filter(TriggerSchedule.status == ACTIVE)
    )
    if event.trigger_schedule_id:
        query = query.filter(TriggerSchedule.id == event.trigger_schedule_id)
    schedules = query.all()

    # A brand-new record implicitly sets every field
    if event.event_type == RecordEventType.CREATE_RECORD and not event.updated_field_ids:
        return schedules
    updated = set(event.updated_field_ids)
    return [schedule for schedule in schedules if schedule.field_id in updated]


def schedule_trigger(
    session: Session,
    schedule: TriggerSchedule,
    field: FieldInfo,
    table_id: str,
    record_id: int,
    row: Dict,
    now: Optional[datetime] = None,
) -> Optional[ScheduledTrigger]:
    """
    Compute the fire time of one rule for one record and queue it.

    Supersedes any live trigger for the same (rule, record). Returns the new
    trigger, or None when the rule does not apply.
    """
    if field.type not in TIMESTAMP_FIELD_TYPES:
        logger.warning(
            "Field %s of schedule %s is %s, not a timestamp; skipping", field.id, schedule.id, field.type
        )
        return None

    timestamp = parse_timestamp(row.get(field.db_field_name))
    if timestamp is None:
        return None

    now = now or utc_now()
    scheduled_time = calculate_scheduled_time(timestamp, schedule.type, schedule.offset_minutes)
    if scheduled_time < now - STALE_THRESHOLD:
        logger.debug(
            "Skipping schedule %s for record %s: %s is in the past", schedule.id, record_id, scheduled_time
        )
        return None

    cancel_active_triggers(
        session,
        ScheduledTrigger.trigger_schedule_id == schedule.id,
        ScheduledTrigger.record_id == record_id,
    )
    trigger = ScheduledTrigger(
        id=str(uuid.uuid4()),
        data_stream_id=schedule.data_stream_id,
        trigger_schedule_id=schedule.id,
        record_id=record_id,
        table_id=table_id,
        original_field_id=field.id,
        scheduled_time=scheduled_time,
        original_time=timestamp,
        retry_count=0,
        max_retries=conf.DEFAULT_MAX_RETRIES,
        state=TriggerState.PENDING.value,
        status=ACTIVE,
        last_modified_time=now,
    )
    session.add(trigger)
    return trigger


def apply_record_event(session: Session, event: RecordEvent, ports: TriggerPorts) -> int:
    """
    Reschedule or cancel triggers for a record mutation. Does not commit.

    Returns:
        Number of triggers created, or cancelled for delete events
    """
    if event.event_type == RecordEventType.DELETE_RECORD:
        cancelled = 0
        for record_id in event.record_ids:
            cancelled += cancel_scheduled_triggers_for_record(session, event.table_id, record_id)
        logger.info("Cancelled %d trigger(s) for %d deleted record(s)", cancelled, len(event.record_ids))
        return cancelled

    if not event.record_ids:
        return 0

    schedules = _applicable_schedules(session, event)
    if not schedules:
        return 0

    table = ports.tables.get_table(event.table_id)
    if table is None:
        logger.warning("Table %s not found, skipping time-based triggers", event.table_id)
        return 0

    field_map = {field.id: field for field in ports.fields.get_fields(s.field_id for s in schedules)}

    now = utc_now()
    created = 0
    for record_id in event.record_ids:
        row = ports.records.get_row(table.db_table_name, record_id)
        if row is None:
            continue
        for schedule in schedules:
            field = field_map.get(schedule.field_id)
            if field is None:
                logger.warning("Field %s not found for schedule %s", schedule.field_id, schedule.id)
                continue
            if schedule_trigger(session, schedule, field, event.table_id, record_id, row, now):
                created += 1

    logger.info(
        "Scheduled %d trigger(s) for %d record(s) on table %s (%s)",
        created,
        len(event.record_ids),
        event.table_id,
        event.event_type.value,
    )
    return created


def handle_record_event(event: RecordEvent, ports_factory: PortsFactory = sql_ports) -> int:
    """Apply a record mutation event in its own transaction."""
    session = get_session()
    try:
        result = apply_record_event(session, event, ports_factory(session))
        session.commit()
        return result
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class BackfillError(RuntimeError):
    """Raised once a backfill has run to the end with some rules or pages failed."""

    def __init__(self, message: str, schedule_ids: Sequence[str] = ()):
        super().__init__(message)
        self.schedule_ids = list(schedule_ids)


def backfill_rule(schedule_id: str, ports_factory: PortsFactory = sql_ports) -> int:
    """
    Re-evaluate every existing record against one rule.

    Records are paged by id; a failing page is logged and the rest continue.

    Returns:
        Number of triggers created

    Raises:
        BackfillError: If any page failed, after the remaining pages ran
    """
    session = get_session()
    try:
        schedule = session.get(TriggerSchedule, schedule_id)
        if schedule is None or schedule.status != ACTIVE:
            logger.info("Trigger schedule %s is not active, nothing to backfill", schedule_id)
            return 0
        data_stream = session.get(DataStream, schedule.data_stream_id)
        if data_stream is None:
            return 0

        ports = ports_factory(session)
        table = ports.tables.get_table(data_stream.table_id)
        if table is None:
            logger.warning("Table %s not found, skipping trigger backfill", data_stream.table_id)
            return 0
        fields = ports.fields.get_fields([schedule.field_id])
        if not fields:
            logger.warning("Field %s not found, skipping backfill for schedule %s", schedule.field_id, schedule_id)
            return 0
        db_field_name = fields[0].db_field_name

        total = ports.records.count_records(table.db_table_name, db_field_name)
        if total == 0:
            logger.info("No records to backfill for schedule %s", schedule_id)
            return 0

        batch_size = conf.BACKFILL_BATCH_SIZE
        total_pages = (total + batch_size - 1) // batch_size
        logger.info(
            "Backfilling triggers for %d records (%d pages) for schedule %s", total, total_pages, schedule_id
        )

        created = 0
        failed_pages = 0
        for page in range(total_pages):
            offset = page * batch_size
            try:
                record_ids = ports.records.list_record_ids(table.db_table_name, db_field_name, batch_size, offset)
                if not record_ids:
                    break
                event = RecordEvent(
                    table_id=data_stream.table_id,
                    record_ids=record_ids,
                    event_type=RecordEventType.CREATE_RECORD,
                    updated_field_ids=[schedule.field_id],
                    data_stream_id=data_stream.id,
                    trigger_schedule_id=schedule.id,
                )
                created += apply_record_event(session, event, ports)
                session.commit()
            except Exception as e:
                logger.error(
                    "Error backfilling schedule %s (page %d, offset %d): %s",
                    schedule_id,
                    page + 1,
                    offset,
                    e,
                    exc_info=True,
                )
                session.rollback()
                failed_pages += 1

        logger.info("Completed backfilling schedule %s: %d trigger(s) created", schedule_id, created)
        if failed_pages:
            raise BackfillError(
                f"{failed_pages} of {total_pages} page(s) failed for schedule {schedule_id}", [schedule_id]
            )
        return created
    finally:
        session.close()


def backfill_schedules(schedule_ids: Sequence[str], ports_factory: PortsFactory = sql_ports) -> int:
    """
    Backfill several rules, carrying on past a failing one.

    Raises:
        BackfillError: Naming the rules that failed, after all of them ran
    """
    created = 0
    failed: List[str] = []
    for schedule_id in schedule_ids:
        try:
            created += backfill_rule(schedule_id, ports_factory)
        except Exception as e:
            logger.error("Error backfilling triggers for schedule %s: %s", schedule_id, e)
            failed.append(schedule_id)

    if failed:
        raise BackfillError(f"Backfill failed for {len(failed)} of {len(schedule_ids)} rule(s)", failed)
    return created


def active_schedule_ids(data_stream_id: str) -> List[str]:
    session = get_session()
    try:
        return [
            row.id
            for row in session.query(TriggerSchedule.id)
            .filter(TriggerSchedule.data_stream_id == data_stream_id)
            .filter(TriggerSchedule.status == ACTIVE)
            .order_by(TriggerSchedule.created_time.asc())
            .all()
        ]
    finally:
        session.close()


def backfill_data_stream(data_stream_id: str, ports_factory: PortsFactory = sql_ports) -> int:
    """Backfill every active rule of a data stream."""
    schedule_ids = active_schedule_ids(data_stream_id)
    if not schedule_ids:
        logger.info("No active trigger schedules found for data stream %s", data_stream_id)
        return 0
    return backfill_schedules(schedule_ids, ports_factory)
