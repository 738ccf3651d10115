# trigger_server/services/reconciler.py
import logging
import uuid
from typing import Iterable, List, NamedTuple, Sequence

from sqlalchemy.orm import Session

from sheets.ports import FieldCatalog
from sheets.triggers.models import (
    ACTIVE,
    INACTIVE,
    TIMESTAMP_FIELD_TYPES,
    TriggerConfigError,
    TriggerRule,
    TriggerState,
    TriggerType,
)
from sheets.triggers.utils import utc_now
from trigger_server.db.models import ScheduledTrigger, TriggerSchedule

logger = logging.getLogger(__name__)


class RuleDiff(NamedTuple):
    to_create: List[TriggerRule]
    to_update: List[TriggerRule]
    to_delete: List[str]


def validate_trigger_rules(rules: Sequence[TriggerRule], table_id: str, fields: FieldCatalog) -> None:
    """
    Validate a submitted rule set against the field catalog.

    Raises:
        TriggerConfigError: On the first rule that cannot be accepted; nothing is written
    """
    if not rules:
        raise TriggerConfigError("trigger_config with at least one rule is required when trigger_type is TIME_BASED")

    field_ids = {rule.field_id for rule in rules}
    field_map = {field.id: field for field in fields.get_fields(field_ids)}
    if not field_map:
        raise TriggerConfigError(f"No fields found for IDs: {', '.join(str(i) for i in sorted(field_ids))}")

    seen = set()
    for rule in rules:
        field = field_map.get(rule.field_id)
        if field is None:
            raise TriggerConfigError(f"Field with ID {rule.field_id} not found")
        if field.status != ACTIVE:
            raise TriggerConfigError(f"Field {rule.field_id} is not active")
        if field.table_id is not None and field.table_id != table_id:
            raise TriggerConfigError(f"Field {rule.field_id} does not belong to table {table_id}")
        if field.type not in TIMESTAMP_FIELD_TYPES:
            raise TriggerConfigError(
                f"Field {rule.field_id} must be a timestamp type ({', '.join(sorted(TIMESTAMP_FIELD_TYPES))}), "
                f"got {field.type}"
            )
        if rule.type in (TriggerType.BEFORE, TriggerType.AFTER) and rule.offset_minutes <= 0:
            raise TriggerConfigError("offset_minutes must be greater than 0 for BEFORE and AFTER trigger types")

        key = rule.dedup_key()
        if key in seen:
            raise TriggerConfigError(
                f"Duplicate trigger rule for field {rule.field_id} ({rule.type.value}, {rule.offset_minutes} minutes)"
            )
        seen.add(key)


def reconcile_rules(existing: Iterable[TriggerSchedule], incoming: Sequence[TriggerRule]) -> RuleDiff:
    """
    Diff persisted rules against a submitted rule array.

    Rules without an id are created, rules whose id matches a persisted row
    with different content are updated, persisted ids missing from the
    submission are deleted. Ids that match nothing are ignored.
    """
    existing_map = {row.id: row for row in existing}
    incoming_ids = {rule.id for rule in incoming if rule.id}

    to_create: List[TriggerRule] = []
    to_update: List[TriggerRule] = []
    for rule in incoming:
        if not rule.id:
            to_create.append(rule)
            continue

        row = existing_map.get(rule.id)
        if row is None:
            continue
        if (
            row.field_id != rule.field_id
            or row.type != rule.type.value
            or row.offset_minutes != rule.offset_minutes
            or row.name != rule.name
        ):
            to_update.append(rule)

    to_delete = [row_id for row_id in existing_map if row_id not in incoming_ids]
    return RuleDiff(to_create=to_create, to_update=to_update, to_delete=to_delete)


def cancel_active_triggers(session: Session, *criteria, include_processing: bool = True) -> int:
    """Cancel and soft-delete active scheduled triggers matching the criteria."""
    query = session.query(ScheduledTrigger).filter(ScheduledTrigger.status == ACTIVE, *criteria)
    if not include_processing:
        query = query.filter(ScheduledTrigger.state != TriggerState.PROCESSING.value)

    now = utc_now()
    return query.update(
        {
            ScheduledTrigger.state: TriggerState.CANCELLED.value,
            ScheduledTrigger.status: INACTIVE,
            ScheduledTrigger.deleted_time: now,
            ScheduledTrigger.next_retry_time: None,
            ScheduledTrigger.last_modified_time: now,
        },
        synchronize_session=False,
    )


def create_trigger_schedules(session: Session, data_stream_id: str, rules: Iterable[TriggerRule]) -> List[str]:
    """Insert active rule rows. Returns the new rule ids."""
    created = []
    for rule in rules:
        schedule = TriggerSchedule(
            id=str(uuid.uuid4()),
            data_stream_id=data_stream_id,
            field_id=rule.field_id,
            type=rule.type.value,
            offset_minutes=rule.offset_minutes,
            name=rule.name,
            status=ACTIVE,
        )
        session.add(schedule)
        created.append(schedule.id)
    return created


def delete_trigger_schedules(session: Session, schedule_ids: Sequence[str]) -> None:
    """Soft-delete rules and cancel every live trigger they produced."""
    if not schedule_ids:
        return

    session.query(TriggerSchedule).filter(
        TriggerSchedule.id.in_(schedule_ids), TriggerSchedule.status == ACTIVE
    ).update(
        {TriggerSchedule.status: INACTIVE, TriggerSchedule.deleted_time: utc_now()},
        synchronize_session=False,
    )
    cancelled = cancel_active_triggers(session, ScheduledTrigger.trigger_schedule_id.in_(schedule_ids))
    logger.info("Deleted %d trigger schedule(s), cancelled %d scheduled trigger(s)", len(schedule_ids), cancelled)


def apply_rule_diff(session: Session, data_stream_id: str, diff: RuleDiff) -> List[str]:
    """
    Write a reconciled diff. Does not commit.

    Returns:
        Ids of rules that need a backfill pass (created and updated ones)
    """
    delete_trigger_schedules(session, diff.to_delete)

    needs_backfill: List[str] = []
    for rule in diff.to_update:
        schedule = session.get(TriggerSchedule, rule.id)
        if schedule is None:
            continue
        schedule.field_id = rule.field_id
        schedule.type = rule.type.value
        schedule.offset_minutes = rule.offset_minutes
        schedule.name = rule.name
        # In-flight deliveries finish; everything still waiting is recomputed by the backfill
        cancelled = cancel_active_triggers(
            session, ScheduledTrigger.trigger_schedule_id == rule.id, include_processing=False
        )
        logger.info("Updated trigger schedule %s, cancelled %d scheduled trigger(s)", rule.id, cancelled)
        needs_backfill.append(rule.id)

    needs_backfill.extend(create_trigger_schedules(session, data_stream_id, diff.to_create))
    return needs_backfill
