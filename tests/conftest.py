# tests/conftest.py
"""Global test configuration and fixtures."""
import math
from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, select, update

from sheets.db.models import Field, TableMeta, View
from sheets.triggers.models import ACTIVE, TriggerRule, TriggerState, TriggerStrategy
from sheets.triggers.utils import isoformat, utc_now
from trigger_server.db.engine import configure_engine, dispose_engine, get_session
from trigger_server.db.models import ScheduledTrigger
from trigger_server.services.backfill import clear_backfills, run_due_backfills


class Sheet:
    """A seeded table with a DATE column and a text column, plus helpers to mutate its rows."""

    table_id = "tbl_tasks"
    base_id = "base_1"
    db_table_name = "records_tasks"
    view_id = "viw_grid"
    due_field_id = 1
    title_field_id = 2
    other_table_field_id = 3
    webhook_url = "https://hooks.example.com/tasks"

    def __init__(self, engine):
        self.engine = engine
        self.records = Table(
            self.db_table_name,
            MetaData(),
            Column("__id", Integer, primary_key=True),
            Column("__status", String, nullable=False, default=ACTIVE),
            Column("due_date", String, nullable=True),
            Column("title", String, nullable=True),
        )
        self.records.create(engine)

        session = get_session()
        try:
            session.add(
                TableMeta(
                    id=self.table_id,
                    base_id=self.base_id,
                    name="Tasks",
                    db_table_name=self.db_table_name,
                    status=ACTIVE,
                )
            )
            session.add(View(id=self.view_id, table_id=self.table_id, name="Grid", order=0))
            session.add(
                Field(id=self.due_field_id, table_id=self.table_id, name="Due", type="DATE", db_field_name="due_date")
            )
            session.add(
                Field(
                    id=self.title_field_id,
                    table_id=self.table_id,
                    name="Title",
                    type="SINGLE_LINE_TEXT",
                    db_field_name="title",
                )
            )
            session.add(
                Field(
                    id=self.other_table_field_id,
                    table_id="tbl_other",
                    name="Start",
                    type="DATE",
                    db_field_name="start_date",
                )
            )
            session.commit()
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def set_record(self, record_id: int, due: Optional[datetime], title: str = "Task") -> None:
        """Insert or overwrite a record without notifying the scheduler."""
        values = {"due_date": isoformat(due), "title": title, "__status": ACTIVE}
        with self.engine.begin() as conn:
            exists = conn.execute(
                select(self.records.c["__id"]).where(self.records.c["__id"] == record_id)
            ).first()
            if exists:
                conn.execute(update(self.records).where(self.records.c["__id"] == record_id).values(values))
            else:
                conn.execute(self.records.insert().values({"__id": record_id, **values}))

    def delete_record(self, record_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(self.records).where(self.records.c["__id"] == record_id).values({"__status": "deleted"})
            )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------
    def set_field_status(self, field_id: int, status: str) -> None:
        session = get_session()
        try:
            session.get(Field, field_id).status = status
            session.commit()
        finally:
            session.close()

    def delete_view(self) -> None:
        session = get_session()
        try:
            session.get(View, self.view_id).deleted_time = utc_now()
            session.commit()
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Data streams and triggers
    # ------------------------------------------------------------------
    def rule(self, trigger_type: str = "EXACT", offset_minutes: int = 0, **kwargs) -> TriggerRule:
        return TriggerRule(field_id=self.due_field_id, type=trigger_type, offset_minutes=offset_minutes, **kwargs)

    def add_time_based_stream(self, rules: Optional[List[TriggerRule]] = None, is_streaming: bool = True) -> str:
        from trigger_server.services.data_streams import create_data_stream

        return create_data_stream(
            table_id=self.table_id,
            webhook_url=self.webhook_url,
            trigger_type=TriggerStrategy.TIME_BASED,
            trigger_config=rules or [self.rule()],
            is_streaming=is_streaming,
        )

    def run_backfills(self) -> None:
        """Run every queued backfill now, retries included, until the queue is empty."""
        while run_due_backfills(now=math.inf):
            pass

    def add_trigger(
        self,
        data_stream_id: str,
        schedule_id: str,
        record_id: int,
        original_time: datetime,
        scheduled_time: Optional[datetime] = None,
        state: TriggerState = TriggerState.PENDING,
        last_modified_time: Optional[datetime] = None,
        trigger_id: Optional[str] = None,
    ) -> str:
        """Insert a scheduled trigger row directly."""
        trigger = ScheduledTrigger(
            id=trigger_id or f"trg_{record_id}_{schedule_id[:8]}",
            data_stream_id=data_stream_id,
            trigger_schedule_id=schedule_id,
            record_id=record_id,
            table_id=self.table_id,
            original_field_id=self.due_field_id,
            scheduled_time=scheduled_time or original_time,
            original_time=original_time,
            retry_count=0,
            max_retries=3,
            state=state.value,
            status=ACTIVE,
            last_modified_time=last_modified_time or utc_now(),
        )
        session = get_session()
        try:
            session.add(trigger)
            session.commit()
            return trigger.id
        finally:
            session.close()

    def triggers(self, record_id: Optional[int] = None, active_only: bool = False) -> List[ScheduledTrigger]:
        session = get_session()
        try:
            query = session.query(ScheduledTrigger)
            if record_id is not None:
                query = query.filter(ScheduledTrigger.record_id == record_id)
            if active_only:
                query = query.filter(ScheduledTrigger.status == ACTIVE)
            return query.order_by(ScheduledTrigger.created_time.asc(), ScheduledTrigger.scheduled_time.asc()).all()
        finally:
            session.close()

    def get_trigger(self, trigger_id: str) -> ScheduledTrigger:
        session = get_session()
        try:
            return session.get(ScheduledTrigger, trigger_id)
        finally:
            session.close()

    def update_trigger(self, trigger_id: str, **values) -> None:
        session = get_session()
        try:
            trigger = session.get(ScheduledTrigger, trigger_id)
            for key, value in values.items():
                setattr(trigger, key, value)
            session.commit()
        finally:
            session.close()


@pytest.fixture
def db_engine(tmp_path):
    """Point the server at a fresh SQLite database for one test."""
    engine = configure_engine(f"sqlite:///{tmp_path / 'triggers.db'}")
    clear_backfills()
    yield engine
    clear_backfills()
    dispose_engine()


@pytest.fixture
def sheet(db_engine) -> Sheet:
    return Sheet(db_engine)


@pytest.fixture
def now() -> datetime:
    return utc_now()


@pytest.fixture
def soon(now) -> datetime:
    """A due date two hours out, truncated to the millisecond precision records store."""
    value = now + timedelta(hours=2)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)
