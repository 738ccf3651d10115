# trigger_server/db/models.py

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text, func, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class DataStream(Base):
    """Webhook destination configured for one table."""

    __tablename__ = "data_stream"

    id = Column(String, primary_key=True)  # UUID
    table_id = Column(String, nullable=False, index=True)
    webhook_url = Column(String, nullable=False)
    trigger_type = Column(String, nullable=False, default="EVENT_BASED")  # "EVENT_BASED" or "TIME_BASED"
    event_types = Column(JSON, nullable=True)  # e.g. ["create_record", "update_record"] for event-based streams
    is_streaming = Column(Boolean, default=True, nullable=False)
    created_time = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_modified_time = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class TriggerSchedule(Base):
    """Persisted time-based rule belonging to a data stream."""

    __tablename__ = "trigger_schedule"

    id = Column(String, primary_key=True)  # UUID
    data_stream_id = Column(String, ForeignKey("data_stream.id"), nullable=False, index=True)
    field_id = Column(Integer, nullable=False)
    type = Column(String, nullable=False)  # "BEFORE", "EXACT", "AFTER"
    offset_minutes = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active", index=True)
    deleted_time = Column(DateTime(timezone=True), nullable=True)
    created_time = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class ScheduledTrigger(Base):
    """One concrete future webhook firing for one record under one rule."""

    __tablename__ = "scheduled_trigger"

    id = Column(String, primary_key=True)  # UUID
    data_stream_id = Column(String, ForeignKey("data_stream.id"), nullable=False)
    trigger_schedule_id = Column(String, ForeignKey("trigger_schedule.id"), nullable=False)
    record_id = Column(Integer, nullable=False)
    table_id = Column(String, nullable=False)
    original_field_id = Column(Integer, nullable=False)
    # Immutable once created; a new value means cancel-and-recreate
    scheduled_time = Column(DateTime(timezone=True), nullable=False)
    original_time = Column(DateTime(timezone=True), nullable=False)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_retry_time = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    state = Column(String, nullable=False, default="PENDING")  # PENDING, PROCESSING, FIRED, FAILED, CANCELLED
    status = Column(String, nullable=False, default="active")
    deleted_time = Column(DateTime(timezone=True), nullable=True)
    created_time = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    last_modified_time = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_scheduled_trigger_ready", "status", "state", "scheduled_time"),
        Index("ix_scheduled_trigger_retry", "status", "state", "next_retry_time"),
        Index("ix_scheduled_trigger_record", "table_id", "record_id", "status"),
        # At most one live instance per (rule, record)
        Index(
            "uq_scheduled_trigger_active_rule_record",
            "trigger_schedule_id",
            "record_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
