# trigger_server/services/processor.py
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, Dict, List, NamedTuple, Optional

from sqlalchemy.orm import Session

from sheets import conf
from sheets.catalog import sql_ports
from sheets.ports import PortsFactory, TriggerPorts
from sheets.triggers.models import ACTIVE, INACTIVE, CancelReason, TableInfo, TriggerState
from sheets.triggers.utils import ensure_utc, parse_timestamp, utc_now
from trigger_server.db.engine import get_session
from trigger_server.db.models import DataStream, ScheduledTrigger, TriggerSchedule
from trigger_server.services.webhook import build_trigger_payload, deliver_webhook

logger = logging.getLogger(__name__)


# Structured logging adapter that includes trigger_id and record_id
class TriggerLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        trigger_id = str(extra.get("trigger_id", "unknown"))[:8]
        record_id = str(extra.get("record_id", "unknown"))
        formatted_msg = f"[trigger_id={trigger_id}] [record_id={record_id}] {msg}"
        return formatted_msg, kwargs


class ValidationResult(NamedTuple):
    valid: bool
    reason: Optional[str] = None
    record: Optional[Dict[str, Any]] = None
    table: Optional[TableInfo] = None
    current_time: Optional[datetime] = None


def calculate_next_retry_time(retry_count: int, now: Optional[datetime] = None) -> datetime:
    """Exponential backoff: 5, 25, 125... minutes for retry_count 0, 1, 2..."""
    now = now or utc_now()
    delay_minutes = conf.RETRY_BASE_MINUTES ** (retry_count + 1)
    return now + timedelta(minutes=delay_minutes)


class ScheduledTriggerProcessor:
    """
    Polls the scheduled_trigger queue and delivers due triggers.

    Several processors may run against the same database; they only
    coordinate through row locks taken while claiming a batch.
    """

    def __init__(
        self,
        poll_interval: float = conf.POLL_INTERVAL_SECONDS,
        batch_size: int = conf.BATCH_SIZE,
        max_workers: int = conf.MAX_CONCURRENT_TRIGGERS,
        webhook_timeout: float = conf.WEBHOOK_TIMEOUT_SECONDS,
        stuck_timeout: float = conf.STUCK_TRIGGER_TIMEOUT_SECONDS,
        ports_factory: PortsFactory = sql_ports,
    ) -> None:
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.webhook_timeout = webhook_timeout
        self.stuck_timeout = timedelta(seconds=stuck_timeout)
        self._ports_factory = ports_factory
        self._pool: ThreadPoolExecutor | None = None
        self._thread: threading.Thread | None = None
        self._running = False
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Reset stuck triggers, then start polling in a background thread."""
        with self._lock:
            if self._running:
                logger.warning("Trigger processor already running")
                return

            self.reset_stuck_triggers()
            self._running = True
            self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="trigger")
            self._thread = threading.Thread(target=self._poll_loop, name="trigger-poller", daemon=True)
            self._thread.start()
            logger.info("Trigger processor started (interval %ss, concurrency %d)", self.poll_interval, self.max_workers)

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return

            self._running = False
            if self._thread:
                self._thread.join(timeout=5.0)
                self._thread = None
            if self._pool:
                self._pool.shutdown(wait=False, cancel_futures=True)
                self._pool = None
            logger.info("Trigger processor stopped")

    @property
    def running(self) -> bool:
        return self._running

    def _poll_loop(self) -> None:
        logger.info("Trigger poller started")
        while self._running:
            self.poll_once()

            # Sleep in 1s steps so stop() is honoured quickly
            deadline = time.monotonic() + self.poll_interval
            while self._running and time.monotonic() < deadline:
                time.sleep(min(1.0, max(0.0, deadline - time.monotonic())))

        logger.info("Trigger poller stopped")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def poll_once(self) -> int:
        """Process ready triggers, then retries. Never raises."""
        processed = 0
        try:
            processed += self.process_ready_triggers()
            processed += self.process_retry_triggers()
        except Exception as e:
            logger.error("Error polling scheduled triggers: %s", e, exc_info=True)
        return processed

    def process_ready_triggers(self) -> int:
        now = utc_now()
        trigger_ids = self._claim(
            ScheduledTrigger.state == TriggerState.PENDING.value,
            ScheduledTrigger.scheduled_time <= now,
            order_by=ScheduledTrigger.scheduled_time.asc(),
            now=now,
        )
        return self._dispatch(trigger_ids)

    def process_retry_triggers(self) -> int:
        now = utc_now()
        trigger_ids = self._claim(
            ScheduledTrigger.state == TriggerState.FAILED.value,
            ScheduledTrigger.next_retry_time <= now,
            ScheduledTrigger.retry_count < ScheduledTrigger.max_retries,
            order_by=ScheduledTrigger.next_retry_time.asc(),
            now=now,
        )
        return self._dispatch(trigger_ids)

    def _claim(self, *criteria, order_by, now: datetime) -> List[str]:
        """
        Claim a batch with FOR UPDATE SKIP LOCKED and flip it to PROCESSING.

        The lock is held only for this short transaction; once committed the
        PROCESSING state keeps other processors away from the rows.
        """
        session = get_session()
        try:
            triggers = (
                session.query(ScheduledTrigger)
                .filter(ScheduledTrigger.status == ACTIVE, *criteria)
                .order_by(order_by)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
                .all()
            )
            for trigger in triggers:
                trigger.state = TriggerState.PROCESSING.value
                trigger.last_modified_time = now
            trigger_ids = [trigger.id for trigger in triggers]
            session.commit()
            return trigger_ids
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _dispatch(self, trigger_ids: List[str]) -> int:
        """Run claimed triggers on the worker pool and wait for all of them."""
        if not trigger_ids:
            return 0

        if self._pool is None:
            # Not started (e.g. a one-off poll): run on a temporary pool
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="trigger") as pool:
                return self._wait_all(pool, trigger_ids)
        return self._wait_all(self._pool, trigger_ids)

    def _wait_all(self, pool: ThreadPoolExecutor, trigger_ids: List[str]) -> int:
        futures = {pool.submit(self.process_trigger, trigger_id): trigger_id for trigger_id in trigger_ids}
        completed = 0
        for future in as_completed(futures):
            try:
                future.result()
                completed += 1
            except Exception as e:
                logger.error("Error processing trigger %s: %s", futures[future], e, exc_info=True)
        return completed

    # ------------------------------------------------------------------
    # Per-trigger pipeline
    # ------------------------------------------------------------------
    def process_trigger(self, trigger_id: str) -> Optional[str]:
        """
        Validate and deliver one claimed trigger inside its own transaction.

        Returns:
            The resulting state, or None if the trigger was no longer claimed.
            A database error rolls back and leaves the row PROCESSING for recovery.
        """
        session = get_session()
        try:
            trigger = session.get(ScheduledTrigger, trigger_id)
            if trigger is None or trigger.status != ACTIVE or trigger.state != TriggerState.PROCESSING.value:
                logger.debug("Trigger %s is no longer claimed, skipping", trigger_id)
                return None

            trigger_logger = TriggerLoggerAdapter(logger, {"trigger_id": trigger.id, "record_id": trigger.record_id})
            ports = self._ports_factory(session)

            validation = self.validate_trigger(session, trigger, ports)
            if not validation.valid:
                self.cancel_trigger(trigger, validation.reason or "Validation failed")
                trigger_logger.info("Cancelled: %s", trigger.last_error)
            else:
                self.execute_webhook(session, trigger, validation)
                if trigger.state == TriggerState.FIRED.value:
                    trigger_logger.info("Fired (retry %d)", trigger.retry_count)
                else:
                    trigger_logger.warning(
                        "Delivery failed (%d/%d): %s", trigger.retry_count, trigger.max_retries, trigger.last_error
                    )

            session.commit()
            return trigger.state
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def validate_trigger(self, session: Session, trigger: ScheduledTrigger, ports: TriggerPorts) -> ValidationResult:
        """Check, in order, that everything the trigger depends on still holds."""
        try:
            data_stream = session.get(DataStream, trigger.data_stream_id)
            if data_stream is None:
                return ValidationResult(False, CancelReason.DATA_STREAM_DELETED.value)

            view_id = ports.tables.get_first_view_id(trigger.table_id)
            if view_id is None:
                return ValidationResult(False, CancelReason.NO_VIEWS_FOUND.value)

            record = ports.records.get_record(trigger.table_id, view_id, trigger.record_id)
            if record is None:
                return ValidationResult(False, CancelReason.RECORD_DELETED_OR_INACTIVE.value)

            fields = ports.fields.get_fields([trigger.original_field_id])
            if not fields:
                return ValidationResult(False, CancelReason.FIELD_DELETED.value)
            field = fields[0]
            if field.status != ACTIVE:
                return ValidationResult(False, CancelReason.FIELD_INACTIVE.value)

            current_time = parse_timestamp(record.get(field.db_field_name))
            if current_time is None:
                return ValidationResult(False, CancelReason.TIMESTAMP_NULL.value)

            original_time = ensure_utc(trigger.original_time)
            drift_ms = abs((current_time - original_time).total_seconds()) * 1000
            if drift_ms > conf.TIMESTAMP_TOLERANCE_MS:
                return ValidationResult(False, CancelReason.TIMESTAMP_CHANGED.value, current_time=current_time)

            table = ports.tables.get_table(trigger.table_id)
            return ValidationResult(True, record=record, table=table, current_time=current_time)
        except Exception as e:
            logger.error("Error validating trigger %s: %s", trigger.id, e, exc_info=True)
            return ValidationResult(False, f"{CancelReason.VALIDATION_ERROR.value}:{e}")

    def execute_webhook(self, session: Session, trigger: ScheduledTrigger, validation: ValidationResult) -> None:
        """Deliver the trigger; success marks it FIRED, any failure goes to handle_failure."""
        try:
            data_stream = session.get(DataStream, trigger.data_stream_id)
            if data_stream is None:
                raise RuntimeError("DataStream not found")

            schedule = session.get(TriggerSchedule, trigger.trigger_schedule_id)
            base_id = validation.table.base_id if validation.table else ""
            payload = build_trigger_payload(trigger, base_id, validation.record or {}, schedule)
            deliver_webhook(data_stream.webhook_url, payload, timeout=self.webhook_timeout)

            now = utc_now()
            trigger.state = TriggerState.FIRED.value
            trigger.status = INACTIVE
            trigger.deleted_time = now
            trigger.next_retry_time = None
            trigger.last_modified_time = now
        except Exception as e:
            self.handle_failure(trigger, e)

    def handle_failure(self, trigger: ScheduledTrigger, error: Exception) -> None:
        retry_count = trigger.retry_count or 0
        max_retries = trigger.max_retries or conf.DEFAULT_MAX_RETRIES
        now = utc_now()

        trigger.state = TriggerState.FAILED.value
        trigger.retry_count = retry_count + 1
        trigger.last_error = str(error)
        trigger.last_modified_time = now
        if trigger.retry_count >= max_retries:
            # Terminal: the retry sweep never picks it up again
            trigger.next_retry_time = None
        else:
            trigger.next_retry_time = calculate_next_retry_time(retry_count, now)

    def cancel_trigger(self, trigger: ScheduledTrigger, reason: str) -> None:
        now = utc_now()
        trigger.state = TriggerState.CANCELLED.value
        trigger.status = INACTIVE
        trigger.deleted_time = now
        trigger.next_retry_time = None
        trigger.last_error = reason
        trigger.last_modified_time = now

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------
    def reset_stuck_triggers(self) -> int:
        """Return triggers left PROCESSING by a crashed worker to PENDING."""
        session = get_session()
        try:
            now = utc_now()
            cutoff = now - self.stuck_timeout
            count = (
                session.query(ScheduledTrigger)
                .filter(ScheduledTrigger.status == ACTIVE)
                .filter(ScheduledTrigger.state == TriggerState.PROCESSING.value)
                .filter(ScheduledTrigger.last_modified_time < cutoff)
                .update(
                    {
                        ScheduledTrigger.state: TriggerState.PENDING.value,
                        ScheduledTrigger.last_modified_time: now,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()
            if count:
                logger.warning("Reset %d stuck trigger(s) to PENDING", count)
            return count
        except Exception as e:
            session.rollback()
            logger.error("Error resetting stuck triggers: %s", e, exc_info=True)
            return 0
        finally:
            session.close()


# Global processor instance
_processor: ScheduledTriggerProcessor | None = None
_processor_lock = threading.Lock()


def get_processor() -> ScheduledTriggerProcessor:
    global _processor
    with _processor_lock:
        if _processor is None:
            _processor = ScheduledTriggerProcessor()
        return _processor


def start_processor() -> None:
    """Start the shared trigger processor."""
    get_processor().start()


def stop_processor() -> None:
    """Stop the shared trigger processor."""
    with _processor_lock:
        processor = _processor
    if processor:
        processor.stop()
