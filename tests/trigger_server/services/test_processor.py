# tests/trigger_server/services/test_processor.py
"""Test the scheduled trigger processor state machine."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from sheets.ports import TriggerPorts
from sheets.triggers.models import CancelReason, RecordEvent, RecordEventType, TriggerState
from sheets.triggers.utils import ensure_utc, utc_now
from trigger_server.services.data_streams import list_trigger_schedules
from trigger_server.services.processor import (
    ScheduledTriggerProcessor,
    calculate_next_retry_time,
    get_processor,
)
from trigger_server.services.scheduler import handle_record_event
from trigger_server.services.webhook import WebhookDeliveryError


@pytest.fixture
def processor():
    return ScheduledTriggerProcessor(poll_interval=1, batch_size=10, max_workers=1, webhook_timeout=5)


@pytest.fixture
def due_trigger(sheet, now):
    """A record whose EXACT trigger is already due, scheduled through the normal event path."""
    due = now - timedelta(seconds=10)
    due = due.replace(microsecond=(due.microsecond // 1000) * 1000)
    sheet.add_time_based_stream()
    sheet.set_record(1, due, title="Call the customer")
    handle_record_event(RecordEvent(table_id=sheet.table_id, record_ids=[1], event_type=RecordEventType.CREATE_RECORD))
    trigger = sheet.triggers(record_id=1, active_only=True)[0]
    return trigger.id, due


class TestCalculateNextRetryTime:
    """Test calculate_next_retry_time() function."""

    @pytest.mark.parametrize("retry_count,minutes", [(0, 5), (1, 25), (2, 125)])
    def test_exponential_backoff(self, retry_count, minutes):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert calculate_next_retry_time(retry_count, now) == now + timedelta(minutes=minutes)


class TestFire:
    """Test successful deliveries."""

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_due_trigger_fires(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, due = due_trigger

        processed = processor.poll_once()

        assert processed == 1
        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.FIRED.value
        assert trigger.status == "inactive"
        assert trigger.deleted_time is not None
        assert trigger.next_retry_time is None

        mock_deliver.assert_called_once()
        url, payload = mock_deliver.call_args[0]
        assert url == sheet.webhook_url
        assert mock_deliver.call_args[1]["timeout"] == 5
        assert payload["source"] == sheet.table_id
        assert payload["kind"] == "time_based_trigger"
        assert payload["payload"]["baseId"] == sheet.base_id
        assert payload["payload"]["record"]["title"] == "Call the customer"
        info = payload["payload"]["triggerInfo"]
        assert info["retryCount"] == 0
        assert info["isRetry"] is False
        assert info["rule"]["type"] == "EXACT"
        assert info["rule"]["fieldId"] == sheet.due_field_id

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_future_trigger_is_not_claimed(self, mock_deliver, processor, sheet, soon):
        sheet.add_time_based_stream()
        sheet.set_record(1, soon)
        handle_record_event(RecordEvent(table_id=sheet.table_id, record_ids=[1], event_type=RecordEventType.CREATE_RECORD))

        assert processor.poll_once() == 0
        mock_deliver.assert_not_called()
        assert sheet.triggers(record_id=1)[0].state == TriggerState.PENDING.value

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_small_drift_within_tolerance_fires(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, due = due_trigger
        sheet.set_record(1, due + timedelta(milliseconds=500))

        processor.poll_once()

        assert sheet.get_trigger(trigger_id).state == TriggerState.FIRED.value
        mock_deliver.assert_called_once()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_fired_trigger_is_not_refired(self, mock_deliver, processor, sheet, due_trigger):
        processor.poll_once()
        processor.poll_once()

        mock_deliver.assert_called_once()


class TestCancelAtFireTime:
    """Test validation failures that cancel a trigger without calling the webhook."""

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_timestamp_changed(self, mock_deliver, processor, sheet, due_trigger):
        """The stored original time no longer matches the record."""
        trigger_id, due = due_trigger
        sheet.set_record(1, due + timedelta(seconds=5))

        processor.poll_once()

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.CANCELLED.value
        assert trigger.status == "inactive"
        assert trigger.last_error == CancelReason.TIMESTAMP_CHANGED.value
        mock_deliver.assert_not_called()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_timestamp_cleared(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        sheet.set_record(1, None)

        processor.poll_once()

        assert sheet.get_trigger(trigger_id).last_error == CancelReason.TIMESTAMP_NULL.value
        mock_deliver.assert_not_called()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_record_deleted(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        sheet.delete_record(1)

        processor.poll_once()

        assert sheet.get_trigger(trigger_id).last_error == CancelReason.RECORD_DELETED_OR_INACTIVE.value
        mock_deliver.assert_not_called()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_field_inactive(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        sheet.set_field_status(sheet.due_field_id, "inactive")

        processor.poll_once()

        assert sheet.get_trigger(trigger_id).last_error == CancelReason.FIELD_INACTIVE.value
        mock_deliver.assert_not_called()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_no_views(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        sheet.delete_view()

        processor.poll_once()

        assert sheet.get_trigger(trigger_id).last_error == CancelReason.NO_VIEWS_FOUND.value
        mock_deliver.assert_not_called()

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_validation_exception_cancels(self, mock_deliver, sheet, due_trigger):
        """Unexpected errors during validation cancel instead of retrying."""
        trigger_id, _ = due_trigger
        tables = MagicMock()
        tables.get_first_view_id.side_effect = RuntimeError("catalog unavailable")
        processor = ScheduledTriggerProcessor(
            max_workers=1,
            ports_factory=lambda session: TriggerPorts(records=MagicMock(), fields=MagicMock(), tables=tables),
        )

        processor.poll_once()

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.CANCELLED.value
        assert trigger.last_error.startswith(f"{CancelReason.VALIDATION_ERROR.value}:")
        assert "catalog unavailable" in trigger.last_error
        mock_deliver.assert_not_called()


class TestRetries:
    """Test failed deliveries and backoff."""

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_first_failure_schedules_retry(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        mock_deliver.side_effect = WebhookDeliveryError("Webhook returned HTTP 503")

        before = utc_now()
        processor.poll_once()

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.FAILED.value
        assert trigger.status == "active"
        assert trigger.retry_count == 1
        assert trigger.last_error == "Webhook returned HTTP 503"
        next_retry = ensure_utc(trigger.next_retry_time)
        assert before + timedelta(minutes=5) <= next_retry <= utc_now() + timedelta(minutes=5)

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_retry_not_picked_up_before_backoff(self, mock_deliver, processor, sheet, due_trigger):
        mock_deliver.side_effect = WebhookDeliveryError("boom")

        processor.poll_once()
        processor.poll_once()

        assert mock_deliver.call_count == 1

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_three_timeouts_end_in_terminal_failure(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        mock_deliver.side_effect = WebhookDeliveryError("Webhook timeout after 30s")

        for attempt in range(3):
            processor.poll_once()
            trigger = sheet.get_trigger(trigger_id)
            assert trigger.retry_count == attempt + 1
            if trigger.next_retry_time is not None:
                sheet.update_trigger(trigger_id, next_retry_time=utc_now() - timedelta(seconds=1))

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.FAILED.value
        assert trigger.retry_count == 3
        assert trigger.next_retry_time is None
        assert mock_deliver.call_count == 3

        # Retry payloads are flagged
        retry_info = mock_deliver.call_args_list[1][0][1]["payload"]["triggerInfo"]
        assert retry_info["isRetry"] is True
        assert retry_info["retryCount"] == 1

        # Terminal failures are never claimed again
        assert processor.poll_once() == 0
        assert mock_deliver.call_count == 3

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_retry_succeeds(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger
        mock_deliver.side_effect = [WebhookDeliveryError("boom"), None]

        processor.poll_once()
        sheet.update_trigger(trigger_id, next_retry_time=utc_now() - timedelta(seconds=1))
        processor.poll_once()

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.FIRED.value
        assert trigger.retry_count == 1
        assert trigger.next_retry_time is None

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_retry_cancelled_after_record_deleted(self, mock_deliver, processor, sheet, due_trigger):
        """A retry whose record is gone is cancelled and keeps no retry time."""
        trigger_id, _ = due_trigger
        mock_deliver.side_effect = WebhookDeliveryError("Webhook returned HTTP 503")

        processor.poll_once()
        assert sheet.get_trigger(trigger_id).next_retry_time is not None

        sheet.update_trigger(trigger_id, next_retry_time=utc_now() - timedelta(seconds=1))
        sheet.delete_record(1)
        processor.poll_once()

        trigger = sheet.get_trigger(trigger_id)
        assert trigger.state == TriggerState.CANCELLED.value
        assert trigger.status == "inactive"
        assert trigger.last_error == CancelReason.RECORD_DELETED_OR_INACTIVE.value
        assert trigger.next_retry_time is None
        assert mock_deliver.call_count == 1


class TestProcessTrigger:
    """Test process_trigger() on rows that were not claimed."""

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_unclaimed_trigger_is_skipped(self, mock_deliver, processor, sheet, due_trigger):
        trigger_id, _ = due_trigger

        assert processor.process_trigger(trigger_id) is None
        assert sheet.get_trigger(trigger_id).state == TriggerState.PENDING.value
        mock_deliver.assert_not_called()

    def test_unknown_trigger(self, processor, sheet):
        assert processor.process_trigger("missing") is None


class TestResetStuckTriggers:
    """Test reset_stuck_triggers() recovery."""

    def test_resets_only_old_processing_rows(self, processor, sheet, soon):
        data_stream_id = sheet.add_time_based_stream([sheet.rule("EXACT"), sheet.rule("AFTER", 10)])
        exact_id, after_id = [schedule.id for schedule in list_trigger_schedules(data_stream_id)]
        stuck = sheet.add_trigger(
            data_stream_id,
            exact_id,
            1,
            soon,
            state=TriggerState.PROCESSING,
            last_modified_time=utc_now() - timedelta(minutes=10),
        )
        fresh = sheet.add_trigger(
            data_stream_id,
            after_id,
            1,
            soon,
            state=TriggerState.PROCESSING,
            last_modified_time=utc_now() - timedelta(minutes=1),
        )

        assert processor.reset_stuck_triggers() == 1
        assert sheet.get_trigger(stuck).state == TriggerState.PENDING.value
        assert sheet.get_trigger(fresh).state == TriggerState.PROCESSING.value


class TestPollIsolation:
    """Test that polling survives failures."""

    def test_poll_once_swallows_claim_errors(self, processor, sheet):
        with patch.object(processor, "_claim", side_effect=RuntimeError("database unavailable")):
            assert processor.poll_once() == 0

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_one_bad_trigger_does_not_block_others(self, mock_deliver, processor, sheet, now):
        due = now - timedelta(seconds=10)
        due = due.replace(microsecond=(due.microsecond // 1000) * 1000)
        sheet.add_time_based_stream()
        sheet.set_record(1, due)
        sheet.set_record(2, due)
        handle_record_event(RecordEvent(table_id=sheet.table_id, record_ids=[1, 2], event_type=RecordEventType.CREATE_RECORD))

        original = processor.process_trigger
        record_one = sheet.triggers(record_id=1)[0].id

        def flaky(trigger_id):
            if trigger_id == record_one:
                raise RuntimeError("lost connection")
            return original(trigger_id)

        with patch.object(processor, "process_trigger", side_effect=flaky):
            assert processor.poll_once() == 1

        assert sheet.triggers(record_id=2)[0].state == TriggerState.FIRED.value
        # Left claimed for recovery
        assert sheet.get_trigger(record_one).state == TriggerState.PROCESSING.value


class TestLifecycle:
    """Test start() and stop()."""

    @patch("trigger_server.services.processor.deliver_webhook")
    def test_start_and_stop(self, mock_deliver, sheet):
        processor = ScheduledTriggerProcessor(poll_interval=60, max_workers=1)

        processor.start()
        try:
            assert processor.running
        finally:
            processor.stop()

        assert not processor.running

    def test_get_processor_is_shared(self):
        assert get_processor() is get_processor()
