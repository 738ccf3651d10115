# trigger_server/services/webhook.py
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Dict, Optional

import requests
from pydantic_core import to_jsonable_python

from sheets import conf
from sheets.triggers.utils import isoformat
from trigger_server.db.models import ScheduledTrigger, TriggerSchedule

logger = logging.getLogger(__name__)

TIME_BASED_TRIGGER_KIND = "time_based_trigger"


class WebhookDeliveryError(Exception):
    """Raised when a webhook call times out, fails to connect or returns a non-2xx status."""


def build_trigger_payload(
    trigger: ScheduledTrigger,
    base_id: str,
    record: Dict[str, Any],
    schedule: Optional[TriggerSchedule],
) -> Dict[str, Any]:
    """Build the JSON body delivered to the data stream's webhook."""
    retry_count = trigger.retry_count or 0
    rule = None
    if schedule is not None:
        rule = {
            "id": schedule.id,
            "fieldId": schedule.field_id,
            "type": schedule.type,
            "offsetMinutes": schedule.offset_minutes,
            "name": schedule.name,
        }

    return {
        "source": trigger.table_id,
        "kind": TIME_BASED_TRIGGER_KIND,
        "payload": {
            "baseId": base_id,
            "tableId": trigger.table_id,
            "record": to_jsonable_python(record),
            "triggerInfo": {
                "scheduledTime": isoformat(trigger.scheduled_time),
                "originalTime": isoformat(trigger.original_time),
                "retryCount": retry_count,
                "isRetry": retry_count > 0,
                "rule": rule,
            },
        },
    }


def _post_in_background(url: str, payload: Dict[str, Any], timeout: float) -> Future:
    """Start the POST on a daemon thread and return a future for its response."""
    future: Future = Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(requests.post(url, json=payload, timeout=timeout, allow_redirects=False))
        except Exception as e:
            future.set_exception(e)

    threading.Thread(target=run, name="webhook-post", daemon=True).start()
    return future


def deliver_webhook(
    url: str, payload: Dict[str, Any], timeout: float = conf.WEBHOOK_TIMEOUT_SECONDS
) -> requests.Response:
    """
    POST a payload to a webhook URL.

    The whole call (connect, headers and body) is raced against ``timeout``.
    A call that loses the race is abandoned and left to its socket timeout.
    Redirects are not followed, so a 3xx is a failure.

    Raises:
        WebhookDeliveryError: On timeout, connection error or non-2xx response
    """
    future = _post_in_background(url, payload, timeout)
    try:
        response = future.result(timeout=timeout)
    except FutureTimeoutError as e:
        logger.warning("Webhook → %s still running after %ss, abandoning it", url, timeout)
        raise WebhookDeliveryError(f"Webhook timeout after {timeout}s") from e
    except requests.Timeout as e:
        raise WebhookDeliveryError(f"Webhook timeout after {timeout}s") from e
    except requests.RequestException as e:
        raise WebhookDeliveryError(f"Webhook request failed: {e}") from e

    if not 200 <= response.status_code < 300:
        raise WebhookDeliveryError(f"Webhook returned HTTP {response.status_code}")

    logger.debug("Webhook delivered → %s (HTTP %s)", url, response.status_code)
    return response
