# trigger_server/services/backfill.py
import heapq
import itertools
import logging
import threading
import time
from typing import List, NamedTuple, Optional, Sequence, Tuple

from sheets import conf
from sheets.catalog import sql_ports
from sheets.ports import PortsFactory
from trigger_server.services.scheduler import BackfillError, backfill_data_stream, backfill_schedules

logger = logging.getLogger(__name__)


class BackfillJob(NamedTuple):
    run_at: float
    seq: int
    data_stream_id: str
    # None means every active rule of the data stream
    schedule_ids: Optional[Tuple[str, ...]]
    attempt: int
    ports_factory: PortsFactory


# Global worker thread
_worker_thread: threading.Thread | None = None
_worker_running = False
_worker_lock = threading.Lock()

# Pending jobs, a heap ordered by run_at
_jobs: List[BackfillJob] = []
_jobs_lock = threading.Lock()
_seq = itertools.count()


def _push(
    data_stream_id: str,
    schedule_ids: Optional[Tuple[str, ...]],
    attempt: int,
    delay: float,
    ports_factory: PortsFactory,
) -> None:
    job = BackfillJob(time.monotonic() + delay, next(_seq), data_stream_id, schedule_ids, attempt, ports_factory)
    with _jobs_lock:
        heapq.heappush(_jobs, job)


def enqueue_backfill(
    data_stream_id: str,
    schedule_ids: Optional[Sequence[str]] = None,
    ports_factory: PortsFactory = sql_ports,
) -> None:
    """
    Queue a backfill for some rules of a data stream, or all of them when
    ``schedule_ids`` is None. It runs after BACKFILL_DELAY_SECONDS.
    """
    if schedule_ids is not None:
        if not schedule_ids:
            return
        schedule_ids = tuple(schedule_ids)
    _push(data_stream_id, schedule_ids, 1, conf.BACKFILL_DELAY_SECONDS, ports_factory)
    logger.debug("Queued backfill for data stream %s (rules: %s)", data_stream_id, schedule_ids or "all")


def pending_backfills() -> int:
    with _jobs_lock:
        return len(_jobs)


def clear_backfills() -> None:
    """Drop every queued job."""
    with _jobs_lock:
        _jobs.clear()


def calculate_backfill_retry_delay(attempt: int) -> float:
    """Exponential backoff: 10, 20, 40... seconds after attempt 1, 2, 3..."""
    return conf.BACKFILL_RETRY_BASE_SECONDS * 2 ** (attempt - 1)


def _run_job(job: BackfillJob) -> None:
    try:
        if job.schedule_ids is None:
            created = backfill_data_stream(job.data_stream_id, job.ports_factory)
        else:
            created = backfill_schedules(job.schedule_ids, job.ports_factory)
        logger.info("Backfill for data stream %s created %d trigger(s)", job.data_stream_id, created)
        return
    except BackfillError as e:
        error: Exception = e
        retry_ids: Optional[Tuple[str, ...]] = tuple(e.schedule_ids) or job.schedule_ids
    except Exception as e:
        error = e
        retry_ids = job.schedule_ids

    if job.attempt >= conf.BACKFILL_MAX_ATTEMPTS:
        logger.error(
            "Backfill for data stream %s failed after %d attempt(s): %s",
            job.data_stream_id,
            job.attempt,
            error,
            exc_info=error,
        )
        return

    delay = calculate_backfill_retry_delay(job.attempt)
    logger.warning(
        "Backfill for data stream %s failed (attempt %d/%d), retrying in %ss: %s",
        job.data_stream_id,
        job.attempt,
        conf.BACKFILL_MAX_ATTEMPTS,
        delay,
        error,
    )
    _push(job.data_stream_id, retry_ids, job.attempt + 1, delay, job.ports_factory)


def run_due_backfills(now: Optional[float] = None) -> int:
    """
    Run every job due at ``now`` (monotonic seconds). Retries queued by
    this call are not run until a later one.

    Returns:
        Number of jobs run
    """
    now = time.monotonic() if now is None else now
    due: List[BackfillJob] = []
    with _jobs_lock:
        while _jobs and _jobs[0].run_at <= now:
            due.append(heapq.heappop(_jobs))

    for job in due:
        _run_job(job)
    return len(due)


def _worker_thread_func() -> None:
    """Background worker that runs queued backfills once due."""
    while _worker_running:
        try:
            run_due_backfills()
        except Exception as e:
            logger.error("Error in backfill worker: %s", e, exc_info=True)

        time.sleep(1)


def start_backfill_worker() -> None:
    """Start the backfill worker thread."""
    global _worker_thread, _worker_running

    with _worker_lock:
        if _worker_running:
            logger.warning("Backfill worker already running")
            return

        _worker_running = True
        _worker_thread = threading.Thread(target=_worker_thread_func, name="backfill-worker", daemon=True)
        _worker_thread.start()
        logger.info("Backfill worker started")


def stop_backfill_worker() -> None:
    """Stop the backfill worker thread; jobs still queued are logged."""
    global _worker_thread, _worker_running

    with _worker_lock:
        if not _worker_running:
            return

        _worker_running = False
        if _worker_thread:
            _worker_thread.join(timeout=5.0)
            _worker_thread = None

        left = pending_backfills()
        if left:
            logger.warning("Backfill worker stopped with %d job(s) still queued", left)
        else:
            logger.info("Backfill worker stopped")


def backfill_worker_running() -> bool:
    return _worker_running
