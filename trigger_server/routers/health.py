# trigger_server/routers/health.py
from fastapi import APIRouter

from trigger_server.services.backfill import backfill_worker_running, pending_backfills
from trigger_server.services.processor import get_processor

router = APIRouter()


@router.get("/health")
def health_check():
    """Liveness check."""
    return {
        "status": "ok",
        "processor_running": get_processor().running,
        "backfill_worker_running": backfill_worker_running(),
        "pending_backfills": pending_backfills(),
    }
