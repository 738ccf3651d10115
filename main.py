import logging
import signal
import threading

logging.getLogger().handlers.clear()
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


def run_worker() -> None:
    """Run the trigger processor without the HTTP API until interrupted."""
    from trigger_server.db.engine import configure_engine, dispose_engine
    from trigger_server.services.processor import start_processor, stop_processor

    stop_event = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop_event.set())

    configure_engine()
    start_processor()
    logger.info("Trigger worker running. Press Ctrl+C to stop.")
    try:
        while not stop_event.is_set():
            stop_event.wait(1)
    except KeyboardInterrupt:
        pass
    finally:
        stop_processor()
        dispose_engine()
        logger.info("Trigger worker stopped")


if __name__ == "__main__":
    run_worker()
