import logging
import signal
import threading

import models  # noqa: F401
from config import get_settings
from database import Base, engine
from scheduler import SchedulerManager

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def init_db() -> None:
    Base.metadata.create_all(engine)


def run() -> None:
    configure_logging()
    init_db()
    manager = SchedulerManager()
    stopped = threading.Event()

    def _shutdown(signum, _frame) -> None:
        logger.info(f"shutdown: signal={signum}")
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    manager.start()
    try:
        stopped.wait()
    finally:
        manager.stop()


if __name__ == "__main__":
    run()
