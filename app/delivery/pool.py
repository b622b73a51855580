"""Worker pool running delivery workers on background threads.

Run standalone with ``python -m app.delivery``; the web app also starts
a pool from its lifespan when ``DELIVERY_WORKER_COUNT`` is positive.
"""
from __future__ import annotations

import logging
import os
import signal
import socket
import threading
from collections.abc import Callable

from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.delivery.worker import DeliveryWorker, build_delivery_worker

logger = logging.getLogger(__name__)


class DeliveryWorkerPool:
    """Start *size* workers sharing one stop signal; stop them all together."""

    def __init__(
        self,
        size: int,
        worker_factory: Callable[[str], DeliveryWorker] = build_delivery_worker,
        *,
        name_prefix: str | None = None,
    ) -> None:
        if size < 1:
            raise ValueError("size must be at least 1")
        self.size = size
        self._worker_factory = worker_factory
        self._name_prefix = name_prefix or f"{socket.gethostname()}-{os.getpid()}"
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("DeliveryWorkerPool has already been started")
        for index in range(self.size):
            worker = self._worker_factory(f"{self._name_prefix}-{index}")
            thread = threading.Thread(
                target=worker.run_until_stopped,
                args=(self._stop_event,),
                name=worker.worker_id,
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d delivery workers", self.size)

    def stop(self, timeout: float | None = None) -> None:
        """Signal every worker and wait for in-flight cycles to finish."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Delivery worker %s did not stop within %ss", thread.name, timeout)
        logger.info("Delivery worker pool stopped")


def main() -> None:
    setup_logging()
    settings = get_settings()
    pool = DeliveryWorkerPool(max(1, settings.delivery_worker_count))
    shutdown = threading.Event()

    def _handle_signal(signum, _frame) -> None:
        logger.info("Received signal %d, shutting down delivery workers", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    pool.start()
    shutdown.wait()
    pool.stop()
