"""Worker process: event consumption and periodic timer/SLA sweeps.

Run with ``python -m escalator.worker``.
"""

import asyncio
import signal
from typing import Awaitable, Callable

from escalator.core.logging import get_logger, setup_logging
from escalator.engine.pipeline import create_engine
from escalator.engine.scanner import TimerScanner
from escalator.ingest.consumer import EventConsumer
from escalator.items.http import HttpItemStore
from escalator.notification.queue import QueueNotifier
from escalator.storage.redis_client import close_redis_pool, get_redis, init_redis_pool

logger = get_logger(__name__)


async def _supervise(name: str, run: Callable[[], Awaitable[None]]) -> None:
    """Run one service loop; a crash is logged and ends only that service."""
    try:
        await run()
    except asyncio.CancelledError:
        logger.info("Service cancelled", service=name)
        raise
    except Exception:
        logger.exception("Service crashed", service=name)


class Worker:
    """Owns the collaborators shared by the consumer and the scanner."""

    def __init__(self):
        self.items = HttpItemStore()
        self.consumer: EventConsumer | None = None
        self.scanner: TimerScanner | None = None
        self.notifier: QueueNotifier | None = None

    async def run(self) -> None:
        await init_redis_pool()
        redis = get_redis()
        self.notifier = QueueNotifier(redis)
        engine = create_engine(self.items, self.notifier, redis)
        self.consumer = EventConsumer(engine.on_event)
        self.scanner = TimerScanner(engine=engine, items=self.items)

        logger.info("Worker started")
        try:
            await asyncio.gather(
                _supervise("consumer", self.consumer.run),
                _supervise("scanner", self.scanner.start),
            )
        finally:
            await self.close()

    def stop(self) -> None:
        logger.info("Worker stopping")
        if self.consumer:
            self.consumer.stop()
        if self.scanner:
            self.scanner.stop()

    async def close(self) -> None:
        if self.consumer:
            await self.consumer.close()
        await self.items.close()
        if self.notifier:
            await self.notifier.close()
        await close_redis_pool()
        logger.info("Worker stopped")


async def main() -> None:
    setup_logging()
    worker = Worker()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.run()


if __name__ == "__main__":
    asyncio.run(main())
