"""
Runs the two background loops side by side.

The coordinator poller keeps rounds fresh and the coinjoin scanner
turns them (plus the mempool) into coinjoin records. They share the
database and one stop event, and nothing else.
"""

import asyncio
from typing import Optional

import structlog

from .health import HealthServer
from .poller import CoordinatorPoller
from .scanner import CoinjoinScanner
from .timing import utc_now, wait_or_stop

logger = structlog.get_logger()

STATUS_REFRESH_INTERVAL = 15.0
SHUTDOWN_TIMEOUT = 30.0


class MonitorOrchestrator:
    """Lifecycle of the poller, the scanner and the status server."""

    def __init__(
        self,
        poller: CoordinatorPoller,
        scanner: CoinjoinScanner,
        health_server: Optional[HealthServer] = None,
    ):
        self.poller = poller
        self.scanner = scanner
        self.health_server = health_server
        self.stop_event = asyncio.Event()
        self.background_tasks: list[asyncio.Task] = []
        self.started_at = None

    @property
    def is_running(self) -> bool:
        return bool(self.background_tasks) and not self.stop_event.is_set()

    async def start(self):
        """
        Start both loops and wait until they finish.

        They only finish once :meth:`stop` sets the stop event. A loop
        that crashes anyway is logged and re-raised.
        """
        self.stop_event.clear()
        self.started_at = utc_now()
        logger.info("Starting coinjoin monitor")

        if self.health_server:
            await self.health_server.start()
            self._push_status()

        self.background_tasks = [
            asyncio.create_task(
                self.poller.run(self.stop_event), name="coordinator-poller"
            ),
            asyncio.create_task(
                self.scanner.run(self.stop_event), name="coinjoin-scanner"
            ),
        ]
        if self.health_server:
            self.background_tasks.append(
                asyncio.create_task(self._refresh_status(), name="status-refresh")
            )

        try:
            await asyncio.gather(*self.background_tasks)
        except asyncio.CancelledError:
            logger.info("Background tasks cancelled")
        except Exception as e:
            logger.error(
                "Background task crashed",
                error=str(e),
                task_count=len(self.background_tasks),
            )
            raise

    async def stop(self):
        """Ask both loops to stop, then cancel whatever doesn't in time."""
        logger.info("Shutting down coinjoin monitor")
        self.stop_event.set()

        pending = [task for task in self.background_tasks if not task.done()]
        if pending:
            done, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_TIMEOUT)
            if still_running:
                logger.warning(
                    "Shutdown timeout - cancelling tasks",
                    tasks=[task.get_name() for task in still_running],
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        if self.health_server:
            await self.health_server.stop()

        logger.info("Coinjoin monitor stopped cleanly")

    def _push_status(self):
        self.health_server.update_status(
            started_at=self.started_at,
            coordinators_tracked=len(self.poller.schedule),
            poll_passes=self.poller.passes_completed,
            last_poll_at=self.poller.last_pass_at,
            scans_completed=self.scanner.scans_completed,
            coinjoins_detected=self.scanner.coinjoins_detected,
            last_scan_at=self.scanner.last_scan_at,
        )

    async def _refresh_status(self):
        while not await wait_or_stop(self.stop_event, STATUS_REFRESH_INTERVAL):
            self._push_status()
