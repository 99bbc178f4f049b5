"""
Coordinator polling loop.

Each coordinator gets its own schedule. A healthy coordinator is polled
every base interval; one that doesn't answer is polled half as often
after every failure, up to a ceiling, so a dead coordinator isn't
hammered. The first successful poll puts it straight back on the base
interval. Schedules live in memory only: after a restart every
coordinator is simply polled right away.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .config import config
from .coordinator_client import CoordinatorClient
from .database import Database
from .models import Coordinator
from .registry import ManualCoordinatorRegistry
from .round_store import RoundStore
from .timing import utc_now, wait_or_stop

logger = structlog.get_logger()

BACKOFF_FACTOR = 2


@dataclass
class ScheduleState:
    """When to poll a coordinator next and at what interval."""

    next_poll_time: datetime
    interval: timedelta

    def back_off(self, max_interval: timedelta):
        self.interval = min(self.interval * BACKOFF_FACTOR, max_interval)

    def reset(self, base_interval: timedelta):
        self.interval = base_interval


class CoordinatorPoller:
    """Keeps coordinator health and round lists fresh."""

    def __init__(
        self,
        database: Database,
        client: CoordinatorClient,
        registry: Optional[ManualCoordinatorRegistry] = None,
        rounds: Optional[RoundStore] = None,
        base_interval: Optional[float] = None,
        max_interval: Optional[float] = None,
    ):
        self.db = database
        self.client = client
        self.registry = registry or ManualCoordinatorRegistry()
        self.rounds = rounds or RoundStore(database)
        if base_interval is None:
            base_interval = config.poll_base_interval
        if max_interval is None:
            max_interval = config.poll_max_interval
        self.base_interval = timedelta(seconds=base_interval)
        self.max_interval = timedelta(seconds=max_interval)
        self.schedule: dict[int, ScheduleState] = {}

        # Stats for the status endpoint
        self.passes_completed = 0
        self.last_pass_at: datetime | None = None

    async def initialize_coordinators(self) -> int:
        """Make sure every registry coordinator has a row."""
        return await self.db.ensure_coordinators(self.registry.get_coordinators())

    def _state_for(self, coordinator_id: int, now: datetime) -> ScheduleState:
        if coordinator_id not in self.schedule:
            self.schedule[coordinator_id] = ScheduleState(
                next_poll_time=now, interval=self.base_interval
            )
        return self.schedule[coordinator_id]

    async def poll_due_coordinators(self) -> int:
        """
        Poll every coordinator whose next poll time has come.

        A failure polling one coordinator never stops the others.

        Returns:
            Number of coordinators polled.
        """
        coordinators = await self.db.list_coordinators()
        now = utc_now()
        polled = 0

        for coordinator in coordinators:
            state = self._state_for(coordinator.id, now)
            if now < state.next_poll_time:
                continue

            try:
                await self.poll_coordinator(coordinator, state)
            except Exception as e:
                state.back_off(self.max_interval)
                logger.error(
                    "Error polling coordinator",
                    coordinator=coordinator.name,
                    url=coordinator.url,
                    error=str(e),
                )

            state.next_poll_time = utc_now() + state.interval
            polled += 1

        self.passes_completed += 1
        self.last_pass_at = utc_now()
        return polled

    async def poll_coordinator(
        self, coordinator: Coordinator, state: ScheduleState
    ) -> bool:
        """
        Poll one coordinator and write back what we learned.

        All network calls happen before the store is touched.

        Returns:
            True if the coordinator was online.
        """
        checked_at = utc_now()

        if not await self.client.is_online(coordinator.url):
            failures = await self.db.record_coordinator_failure(
                coordinator.id, checked_at
            )
            state.back_off(self.max_interval)
            logger.warning(
                "Coordinator is offline",
                coordinator=coordinator.name,
                failures=failures,
                next_poll_in=state.interval.total_seconds(),
            )
            return False

        status = await self.client.get_status(coordinator.url)
        rounds = await self.client.get_rounds(coordinator.url)

        params = status.coordinator_parameters if status else None
        seen_at = utc_now()
        await self.db.record_coordinator_success(
            coordinator.id,
            seen_at,
            fee_rate=params.coordination_fee_rate if params else None,
            min_input_count=params.min_input_count_by_round if params else None,
        )

        if rounds is not None:
            applied = await self.rounds.reconcile(coordinator.id, rounds, seen_at)
            logger.debug(
                "Reconciled rounds",
                coordinator=coordinator.name,
                reported=len(rounds),
                applied=applied,
            )

        state.reset(self.base_interval)
        logger.debug("Coordinator is online", coordinator=coordinator.name)
        return True

    def seconds_until_next_poll(self) -> float:
        """Time until the earliest scheduled poll, or the base interval if none."""
        if not self.schedule:
            return self.base_interval.total_seconds()
        next_due = min(s.next_poll_time for s in self.schedule.values())
        return max((next_due - utc_now()).total_seconds(), 0.0)

    async def run(self, stop_event: asyncio.Event):
        """Poll until ``stop_event`` is set."""
        logger.info(
            "Coordinator poller starting",
            base_interval=self.base_interval.total_seconds(),
            max_interval=self.max_interval.total_seconds(),
        )

        try:
            await self.initialize_coordinators()
        except Exception as e:
            logger.error("Failed to initialize coordinators", error=str(e))

        while not stop_event.is_set():
            try:
                await self.poll_due_coordinators()
                delay = self.seconds_until_next_poll()
            except Exception as e:
                logger.error("Error during coordinator polling", error=str(e))
                delay = self.base_interval.total_seconds()

            if await wait_or_stop(stop_event, delay):
                break

        logger.info("Coordinator poller stopped")
