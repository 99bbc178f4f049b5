"""Tests for the coordinator poller."""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from wabiview.models import CoordinatorParameters, CoordinatorStatus, RoundInfo
from wabiview.poller import CoordinatorPoller, ScheduleState
from wabiview.timing import utc_now


@pytest.fixture
def client(mocker):
    """Coordinator client that reports every coordinator online."""
    client = mocker.AsyncMock()
    client.is_online.return_value = True
    client.get_status.return_value = CoordinatorStatus(
        coordinator_parameters=CoordinatorParameters(
            coordination_fee_rate=Decimal("0.003"), min_input_count_by_round=21
        )
    )
    client.get_rounds.return_value = [RoundInfo(round_id="r1", phase=0)]
    return client


@pytest_asyncio.fixture
async def poller(db, client, registry, rounds):
    return CoordinatorPoller(
        db, client, registry, rounds, base_interval=90, max_interval=360
    )


class TestScheduleState:
    def test_backoff_doubles_up_to_ceiling(self):
        state = ScheduleState(next_poll_time=utc_now(), interval=timedelta(seconds=90))
        ceiling = timedelta(seconds=360)

        observed = []
        for _ in range(3):
            state.back_off(ceiling)
            observed.append(state.interval.total_seconds())

        assert observed == [180, 360, 360]

        state.reset(timedelta(seconds=90))
        assert state.interval == timedelta(seconds=90)


class TestCoordinatorPoller:
    """Polling, backoff and write-back."""

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, poller, db):
        assert await poller.initialize_coordinators() == 2
        assert await poller.initialize_coordinators() == 0
        assert len(await db.list_coordinators()) == 2

    @pytest.mark.asyncio
    async def test_successful_poll_writes_health_and_rounds(
        self, poller, db, rounds, coordinators
    ):
        polled = await poller.poll_due_coordinators()

        assert polled == 2
        alpha = await db.get_coordinator(coordinators[0].id)
        assert alpha.is_online
        assert alpha.failure_count == 0
        assert alpha.last_seen is not None
        assert alpha.fee_rate == Decimal("0.003")
        assert alpha.min_input_count == 21
        assert await rounds.get(alpha.id, "r1") is not None

    @pytest.mark.asyncio
    async def test_offline_coordinator_backs_off_then_recovers(
        self, poller, db, client, coordinators
    ):
        alpha = coordinators[0]
        state = ScheduleState(next_poll_time=utc_now(), interval=poller.base_interval)
        client.is_online.return_value = False

        intervals = []
        for _ in range(3):
            assert not await poller.poll_coordinator(alpha, state)
            intervals.append(state.interval.total_seconds())

        assert intervals == [180, 360, 360]
        stored = await db.get_coordinator(alpha.id)
        assert not stored.is_online
        assert stored.failure_count == 3
        client.get_rounds.assert_not_called()

        client.is_online.return_value = True
        assert await poller.poll_coordinator(alpha, state)

        assert state.interval.total_seconds() == 90
        assert (await db.get_coordinator(alpha.id)).failure_count == 0

    @pytest.mark.asyncio
    async def test_one_failing_coordinator_does_not_stop_others(
        self, poller, client, rounds, coordinators
    ):
        alpha, beta = coordinators

        async def is_online(url):
            if url == alpha.url:
                raise RuntimeError("boom")
            return True

        client.is_online.side_effect = is_online

        polled = await poller.poll_due_coordinators()

        assert polled == 2
        assert poller.schedule[alpha.id].interval.total_seconds() == 180
        assert poller.schedule[beta.id].interval.total_seconds() == 90
        assert await rounds.get(beta.id, "r1") is not None
        assert await rounds.get(alpha.id, "r1") is None

    @pytest.mark.asyncio
    async def test_coordinators_not_due_are_skipped(self, poller, client, coordinators):
        await poller.poll_due_coordinators()
        client.is_online.reset_mock()

        polled = await poller.poll_due_coordinators()

        assert polled == 0
        client.is_online.assert_not_called()
        assert 0 < poller.seconds_until_next_poll() <= 90

    @pytest.mark.asyncio
    async def test_missing_round_list_keeps_rounds(
        self, poller, client, rounds, coordinators
    ):
        alpha = coordinators[0]
        await poller.poll_due_coordinators()
        client.get_rounds.return_value = None
        client.get_status.return_value = None

        assert await poller.poll_coordinator(alpha, poller.schedule[alpha.id])

        assert await rounds.get(alpha.id, "r1") is not None

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, poller):
        stop_event = asyncio.Event()
        task = asyncio.create_task(poller.run(stop_event))

        await asyncio.sleep(0.1)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        assert poller.passes_completed >= 1
