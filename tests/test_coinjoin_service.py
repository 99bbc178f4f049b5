"""Tests for the coinjoin read side."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from wabiview.coinjoin_service import CoinjoinService
from wabiview.models import CoinjoinTransaction, RoundInfo
from wabiview.timing import utc_now


def entry(txid: str, hours_ago: float, **kwargs) -> CoinjoinTransaction:
    return CoinjoinTransaction(
        txid=txid, first_seen=utc_now() - timedelta(hours=hours_ago), **kwargs
    )


@pytest_asyncio.fixture
async def service(db, coinjoins, rounds):
    return CoinjoinService(db, AsyncMock(), coinjoins, rounds)


class TestStats:
    @pytest.mark.asyncio
    async def test_last_24h_window(self, service, coinjoins):
        await coinjoins.insert(entry("aa" * 32, 1, total_input_value=500_000_000))
        await coinjoins.insert(entry("bb" * 32, 30, total_input_value=700_000_000))

        stats = await service.get_stats()

        assert stats.total_coinjoins == 2
        assert stats.last_24h_count == 1
        assert stats.volume_24h_btc == Decimal("5")

    @pytest.mark.asyncio
    async def test_empty_store(self, service):
        stats = await service.get_stats()

        assert stats.total_coinjoins == 0
        assert stats.last_24h_count == 0
        assert stats.volume_24h_btc == 0


class TestFiltered:
    """Pagination, status filter and txid search."""

    @pytest_asyncio.fixture
    async def stored(self, coinjoins, coordinators):
        alpha, beta = coordinators
        await coinjoins.insert(entry("a1" * 32, 5, coordinator_id=alpha.id))
        await coinjoins.insert(
            entry("a2" * 32, 4, coordinator_id=alpha.id, block_height=100)
        )
        await coinjoins.insert(entry("b1" * 32, 3, coordinator_id=beta.id))
        await coinjoins.insert(entry("c1" * 32, 2))
        await coinjoins.insert(entry("c2" * 32, 1, block_height=101))
        return coordinators

    @pytest.mark.asyncio
    async def test_pages_newest_first(self, service, stored):
        first = await service.get_filtered(page=1, page_size=2)
        last = await service.get_filtered(page=3, page_size=2)

        assert [c.txid for c in first.items] == ["c2" * 32, "c1" * 32]
        assert first.total_count == 5
        assert first.total_pages == 3
        assert [c.txid for c in last.items] == ["a1" * 32]

    @pytest.mark.asyncio
    async def test_page_below_one_is_first_page(self, service, stored):
        result = await service.get_filtered(page=0, page_size=2)

        assert result.page == 1
        assert len(result.items) == 2

    @pytest.mark.asyncio
    async def test_coordinator_filter(self, service, stored):
        alpha = stored[0]
        result = await service.get_filtered(coordinator_id=alpha.id)

        assert {c.txid for c in result.items} == {"a1" * 32, "a2" * 32}

    @pytest.mark.asyncio
    async def test_status_filter(self, service, stored):
        confirmed = await service.get_filtered(status="Confirmed")
        unconfirmed = await service.get_filtered(status="unconfirmed")
        anything = await service.get_filtered(status="bogus")

        assert {c.txid for c in confirmed.items} == {"a2" * 32, "c2" * 32}
        assert unconfirmed.total_count == 3
        assert anything.total_count == 5

    @pytest.mark.asyncio
    async def test_search_is_case_insensitive_substring(self, service, stored):
        result = await service.get_filtered(search="  B1B1 ")

        assert [c.txid for c in result.items] == ["b1" * 32]

    @pytest.mark.asyncio
    async def test_search_escapes_wildcards(self, service, stored):
        result = await service.get_filtered(search="%")

        assert result.total_count == 0

    @pytest.mark.asyncio
    async def test_filters_combine(self, service, stored):
        alpha = stored[0]
        result = await service.get_filtered(
            coordinator_id=alpha.id, status="unconfirmed", search="a1"
        )

        assert [c.txid for c in result.items] == ["a1" * 32]

    @pytest.mark.asyncio
    async def test_get_recent(self, service, stored):
        recent = await service.get_recent(limit=3, confirmed_only=True)

        assert [c.txid for c in recent] == ["c2" * 32, "a2" * 32]


class TestCoordinatorOverview:
    @pytest.mark.asyncio
    async def test_counts_and_current_round(
        self, service, coinjoins, rounds, coordinators
    ):
        alpha, beta = coordinators
        await coinjoins.insert(entry("a1" * 32, 1, coordinator_id=alpha.id))
        await coinjoins.insert(entry("a2" * 32, 48, coordinator_id=alpha.id))
        await rounds.reconcile(alpha.id, [RoundInfo(round_id="live", phase=1)], utc_now())

        overview = {card.coordinator.name: card for card in await service.get_coordinator_overview()}

        assert overview["Alpha"].total_coinjoins == 2
        assert overview["Alpha"].last_24h_coinjoins == 1
        assert overview["Alpha"].current_round.round_id == "live"
        assert overview["Beta"].total_coinjoins == 0
        assert overview["Beta"].current_round is None
