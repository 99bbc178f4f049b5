"""Tests for coinjoin detection and attribution."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from wabiview.coinjoin_service import CoinjoinService, TransactionNotFoundError
from wabiview.models import CoinjoinTransaction, RoundInfo
from wabiview.scanner import CoinjoinScanner
from wabiview.timing import utc_now

from .conftest import coinjoin_tx, make_tx

COINJOIN_TXID = "c0" * 32
PAYMENT_TXID = "d0" * 32
BLOCK_HASH = "0b" * 32


@pytest.fixture
def rpc():
    """Node with one coinjoin and one ordinary payment in the mempool."""
    transactions = {
        COINJOIN_TXID: coinjoin_tx(),
        PAYMENT_TXID: make_tx(1, [0.01, 0.5]),
    }

    async def get_raw_transaction(txid, verbose=True):
        return transactions.get(txid)

    rpc = AsyncMock()
    rpc.transactions = transactions
    rpc.get_raw_mempool.return_value = [PAYMENT_TXID, COINJOIN_TXID]
    rpc.get_raw_transaction.side_effect = get_raw_transaction
    rpc.get_block.return_value = {"hash": BLOCK_HASH, "height": 831540}
    rpc.get_block_count.return_value = 831545
    return rpc


@pytest_asyncio.fixture
async def service(db, rpc, coinjoins, rounds):
    return CoinjoinService(db, rpc, coinjoins, rounds)


@pytest_asyncio.fixture
async def scanner(rpc, service, rounds, coinjoins):
    return CoinjoinScanner(
        rpc,
        service,
        rounds,
        coinjoins,
        scan_interval=60,
        startup_delay=0,
        attribution_window=600,
    )


async def end_round(rounds, coordinator, round_id, minutes_ago):
    seen_at = utc_now() - timedelta(minutes=minutes_ago)
    await rounds.reconcile(coordinator.id, [RoundInfo(round_id=round_id, phase=4)], seen_at)
    return await rounds.get(coordinator.id, round_id)


class TestMempoolScan:
    """Heuristic detection from the mempool."""

    @pytest.mark.asyncio
    async def test_records_only_coinjoins(self, scanner, coinjoins, coordinators):
        recorded = await scanner.scan_mempool()

        assert recorded == 1
        assert await coinjoins.exists(COINJOIN_TXID)
        assert not await coinjoins.exists(PAYMENT_TXID)
        assert scanner.coinjoins_detected == 1

        stored = await coinjoins.get(COINJOIN_TXID)
        assert stored.input_count == 6
        assert stored.output_count == 8
        assert stored.total_output_value == 109_230_000
        assert not stored.fee_known
        assert not stored.is_confirmed

    @pytest.mark.asyncio
    async def test_attributes_to_recently_ended_round(
        self, scanner, coinjoins, rounds, coordinators
    ):
        beta = coordinators[1]
        await end_round(rounds, beta, "recent", minutes_ago=3)

        await scanner.scan_mempool()

        stored = await coinjoins.get(COINJOIN_TXID)
        assert stored.coordinator_id == beta.id
        assert stored.round_id == "recent"
        assert (await rounds.get(beta.id, "recent")).txid == COINJOIN_TXID

    @pytest.mark.asyncio
    async def test_old_round_is_not_attributed(
        self, scanner, coinjoins, rounds, coordinators
    ):
        alpha = coordinators[0]
        await end_round(rounds, alpha, "old", minutes_ago=15)

        await scanner.scan_mempool()

        stored = await coinjoins.get(COINJOIN_TXID)
        assert stored.coordinator_id is None
        assert stored.round_id is None
        assert (await rounds.get(alpha.id, "old")).txid is None

    @pytest.mark.asyncio
    async def test_second_scan_records_nothing_new(self, scanner, coinjoins):
        await scanner.scan_mempool()

        assert await scanner.scan_mempool() == 0
        assert await coinjoins.count() == 1

    @pytest.mark.asyncio
    async def test_rejected_transactions_are_not_refetched(self, scanner, rpc):
        await scanner.scan_mempool()
        await scanner.scan_mempool()

        fetched = [call.args[0] for call in rpc.get_raw_transaction.await_args_list]
        assert fetched.count(PAYMENT_TXID) == 1

    @pytest.mark.asyncio
    async def test_entry_stored_by_other_path_keeps_its_attribution(
        self, scanner, service, coinjoins, rounds, coordinators, mocker
    ):
        alpha, beta = coordinators
        await end_round(rounds, beta, "r1", minutes_ago=5)
        await end_round(rounds, alpha, "r1", minutes_ago=3)
        other_path_entry = CoinjoinTransaction(
            txid=COINJOIN_TXID,
            first_seen=utc_now(),
            coordinator_id=beta.id,
            round_id="r1",
        )
        mocker.patch.object(
            service,
            "record_coinjoin",
            mocker.AsyncMock(return_value=(other_path_entry, False)),
        )

        assert await scanner.scan_mempool() == 0

        assert scanner.coinjoins_detected == 0
        assert (await rounds.get(alpha.id, "r1")).txid is None
        assert (await rounds.get(beta.id, "r1")).txid is None

    @pytest.mark.asyncio
    async def test_mempool_unavailable(self, scanner, rpc, coinjoins):
        rpc.get_raw_mempool.return_value = None

        assert await scanner.scan_mempool() == 0
        assert await coinjoins.count() == 0


class TestRoundScan:
    @pytest.mark.asyncio
    async def test_txid_recorded_once_across_both_paths(
        self, scanner, coinjoins, rounds, coordinators
    ):
        alpha = coordinators[0]
        round_ = await end_round(rounds, alpha, "r1", minutes_ago=1)
        await rounds.link_transaction(round_.id, COINJOIN_TXID)

        assert await scanner.scan_rounds() == 1
        assert await scanner.scan_mempool() == 0
        assert await scanner.scan_rounds() == 0

        assert await coinjoins.count() == 1
        stored = await coinjoins.get(COINJOIN_TXID)
        assert stored.coordinator_id == alpha.id
        assert stored.round_id == "r1"

    @pytest.mark.asyncio
    async def test_missing_transaction_is_skipped(
        self, scanner, rpc, coinjoins, rounds, coordinators
    ):
        alpha = coordinators[0]
        round_ = await end_round(rounds, alpha, "r1", minutes_ago=1)
        await rounds.link_transaction(round_.id, "ee" * 32)

        assert await scanner.scan_rounds() == 0
        assert await coinjoins.count() == 0


class TestConfirmations:
    @pytest.mark.asyncio
    async def test_confirmation_count_follows_chain_height(
        self, scanner, rpc, coinjoins
    ):
        await scanner.scan_mempool()
        rpc.transactions[COINJOIN_TXID] = coinjoin_tx(blockhash=BLOCK_HASH)

        height = await scanner.update_confirmations()

        assert height == 831545
        stored = await coinjoins.get(COINJOIN_TXID)
        assert stored.block_hash == BLOCK_HASH
        assert stored.block_height == 831540
        assert stored.confirmations == 6
        assert stored.confirmed_at is not None

        rpc.get_block_count.return_value = 831550
        await scanner.update_confirmations()

        assert (await coinjoins.get(COINJOIN_TXID)).confirmations == 11
        rpc.get_block.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_node_unavailable(self, scanner, rpc, coinjoins):
        await scanner.scan_mempool()
        rpc.get_block_count.return_value = None

        assert await scanner.update_confirmations() is None
        assert (await coinjoins.get(COINJOIN_TXID)).confirmations == 0


class TestScanLoop:
    @pytest.mark.asyncio
    async def test_step_failure_does_not_stop_the_scan(self, scanner, rpc, coinjoins):
        rpc.get_raw_mempool.side_effect = RuntimeError("node went away")

        await scanner.scan_once()

        assert scanner.scans_completed == 1
        rpc.get_block_count.assert_awaited()

    @pytest.mark.asyncio
    async def test_run_stops_on_event(self, scanner):
        stop_event = asyncio.Event()
        task = asyncio.create_task(scanner.run(stop_event))

        await asyncio.sleep(0.1)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)

        assert scanner.scans_completed >= 1


class TestRecordCoinjoin:
    @pytest.mark.asyncio
    async def test_unknown_txid_raises(self, service):
        with pytest.raises(TransactionNotFoundError):
            await service.record_coinjoin("ff" * 32)

    @pytest.mark.asyncio
    async def test_lost_insert_race_returns_stored_entry(
        self, service, coinjoins, coordinators, mocker
    ):
        alpha = coordinators[0]
        await coinjoins.insert(
            CoinjoinTransaction(
                txid=COINJOIN_TXID,
                first_seen=utc_now(),
                coordinator_id=alpha.id,
                round_id="r1",
            )
        )
        # The first lookup misses, as if the row was inserted right after it
        real_get = coinjoins.get
        mocker.patch.object(
            coinjoins, "get", side_effect=[None, await real_get(COINJOIN_TXID)]
        )

        stored, inserted = await service.record_coinjoin(COINJOIN_TXID)

        assert not inserted
        assert stored.coordinator_id == alpha.id
        assert stored.round_id == "r1"

    @pytest.mark.asyncio
    async def test_existing_entry_is_returned(self, service, coordinators):
        first, inserted = await service.record_coinjoin(COINJOIN_TXID)
        again, inserted_again = await service.record_coinjoin(
            COINJOIN_TXID, coordinator_id=coordinators[0].id, round_id="late"
        )

        assert inserted
        assert not inserted_again
        assert again.first_seen == first.first_seen
        assert again.coordinator_id is None
