"""Coinjoin detection engine."""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import structlog
from cachetools import TTLCache

from .bitcoin_rpc import BitcoinRpc
from .coinjoin_service import CoinjoinService, TransactionNotFoundError
from .coinjoin_store import CoinjoinStore
from .config import config
from .heuristics import looks_like_coinjoin
from .round_store import RoundStore
from .timing import utc_now, wait_or_stop

logger = structlog.get_logger()

# Mempool txids the heuristic turned down
REJECTED_CACHE_SIZE = 100_000
REJECTED_CACHE_TTL = 6 * 3600


class CoinjoinScanner:
    """
    Finds coinjoins and keeps their confirmation status current.

    Two detection paths feed the same table. Rounds that ended
    successfully with a known txid are recorded directly; coordinators
    don't publish txids today, so that path mostly sleeps. The mempool
    scan is the one doing the work: every unknown mempool transaction
    is run through the heuristic and, when it matches, attributed to the
    most recent successful round that ended shortly before.
    """

    def __init__(
        self,
        bitcoin_rpc: BitcoinRpc,
        service: CoinjoinService,
        rounds: RoundStore,
        coinjoins: Optional[CoinjoinStore] = None,
        scan_interval: Optional[float] = None,
        startup_delay: Optional[float] = None,
        attribution_window: Optional[float] = None,
    ):
        self.rpc = bitcoin_rpc
        self.service = service
        self.rounds = rounds
        self.coinjoins = coinjoins or service.coinjoins
        self.scan_interval = (
            scan_interval if scan_interval is not None else config.scan_interval
        )
        self.startup_delay = (
            startup_delay if startup_delay is not None else config.scan_startup_delay
        )
        self.attribution_window = timedelta(
            seconds=attribution_window
            if attribution_window is not None
            else config.attribution_window
        )
        self._rejected: TTLCache = TTLCache(
            maxsize=REJECTED_CACHE_SIZE, ttl=REJECTED_CACHE_TTL
        )

        # Stats for the status endpoint
        self.scans_completed = 0
        self.coinjoins_detected = 0
        self.last_scan_at: datetime | None = None

    async def scan_rounds(self) -> int:
        """
        Record coinjoins of completed rounds that carry a txid.

        Returns:
            Number of coinjoins recorded.
        """
        recorded = 0
        for round_ in await self.rounds.completed_with_unrecorded_tx():
            try:
                _, inserted = await self.service.record_coinjoin(
                    round_.txid, round_.coordinator_id, round_.round_id
                )
                if not inserted:
                    continue
                recorded += 1
                self.coinjoins_detected += 1
                logger.info(
                    "Recorded coinjoin from round",
                    round_id=round_.round_id,
                    txid=round_.txid,
                )
            except TransactionNotFoundError:
                logger.warning(
                    "Round transaction not found on node",
                    round_id=round_.round_id,
                    txid=round_.txid,
                )
            except Exception as e:
                logger.warning(
                    "Failed to record coinjoin from round",
                    round_id=round_.round_id,
                    txid=round_.txid,
                    error=str(e),
                )
        return recorded

    async def scan_mempool(self) -> int:
        """
        Classify every mempool transaction we haven't recorded yet.

        Returns:
            Number of coinjoins recorded.
        """
        txids = await self.rpc.get_raw_mempool()
        if txids is None:
            return 0

        recorded = 0
        for txid in txids:
            try:
                if await self._process_transaction(txid):
                    recorded += 1
            except Exception as e:
                logger.warning(
                    "Failed to process mempool transaction", txid=txid, error=str(e)
                )
        return recorded

    async def _process_transaction(self, txid: str) -> bool:
        """Check one mempool transaction; record it if it's a coinjoin."""
        if txid in self._rejected or await self.coinjoins.exists(txid):
            return False

        tx = await self.rpc.get_raw_transaction(txid, True)
        if not tx:
            return False
        if not looks_like_coinjoin(tx):
            self._rejected[txid] = True
            return False

        match = await self.rounds.find_attributable(
            utc_now(), self.attribution_window
        )
        stored, inserted = await self.service.record_coinjoin(
            txid,
            coordinator_id=match.coordinator_id if match else None,
            round_id=match.round_id if match else None,
            tx=tx,
        )
        if not inserted:
            # The round path stored it first; its attribution stands
            return False

        # Round ids are only unique per coordinator
        if match is not None and (stored.coordinator_id, stored.round_id) == (
            match.coordinator_id,
            match.round_id,
        ):
            await self.rounds.link_transaction(match.id, txid)

        self.coinjoins_detected += 1
        logger.info(
            "Recorded coinjoin from mempool scan",
            txid=txid,
            coordinator="matched" if match else "unknown",
            round_id=match.round_id if match else None,
        )
        return True

    async def update_confirmations(self) -> int | None:
        return await self.service.update_confirmations()

    async def scan_once(self):
        """One scan tick; each step runs even if an earlier one failed."""
        steps = (
            ("rounds", self.scan_rounds),
            ("mempool", self.scan_mempool),
            ("confirmations", self.update_confirmations),
        )
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.error("Error during coinjoin scan", step=name, error=str(e))

        self.scans_completed += 1
        self.last_scan_at = utc_now()

    async def run(self, stop_event: asyncio.Event):
        """Scan until ``stop_event`` is set."""
        logger.info(
            "Coinjoin scanner starting",
            scan_interval=self.scan_interval,
            startup_delay=self.startup_delay,
        )

        # Give the poller a head start so there are rounds to attribute to
        if await wait_or_stop(stop_event, self.startup_delay):
            logger.info("Coinjoin scanner stopped")
            return

        while not stop_event.is_set():
            await self.scan_once()
            if await wait_or_stop(stop_event, self.scan_interval):
                break

        logger.info("Coinjoin scanner stopped")
