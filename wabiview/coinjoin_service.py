"""
Recording coinjoins and answering the dashboard's questions about them.

Recording pulls the transaction from the node (unless the caller
already has it), fills in what the transaction itself tells us and
stores it. The read side is a set of projections over the stores and
keeps no state of its own.
"""

from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

import structlog
from bitcoin.core import COIN
from cachetools import LRUCache

from .bitcoin_rpc import BitcoinRpc
from .coinjoin_store import CoinjoinStore
from .database import Database
from .heuristics import output_value_sats
from .models import (
    CoinjoinPage,
    CoinjoinStats,
    CoinjoinTransaction,
    Coordinator,
    CoordinatorOverview,
)
from .round_store import RoundStore
from .timing import utc_now

logger = structlog.get_logger()

STATS_WINDOW = timedelta(hours=24)


class TransactionNotFoundError(Exception):
    """The node doesn't know the transaction we were asked to record."""

    def __init__(self, txid: str):
        super().__init__(f"Transaction {txid} not found")
        self.txid = txid


class CoinjoinService:
    """Records coinjoins, keeps their confirmations current and queries them."""

    def __init__(
        self,
        database: Database,
        bitcoin_rpc: BitcoinRpc,
        coinjoins: Optional[CoinjoinStore] = None,
        rounds: Optional[RoundStore] = None,
    ):
        self.db = database
        self.rpc = bitcoin_rpc
        self.coinjoins = coinjoins or CoinjoinStore(database)
        self.rounds = rounds or RoundStore(database)
        # Block hash -> height; a block's height doesn't change
        self._block_heights: LRUCache = LRUCache(maxsize=1024)

    async def _block_height(self, block_hash: str) -> int | None:
        if block_hash in self._block_heights:
            return self._block_heights[block_hash]
        block = await self.rpc.get_block(block_hash)
        if not block or block.get("height") is None:
            return None
        height = int(block["height"])
        self._block_heights[block_hash] = height
        return height

    async def record_coinjoin(
        self,
        txid: str,
        coordinator_id: Optional[int] = None,
        round_id: Optional[str] = None,
        tx: Optional[dict[str, Any]] = None,
    ) -> tuple[CoinjoinTransaction, bool]:
        """
        Record a coinjoin once.

        Args:
            txid: Transaction to record
            coordinator_id: Coordinator it's attributed to, if any
            round_id: Round it's attributed to, if any
            tx: Verbose transaction if the caller already fetched it

        Returns:
            The stored entry (the existing one if the txid was known) and
            whether this call inserted it.

        Raises:
            TransactionNotFoundError: The node returned nothing for the txid.
        """
        existing = await self.coinjoins.get(txid)
        if existing:
            return existing, False

        if tx is None:
            tx = await self.rpc.get_raw_transaction(txid, True)
        if not tx:
            raise TransactionNotFoundError(txid)

        now = utc_now()
        coinjoin = CoinjoinTransaction(
            txid=txid,
            coordinator_id=coordinator_id,
            round_id=round_id,
            first_seen=now,
            input_count=len(tx.get("vin", [])),
            output_count=len(tx.get("vout", [])),
            vsize=tx.get("vsize") or 0,
            total_output_value=output_value_sats(tx),
            # Fee, fee rate and input total need the previous outputs,
            # which we don't fetch: left at zero with fee_known=False.
            total_input_value=0,
            fee_paid=0,
            fee_rate=Decimal(0),
            fee_known=False,
        )

        if block_hash := tx.get("blockhash"):
            coinjoin.block_hash = block_hash
            coinjoin.block_height = await self._block_height(block_hash)
            if coinjoin.block_height is not None:
                coinjoin.confirmed_at = now

        if not await self.coinjoins.insert(coinjoin):
            # Lost the race with the other detection path
            return (await self.coinjoins.get(txid) or coinjoin), False

        logger.info(
            "Recorded coinjoin",
            txid=txid,
            coordinator_id=coordinator_id,
            round_id=round_id,
            inputs=coinjoin.input_count,
            outputs=coinjoin.output_count,
        )
        return coinjoin, True

    async def update_confirmations(self) -> int | None:
        """
        Pick up newly mined coinjoins and recompute confirmation counts.

        Returns:
            The chain height used, or None if the node couldn't tell us.
        """
        current_height = await self.rpc.get_block_count()
        if current_height is None:
            return None

        for coinjoin in await self.coinjoins.list_unconfirmed():
            tx = await self.rpc.get_raw_transaction(coinjoin.txid, True)
            block_hash = tx.get("blockhash") if tx else None
            if not block_hash:
                continue
            height = await self._block_height(block_hash)
            await self.coinjoins.mark_confirmed(
                coinjoin.txid, block_hash, height, utc_now()
            )
            logger.info(
                "Coinjoin confirmed", txid=coinjoin.txid, block_height=height
            )

        await self.coinjoins.refresh_confirmation_counts(current_height)
        return current_height

    async def get_recent(
        self,
        limit: int = 50,
        coordinator_id: Optional[int] = None,
        confirmed_only: Optional[bool] = None,
    ) -> list[CoinjoinTransaction]:
        """Newest coinjoins, optionally for one coordinator or confirmed only."""
        items, _ = await self.coinjoins.search(
            offset=0,
            limit=limit,
            coordinator_id=coordinator_id,
            confirmed=True if confirmed_only else None,
        )
        return items

    async def get_by_txid(self, txid: str) -> CoinjoinTransaction | None:
        return await self.coinjoins.get(txid)

    async def get_detail(
        self, txid: str
    ) -> tuple[CoinjoinTransaction, Coordinator | None] | None:
        """A coinjoin together with the coordinator it was attributed to."""
        coinjoin = await self.get_by_txid(txid)
        if coinjoin is None:
            return None
        coordinator = None
        if coinjoin.coordinator_id is not None:
            coordinator = await self.db.get_coordinator(coinjoin.coordinator_id)
        return coinjoin, coordinator

    async def get_filtered(
        self,
        page: int = 1,
        page_size: int = 20,
        coordinator_id: Optional[int] = None,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> CoinjoinPage:
        """
        Filtered, paginated coinjoin list.

        Args:
            page: 1-based page number; anything lower is treated as 1
            page_size: Items per page
            coordinator_id: Only coinjoins attributed to this coordinator
            status: "confirmed" or "unconfirmed"; anything else means no filter
            search: Case-insensitive substring of the txid
        """
        page = max(page, 1)
        confirmed = {"confirmed": True, "unconfirmed": False}.get(
            (status or "").strip().lower()
        )
        search = search.strip() if search else None

        items, total = await self.coinjoins.search(
            offset=(page - 1) * page_size,
            limit=page_size,
            coordinator_id=coordinator_id,
            confirmed=confirmed,
            search=search or None,
        )
        return CoinjoinPage(
            items=items, total_count=total, page=page, page_size=page_size
        )

    async def get_stats(self) -> CoinjoinStats:
        """Total count plus count and input volume of the last 24 hours."""
        cutoff = utc_now() - STATS_WINDOW
        total = await self.coinjoins.count()
        last_24h = await self.coinjoins.count(since=cutoff)
        volume_sats = await self.coinjoins.input_volume_since(cutoff)
        return CoinjoinStats(
            total_coinjoins=total,
            last_24h_count=last_24h,
            volume_24h_btc=Decimal(volume_sats) / COIN,
        )

    async def get_last_24h_count_for_coordinator(self, coordinator_id: int) -> int:
        return await self.coinjoins.count(
            coordinator_id=coordinator_id, since=utc_now() - STATS_WINDOW
        )

    async def get_coordinator_overview(self) -> list[CoordinatorOverview]:
        """One card per coordinator: health, activity and current round."""
        overview = []
        for coordinator in await self.db.list_coordinators():
            overview.append(
                CoordinatorOverview(
                    coordinator=coordinator,
                    total_coinjoins=await self.coinjoins.count(
                        coordinator_id=coordinator.id
                    ),
                    last_24h_coinjoins=await self.get_last_24h_count_for_coordinator(
                        coordinator.id
                    ),
                    current_round=await self.rounds.current_round(coordinator.id),
                )
            )
        return overview
