"""Coinjoin transaction table: inserts, confirmation updates and read queries."""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .database import CoinjoinRecord, Database
from .models import CoinjoinTransaction

logger = structlog.get_logger()


class CoinjoinStore:
    """
    Storage for detected coinjoins.

    A txid is inserted at most once; later writes only touch the
    confirmation fields.
    """

    def __init__(self, database: Database):
        self.db = database

    async def exists(self, txid: str) -> bool:
        async with self.db.session() as session:
            found = await session.scalar(
                select(CoinjoinRecord.id).where(CoinjoinRecord.txid == txid)
            )
            return found is not None

    async def get(self, txid: str) -> CoinjoinTransaction | None:
        async with self.db.session() as session:
            record = await session.scalar(
                select(CoinjoinRecord).where(CoinjoinRecord.txid == txid)
            )
            return CoinjoinTransaction.model_validate(record) if record else None

    async def insert(self, coinjoin: CoinjoinTransaction) -> bool:
        """
        Store a new coinjoin.

        Returns:
            False if the txid was already stored (including losing a race
            against the other loop), True if this call inserted it.
        """
        async with self.db.session() as session:
            session.add(CoinjoinRecord(**coinjoin.model_dump()))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("Coinjoin already recorded", txid=coinjoin.txid)
                return False
        return True

    async def list_unconfirmed(self) -> list[CoinjoinTransaction]:
        async with self.db.session() as session:
            result = await session.scalars(
                select(CoinjoinRecord).where(CoinjoinRecord.block_height.is_(None))
            )
            return [CoinjoinTransaction.model_validate(r) for r in result]

    async def mark_confirmed(
        self,
        txid: str,
        block_hash: str,
        block_height: Optional[int],
        confirmed_at: datetime,
    ):
        """Record the block a coinjoin was mined in."""
        values = {"block_hash": block_hash}
        if block_height is not None:
            values.update(block_height=block_height, confirmed_at=confirmed_at)
        async with self.db.session() as session:
            await session.execute(
                update(CoinjoinRecord)
                .where(CoinjoinRecord.txid == txid)
                .values(**values)
            )
            await session.commit()

    async def refresh_confirmation_counts(self, chain_height: int) -> int:
        """
        Recompute confirmations for every mined coinjoin.

        Returns:
            Number of rows updated.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(CoinjoinRecord)
                .where(CoinjoinRecord.block_height.is_not(None))
                .values(confirmations=chain_height - CoinjoinRecord.block_height + 1)
            )
            await session.commit()
            return result.rowcount

    def _filtered(
        self,
        coordinator_id: Optional[int] = None,
        confirmed: Optional[bool] = None,
        search: Optional[str] = None,
    ):
        query = select(CoinjoinRecord)
        if coordinator_id is not None:
            query = query.where(CoinjoinRecord.coordinator_id == coordinator_id)
        if confirmed is True:
            query = query.where(CoinjoinRecord.block_height.is_not(None))
        elif confirmed is False:
            query = query.where(CoinjoinRecord.block_height.is_(None))
        if search:
            query = query.where(
                func.lower(CoinjoinRecord.txid).contains(search.lower(), autoescape=True)
            )
        return query

    async def search(
        self,
        offset: int = 0,
        limit: int = 20,
        coordinator_id: Optional[int] = None,
        confirmed: Optional[bool] = None,
        search: Optional[str] = None,
    ) -> tuple[list[CoinjoinTransaction], int]:
        """
        Newest-first page of coinjoins matching the filters.

        Returns:
            The page items and the total number of matches.
        """
        query = self._filtered(coordinator_id, confirmed, search)
        async with self.db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(query.subquery())
            )
            result = await session.scalars(
                query.order_by(CoinjoinRecord.first_seen.desc(), CoinjoinRecord.id.desc())
                .offset(offset)
                .limit(limit)
            )
            items = [CoinjoinTransaction.model_validate(r) for r in result]
        return items, total or 0

    async def count(
        self,
        coordinator_id: Optional[int] = None,
        since: Optional[datetime] = None,
    ) -> int:
        query = select(func.count(CoinjoinRecord.id))
        if coordinator_id is not None:
            query = query.where(CoinjoinRecord.coordinator_id == coordinator_id)
        if since is not None:
            query = query.where(CoinjoinRecord.first_seen >= since)
        async with self.db.session() as session:
            return await session.scalar(query) or 0

    async def input_volume_since(self, since: datetime) -> int:
        """Sum of input values (satoshis) of coinjoins first seen since ``since``."""
        async with self.db.session() as session:
            total = await session.scalar(
                select(func.coalesce(func.sum(CoinjoinRecord.total_input_value), 0))
                .where(CoinjoinRecord.first_seen >= since)
            )
            return int(total or 0)
