"""
Database persistence for coordinators, rounds and coinjoins.

SQLite is plenty here: a handful of coordinators, a few hundred rounds a
day and the coinjoins they produce. Both background loops write through
the same engine; every operation opens its own short-lived session so
no connection is held while we wait on the network.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    event,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import config
from .models import Coordinator, CoordinatorEntry

logger = structlog.get_logger()
Base = declarative_base()


class CoordinatorRecord(Base):
    """A known coordinator plus its health as of the last poll."""

    __tablename__ = "coordinators"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    url = Column(String(500), nullable=False, unique=True)

    # Health
    is_online = Column(Boolean, nullable=False, default=False)
    last_seen = Column(DateTime, nullable=True)
    last_checked = Column(DateTime, nullable=True)
    failure_count = Column(Integer, nullable=False, default=0)

    # Advertised parameters
    fee_rate = Column(Numeric(12, 8), nullable=True)
    min_input_count = Column(Integer, nullable=True)


class RoundRecord(Base):
    """Rounds keyed by (coordinator, round id)."""

    __tablename__ = "rounds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coordinator_id = Column(
        Integer, ForeignKey("coordinators.id", ondelete="CASCADE"), nullable=False
    )
    round_id = Column(String(100), nullable=False)
    phase = Column(Integer, nullable=False)
    input_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)

    txid = Column(String(64), nullable=True)
    is_successful = Column(Boolean, nullable=False, default=False)
    failure_reason = Column(String(500), nullable=True)

    __table_args__ = (
        UniqueConstraint("coordinator_id", "round_id", name="uq_round_coordinator"),
        Index("idx_round_id", "round_id"),
        Index("idx_round_ended_at", "ended_at"),
    )


class CoinjoinRecord(Base):
    """Detected coinjoin transactions, one row per txid."""

    __tablename__ = "coinjoin_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    txid = Column(String(64), nullable=False, unique=True)

    # Confirmation state
    block_hash = Column(String(64), nullable=True)
    block_height = Column(Integer, nullable=True)
    first_seen = Column(DateTime, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)
    confirmations = Column(Integer, nullable=False, default=0)

    # Structure
    input_count = Column(Integer, nullable=False, default=0)
    output_count = Column(Integer, nullable=False, default=0)
    vsize = Column(Integer, nullable=False, default=0)

    # Values in satoshis
    total_input_value = Column(BigInteger, nullable=False, default=0)
    total_output_value = Column(BigInteger, nullable=False, default=0)
    fee_paid = Column(BigInteger, nullable=False, default=0)
    fee_rate = Column(Numeric(16, 4), nullable=False, default=Decimal(0))
    fee_known = Column(Boolean, nullable=False, default=False)

    # Attribution
    coordinator_id = Column(
        Integer, ForeignKey("coordinators.id", ondelete="SET NULL"), nullable=True
    )
    round_id = Column(String(100), nullable=True)

    __table_args__ = (
        Index("idx_coinjoin_block_height", "block_height"),
        Index("idx_coinjoin_first_seen", "first_seen"),
        Index("idx_coinjoin_coordinator", "coordinator_id"),
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Engine, schema and coordinator table operations.

    The round and coinjoin tables have their own stores built on top of
    :meth:`session`.
    """

    def __init__(self, database_url: Optional[str] = None):
        """Initialize database connection."""
        self.database_url = database_url or config.database_url
        self.engine = create_async_engine(
            self.database_url, echo=False, pool_pre_ping=True
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(
                self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys
            )
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self):
        """Initialize database schema."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized", url=self.database_url)

    async def close(self):
        """Close database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Scoped session for one unit of work."""
        async with self.async_session() as session:
            yield session

    async def ensure_coordinators(self, entries: Iterable[CoordinatorEntry]) -> int:
        """
        Insert registry entries that aren't stored yet (matched by URL).

        Returns:
            Number of coordinators added.
        """
        added = 0
        async with self.session() as session:
            existing = set((await session.scalars(select(CoordinatorRecord.url))).all())
            for entry in entries:
                if entry.url in existing:
                    continue
                session.add(
                    CoordinatorRecord(
                        name=entry.name,
                        url=entry.url,
                        is_online=False,
                        failure_count=0,
                    )
                )
                existing.add(entry.url)
                added += 1
                logger.info("Added coordinator", name=entry.name, url=entry.url)
            await session.commit()
        return added

    async def list_coordinators(self) -> list[Coordinator]:
        async with self.session() as session:
            result = await session.scalars(
                select(CoordinatorRecord).order_by(CoordinatorRecord.id)
            )
            return [Coordinator.model_validate(r) for r in result]

    async def get_coordinator(self, coordinator_id: int) -> Coordinator | None:
        async with self.session() as session:
            record = await session.get(CoordinatorRecord, coordinator_id)
            return Coordinator.model_validate(record) if record else None

    async def record_coordinator_failure(
        self, coordinator_id: int, checked_at: datetime
    ) -> int:
        """
        Mark a coordinator offline after a failed poll.

        Returns:
            The updated consecutive failure count.
        """
        async with self.session() as session:
            record = await session.get(CoordinatorRecord, coordinator_id)
            if record is None:
                return 0
            record.is_online = False
            record.last_checked = checked_at
            record.failure_count = (record.failure_count or 0) + 1
            await session.commit()
            return record.failure_count

    async def record_coordinator_success(
        self,
        coordinator_id: int,
        seen_at: datetime,
        fee_rate: Optional[Decimal] = None,
        min_input_count: Optional[int] = None,
    ):
        """Mark a coordinator online and merge any advertised parameters."""
        async with self.session() as session:
            record = await session.get(CoordinatorRecord, coordinator_id)
            if record is None:
                return
            record.is_online = True
            record.last_seen = seen_at
            record.last_checked = seen_at
            record.failure_count = 0
            if fee_rate is not None:
                record.fee_rate = fee_rate
            if min_input_count is not None:
                record.min_input_count = min_input_count
            await session.commit()
