"""
Persistence and merge rules for coordinator rounds.

A round is identified by (coordinator id, round id). Phase, input count
and ``updated_at`` always follow the latest observation; the end of a
round only moves forward: ``ended_at`` and ``failure_reason`` are written
once and kept from then on.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError

from .database import CoinjoinRecord, Database, RoundRecord
from .models import BLAME_ROUND_REASON, Round, RoundInfo, RoundPhase

logger = structlog.get_logger()


def _new_round(
    coordinator_id: int, info: RoundInfo, phase: RoundPhase, seen_at: datetime
) -> RoundRecord:
    is_ended = phase == RoundPhase.ENDED
    return RoundRecord(
        coordinator_id=coordinator_id,
        round_id=info.round_id,
        phase=int(phase),
        input_count=info.input_count,
        created_at=seen_at,
        updated_at=seen_at,
        ended_at=seen_at if is_ended else None,
        is_successful=is_ended and not info.is_blame,
        failure_reason=BLAME_ROUND_REASON if is_ended and info.is_blame else None,
    )


def _merge_observation(
    record: RoundRecord, info: RoundInfo, phase: RoundPhase, seen_at: datetime
):
    if record.phase is not None and phase < record.phase:
        # Accepted as reported; a regression may be a new cycle or an anomaly.
        logger.debug(
            "Round phase went backwards",
            round_id=record.round_id,
            previous=RoundPhase(record.phase).name,
            reported=phase.name,
        )

    record.phase = int(phase)
    record.input_count = info.input_count
    record.updated_at = seen_at

    if phase == RoundPhase.ENDED:
        if record.ended_at is None:
            record.ended_at = seen_at
        record.is_successful = not info.is_blame
        if info.is_blame and record.failure_reason is None:
            record.failure_reason = BLAME_ROUND_REASON


class RoundStore:
    """Round table operations."""

    def __init__(self, database: Database):
        self.db = database

    async def _lookup(
        self, session, coordinator_id: int, round_id: str
    ) -> RoundRecord | None:
        return await session.scalar(
            select(RoundRecord).where(
                RoundRecord.coordinator_id == coordinator_id,
                RoundRecord.round_id == round_id,
            )
        )

    async def reconcile(
        self, coordinator_id: int, rounds: list[RoundInfo], seen_at: datetime
    ) -> int:
        """
        Merge one coordinator's reported round list into the store.

        Rounds without an id are ignored, as are rounds reporting a phase
        we don't know; the rest of the list is still applied. Each insert
        runs in its own savepoint, so losing a uniqueness race to another
        writer only affects that round, which is then merged instead.

        Returns:
            Number of rounds inserted or updated.
        """
        applied = 0
        async with self.db.session() as session:
            for info in rounds:
                if not info.round_id:
                    continue
                try:
                    phase = RoundPhase(info.phase)
                except ValueError:
                    logger.warning(
                        "Skipping round with unknown phase",
                        coordinator_id=coordinator_id,
                        round_id=info.round_id,
                        phase=info.phase,
                    )
                    continue

                record = await self._lookup(session, coordinator_id, info.round_id)
                if record is None:
                    try:
                        async with session.begin_nested():
                            session.add(_new_round(coordinator_id, info, phase, seen_at))
                        applied += 1
                        continue
                    except IntegrityError:
                        logger.debug(
                            "Round inserted concurrently, merging instead",
                            coordinator_id=coordinator_id,
                            round_id=info.round_id,
                        )
                        record = await self._lookup(
                            session, coordinator_id, info.round_id
                        )
                        if record is None:
                            continue

                _merge_observation(record, info, phase, seen_at)
                applied += 1

            await session.commit()
        return applied

    async def get(self, coordinator_id: int, round_id: str) -> Round | None:
        async with self.db.session() as session:
            record = await self._lookup(session, coordinator_id, round_id)
            return Round.model_validate(record) if record else None

    async def list_for_coordinator(self, coordinator_id: int) -> list[Round]:
        async with self.db.session() as session:
            result = await session.scalars(
                select(RoundRecord)
                .where(RoundRecord.coordinator_id == coordinator_id)
                .order_by(RoundRecord.created_at.desc())
            )
            return [Round.model_validate(r) for r in result]

    async def current_round(self, coordinator_id: int) -> Round | None:
        """Most recently created round of a coordinator that hasn't ended."""
        async with self.db.session() as session:
            record = await session.scalar(
                select(RoundRecord)
                .where(
                    RoundRecord.coordinator_id == coordinator_id,
                    RoundRecord.phase != int(RoundPhase.ENDED),
                )
                .order_by(RoundRecord.created_at.desc(), RoundRecord.id.desc())
                .limit(1)
            )
            return Round.model_validate(record) if record else None

    async def completed_with_unrecorded_tx(self) -> list[Round]:
        """Ended, successful rounds whose txid isn't in the coinjoin table yet."""
        async with self.db.session() as session:
            recorded = exists().where(CoinjoinRecord.txid == RoundRecord.txid)
            result = await session.scalars(
                select(RoundRecord).where(
                    RoundRecord.phase == int(RoundPhase.ENDED),
                    RoundRecord.is_successful.is_(True),
                    RoundRecord.txid.is_not(None),
                    RoundRecord.txid != "",
                    ~recorded,
                )
            )
            return [Round.model_validate(r) for r in result]

    async def find_attributable(self, now: datetime, window: timedelta) -> Round | None:
        """
        Latest round, across coordinators, that could have produced a coinjoin just seen.

        Candidates ended successfully within ``window`` of ``now`` and have
        no txid linked yet.
        """
        async with self.db.session() as session:
            record = await session.scalar(
                select(RoundRecord)
                .where(
                    RoundRecord.phase == int(RoundPhase.ENDED),
                    RoundRecord.is_successful.is_(True),
                    RoundRecord.txid.is_(None),
                    RoundRecord.ended_at > now - window,
                )
                .order_by(RoundRecord.ended_at.desc())
                .limit(1)
            )
            return Round.model_validate(record) if record else None

    async def link_transaction(self, round_pk: int, txid: str) -> bool:
        """
        Backfill a round's txid. A txid already linked is never replaced.

        Returns:
            True if the link was written.
        """
        async with self.db.session() as session:
            record = await session.get(RoundRecord, round_pk)
            if record is None or record.txid is not None:
                return False
            record.txid = txid
            await session.commit()
            return True
