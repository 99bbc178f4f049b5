"""
Data structures for coordinators, rounds and coinjoin transactions.

Two families live here: the wire models that mirror what WabiSabi
coordinators return, and the domain models that the stores hand out.
Coordinators serialize their JSON in PascalCase while some proxies
re-emit it in camelCase, so the wire models accept either.
"""

import math
from datetime import datetime
from decimal import Decimal
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

BLAME_ROUND_REASON = "Blame round"


class RoundPhase(IntEnum):
    """Phase of a WabiSabi round, in the order coordinators report them."""

    INPUT_REGISTRATION = 0
    CONNECTION_CONFIRMATION = 1
    OUTPUT_REGISTRATION = 2
    TRANSACTION_SIGNING = 3
    ENDED = 4  # Terminal

    @property
    def display_name(self) -> str:
        return self.name.replace("_", " ").title()


def _lower_first(key: str) -> str:
    return key[:1].lower() + key[1:]


class WabiSabiPayload(BaseModel):
    """Base for coordinator payloads: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @model_validator(mode="before")
    @classmethod
    def _accept_pascal_case(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                _lower_first(k) if isinstance(k, str) else k: v
                for k, v in data.items()
            }
        return data


class CoordinatorParameters(WabiSabiPayload):
    """Round parameters advertised by a coordinator."""

    coordination_fee_rate: Decimal = Decimal(0)
    min_input_count_by_round: int = 0
    max_input_count_by_round: int = 0
    min_registrable_amount: int = 0
    max_registrable_amount: int = 0


class CoordinatorStatus(WabiSabiPayload):
    """Response of the coordinator status endpoint."""

    round_id: str | None = None
    phase: int = 0
    input_count: int = 0
    max_suggested_amount: int = 0
    coordinator_parameters: CoordinatorParameters | None = None


class RoundInfo(WabiSabiPayload):
    """One entry of a coordinator's round list."""

    round_id: str | None = None
    phase: int = 0
    input_count: int = 0
    max_suggested_amount: int = 0
    blame_of: str | None = None
    is_blame_round: bool = False

    @property
    def is_blame(self) -> bool:
        return self.is_blame_round or bool(self.blame_of)


class RoundsMonitorResponse(WabiSabiPayload):
    """Response of the coordinator round list endpoint."""

    rounds: list[RoundInfo] | None = None


class CoordinatorEntry(BaseModel):
    """A manually curated coordinator."""

    name: str
    url: str
    description: str | None = None


class Coordinator(BaseModel):
    """A known coordinator and its last observed health."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    url: str
    is_online: bool = False
    last_seen: datetime | None = None
    last_checked: datetime | None = None
    failure_count: int = 0
    fee_rate: Decimal | None = None
    min_input_count: int | None = None


class Round(BaseModel):
    """
    A round as we have observed it at one coordinator.

    ``ended_at`` and ``failure_reason`` are set once and never
    overwritten; ``txid`` is only known once a coinjoin was linked.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    coordinator_id: int
    round_id: str
    phase: RoundPhase
    input_count: int = 0
    created_at: datetime
    updated_at: datetime
    ended_at: datetime | None = None
    txid: str | None = None
    is_successful: bool = False
    failure_reason: str | None = None

    @property
    def is_ended(self) -> bool:
        return self.phase == RoundPhase.ENDED


class CoinjoinTransaction(BaseModel):
    """
    A transaction we classified as a coinjoin.

    Values are in satoshis. When ``fee_known`` is False the fee,
    fee rate and input total are placeholders (zero): working them out
    needs the previous outputs, which detection never fetches.
    """

    model_config = ConfigDict(from_attributes=True)

    txid: str = Field(description="Transaction ID")
    block_hash: str | None = None
    block_height: int | None = None
    first_seen: datetime
    confirmed_at: datetime | None = None
    input_count: int = 0
    output_count: int = 0
    vsize: int = 0
    total_input_value: int = 0
    total_output_value: int = 0
    fee_paid: int = 0
    fee_rate: Decimal = Decimal(0)
    fee_known: bool = False
    coordinator_id: int | None = None
    round_id: str | None = None
    confirmations: int = 0

    @property
    def is_confirmed(self) -> bool:
        return self.block_height is not None


class CoinjoinStats(BaseModel):
    """Header numbers for the dashboard."""

    total_coinjoins: int
    last_24h_count: int
    volume_24h_btc: Decimal


class CoinjoinPage(BaseModel):
    """One page of a filtered coinjoin search."""

    items: list[CoinjoinTransaction]
    total_count: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)


class CoordinatorOverview(BaseModel):
    """Coordinator card: health, activity counts and the round in progress."""

    coordinator: Coordinator
    total_coinjoins: int = 0
    last_24h_coinjoins: int = 0
    current_round: Round | None = None
