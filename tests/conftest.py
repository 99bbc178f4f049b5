"""Shared fixtures."""

from decimal import Decimal

import pytest_asyncio

from wabiview.coinjoin_store import CoinjoinStore
from wabiview.database import Database
from wabiview.models import CoordinatorEntry
from wabiview.registry import ManualCoordinatorRegistry
from wabiview.round_store import RoundStore

TEST_COORDINATORS = (
    CoordinatorEntry(name="Alpha", url="https://alpha.example/"),
    CoordinatorEntry(name="Beta", url="https://beta.example/"),
)


def make_tx(inputs: int, output_values: list, blockhash: str | None = None) -> dict:
    """Verbose getrawtransaction-style transaction."""
    tx = {
        "txid": "00" * 32,
        "vsize": 1000,
        "vin": [{"txid": f"{i:064x}", "vout": 0} for i in range(inputs)],
        "vout": [
            {"value": value, "n": n} for n, value in enumerate(output_values)
        ],
    }
    if blockhash:
        tx["blockhash"] = blockhash
    return tx


def coinjoin_tx(blockhash: str | None = None) -> dict:
    """Six inputs, eight outputs, three of them 0.1 BTC."""
    return make_tx(
        6,
        [
            Decimal("0.1"),
            Decimal("0.1"),
            Decimal("0.1"),
            Decimal("0.05"),
            Decimal("0.2"),
            Decimal("0.03"),
            Decimal("0.0123"),
            Decimal("0.5"),
        ],
        blockhash=blockhash,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    """Create test database."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await db.init()
    yield db
    await db.close()


@pytest_asyncio.fixture
async def registry():
    return ManualCoordinatorRegistry(TEST_COORDINATORS)


@pytest_asyncio.fixture
async def coordinators(db, registry):
    """Stored test coordinators, in registry order."""
    await db.ensure_coordinators(registry.get_coordinators())
    return await db.list_coordinators()


@pytest_asyncio.fixture
async def rounds(db):
    return RoundStore(db)


@pytest_asyncio.fixture
async def coinjoins(db):
    return CoinjoinStore(db)
