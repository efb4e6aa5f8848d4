"""Shared fixtures: a temporary ledger, an in-process mint and a seeded wallet."""

import pytest

from fake_mint import FakeMint
from nut_sink.config import DonationConfig
from nut_sink.store import LedgerStore
from nut_sink.wallet import Wallet

SEED_PHRASE = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


@pytest.fixture
async def store(tmp_path):
    ledger = LedgerStore(tmp_path / "ledger.db")
    await ledger.init()
    yield ledger
    await ledger.dispose()


@pytest.fixture
def mint():
    return FakeMint()


@pytest.fixture
def wallet(store, mint):
    return Wallet.from_seed(SEED_PHRASE, mint.url, "sat", store, mint=mint)


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> DonationConfig:
        values = {
            "database_path": str(tmp_path / "ledger.db"),
            "seed_phrase": SEED_PHRASE,
            "lightning_address": "donations@example.com",
            "melt_thresholds": {"sat": 1000},
            "log_path": str(tmp_path / "donations.log"),
        }
        values.update(overrides)
        return DonationConfig(**values)

    return _make
