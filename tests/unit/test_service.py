"""Tests for the donation flow and auto-melt containment."""

import logging
from unittest.mock import AsyncMock, patch

import pytest

from fake_mint import FakeMint, resolve_to_fake_invoice
from nut_sink.mint import Mint
from nut_sink.service import DonationService
from nut_sink.types import (
    InsufficientBalanceError,
    SwapError,
    TokenDecodeError,
    ValidationError,
    WalletId,
)
from nut_sink.wallet import Wallet


def token_for(mint: FakeMint, amount: int, unit: str = "sat") -> str:
    return mint.make_token(Mint.calculate_optimal_split(amount, []), unit)


@pytest.fixture
def service(make_config, store, mint):
    return DonationService(
        make_config(melt_thresholds={"sat": 500}), store, mint_factory=lambda url: mint
    )


@pytest.fixture(autouse=True)
def lnurl():
    with patch("nut_sink.wallet.resolve_invoice", AsyncMock(side_effect=resolve_to_fake_invoice)) as mock:
        yield mock


@pytest.fixture(autouse=True)
def log_level(caplog):
    caplog.set_level(logging.INFO, logger="nut_sink")


def messages(caplog, levelname: str) -> list[str]:
    return [r.getMessage() for r in caplog.records if r.levelname == levelname]


class TestProcess:
    async def test_below_threshold_does_not_melt(self, service, mint, caplog, lnurl):
        receipt = await service.process(token_for(mint, 100))

        assert receipt.wallet_id == WalletId(mint.url, "sat")
        assert receipt.token_amount == 100
        assert receipt.received == 100
        assert receipt.balance == 100
        assert receipt.melt is None
        lnurl.assert_not_awaited()

        assert messages(caplog, "INFO") == [
            f"Received donation - Mint: {mint.url}, Unit: sat, Amount: 100",
            f"Current balance - Mint: {mint.url}, Unit: sat, Balance: 100",
        ]
        assert messages(caplog, "SUCCESS") == [
            f"Swapped donation - Mint: {mint.url}, Unit: sat, Amount: 100"
        ]

    async def test_threshold_boundary(self, service, mint):
        first = await service.process(token_for(mint, 499))
        assert first.melt is None

        second = await service.process(token_for(mint, 1))
        assert second.balance == 500
        assert second.melt is not None
        assert second.melt.amount == 488
        assert second.melt.fee_buffer == 12

    async def test_paid_auto_melt(self, service, mint, store, caplog):
        receipt = await service.process(token_for(mint, 500))

        assert receipt.melt.paid
        assert receipt.melt.outcome == "paid"
        assert receipt.melt.preimage == "ab" * 32
        assert await store.get_balance(WalletId(mint.url, "sat")) == 12
        assert (
            f"Balance (500) >= threshold (500), attempting auto-melt of 488 - Mint: {mint.url}, Unit: sat"
            in messages(caplog, "INFO")
        )
        assert (
            f"Auto-melt completed - Mint: {mint.url}, Unit: sat, Amount: 488, Fee: 0, Preimage: {'ab' * 32}"
            in messages(caplog, "SUCCESS")
        )

    async def test_unpaid_melt_is_contained(self, service, mint, store, caplog):
        mint.melt_behaviour = "unpaid"

        receipt = await service.process(token_for(mint, 500))

        assert receipt.melt.outcome == "failed"
        assert await store.get_balance(WalletId(mint.url, "sat")) == 500
        assert messages(caplog, "ERROR") == [
            f"Auto-melt failed (not paid) - Mint: {mint.url}, Unit: sat, Amount: 488"
        ]

    async def test_melt_error_is_contained(self, service, mint, store, caplog):
        mint.melt_behaviour = "error"

        receipt = await service.process(token_for(mint, 500))

        assert receipt.melt.outcome == "error"
        assert "timed out" in receipt.melt.error
        assert await store.get_balance(WalletId(mint.url, "sat")) == 500
        [error] = messages(caplog, "ERROR")
        assert error.startswith(f"Auto-melt failed - Mint: {mint.url}, Unit: sat, Amount: 488, Error: ")

    async def test_failed_melt_is_retried_on_next_donation(self, service, mint, store):
        mint.melt_behaviour = "error"
        await service.process(token_for(mint, 500))

        mint.melt_behaviour = "paid"
        receipt = await service.process(token_for(mint, 10))

        assert receipt.balance == 510
        assert receipt.melt.paid
        assert receipt.melt.amount == 510 - 13

    async def test_insufficient_balance_is_contained(self, service, mint, caplog):
        with patch.object(Wallet, "melt", AsyncMock(side_effect=InsufficientBalanceError("short"))):
            receipt = await service.process(token_for(mint, 500))

        assert receipt.melt.outcome == "error"
        assert messages(caplog, "ERROR") == [
            f"Auto-melt failed (insufficient balance) - Mint: {mint.url}, Unit: sat, Amount: 488, Error: short"
        ]

    async def test_unexpected_melt_failure_is_contained(self, service, mint):
        with patch.object(Wallet, "melt", AsyncMock(side_effect=RuntimeError("boom"))):
            receipt = await service.process(token_for(mint, 500))

        assert receipt.melt.outcome == "error"
        assert receipt.melt.error == "boom"

    async def test_unit_without_threshold_never_melts(self, make_config, store):
        mint = FakeMint(units=("usd",))
        service = DonationService(
            make_config(melt_thresholds={"sat": 10}), store, mint_factory=lambda url: mint
        )
        receipt = await service.process(token_for(mint, 5000, "usd"))
        assert receipt.melt is None
        assert "melt" not in mint.calls

    async def test_default_threshold_applies(self, make_config, store):
        mint = FakeMint(units=("usd",))
        service = DonationService(
            make_config(melt_thresholds={}, default_melt_threshold=100),
            store,
            mint_factory=lambda url: mint,
        )
        receipt = await service.process(token_for(mint, 200, "usd"))
        assert receipt.melt.paid

    async def test_wallets_are_built_per_donation(self, make_config, store):
        a = FakeMint("https://a.example.com")
        b = FakeMint("https://b.example.com")
        mints = {a.url: a, b.url: b}
        service = DonationService(make_config(), store, mint_factory=mints.__getitem__)

        await service.process(token_for(a, 30))
        await service.process(token_for(b, 40))

        assert await store.get_balance(WalletId(a.url, "sat")) == 30
        assert await store.get_balance(WalletId(b.url, "sat")) == 40
        assert a.closed and b.closed


class TestProcessErrors:
    @pytest.mark.parametrize("token", ["", "   \n"])
    async def test_empty_token(self, service, token):
        with pytest.raises(ValidationError):
            await service.process(token)

    async def test_malformed_token(self, service):
        with pytest.raises(TokenDecodeError):
            await service.process("cashuAnope")

    async def test_spent_token(self, service, mint, store):
        token = token_for(mint, 50)
        await service.process(token)

        with pytest.raises(SwapError):
            await service.process(token)

        assert await store.get_balance(WalletId(mint.url, "sat")) == 50
