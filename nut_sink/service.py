"""Donation flow: decode, swap, record, and auto-melt above the threshold."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from .config import DonationConfig
from .log import SUCCESS
from .mint import Mint
from .store import LedgerStore
from .token import decode_token, sum_proofs
from .types import (
    DonationReceipt,
    InsufficientBalanceError,
    MeltAttempt,
    ValidationError,
    WalletError,
    WalletId,
)
from .wallet import Wallet, fee_buffer

logger = logging.getLogger(__name__)

MintFactory = Callable[[str], Mint]


class DonationService:
    """Processes one donated token per call.

    Holds only the read-only configuration and the store handle; wallets are
    rebuilt for every donation from the seed phrase.
    """

    def __init__(
        self,
        config: DonationConfig,
        store: LedgerStore,
        *,
        mint_factory: MintFactory | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self._mint_factory = mint_factory or (
            lambda url: Mint(url, timeout=config.mint_timeout)
        )

    @asynccontextmanager
    async def open_wallet(self, mint_url: str, unit: str) -> AsyncIterator[Wallet]:
        async with self._mint_factory(mint_url.rstrip("/")) as mint:
            yield Wallet.from_seed(
                self.config.seed_phrase,
                mint_url,
                unit,
                self.store,
                mint=mint,
                timeout=self.config.mint_timeout,
            )

    async def process(self, encoded_token: str) -> DonationReceipt:
        """Accept a donation.

        Raises:
            ValidationError: If the token is empty
            TokenProcessingError: If decoding or swapping failed
        """
        encoded_token = encoded_token.strip()
        if not encoded_token:
            raise ValidationError("Missing token parameter")

        token = decode_token(encoded_token)
        wallet_id = WalletId.of(token.mint, token.unit)
        logger.info(
            "Received donation - Mint: %s, Unit: %s, Amount: %d",
            wallet_id.mint_url,
            wallet_id.unit,
            token.amount,
        )

        async with self.open_wallet(wallet_id.mint_url, wallet_id.unit) as wallet:
            new_proofs = await wallet.receive(token)
            received = sum_proofs(new_proofs)
            logger.log(
                SUCCESS,
                "Swapped donation - Mint: %s, Unit: %s, Amount: %d",
                wallet_id.mint_url,
                wallet_id.unit,
                received,
            )

            balance = await wallet.get_balance()
            logger.info(
                "Current balance - Mint: %s, Unit: %s, Balance: %d",
                wallet_id.mint_url,
                wallet_id.unit,
                balance,
            )

            melt = None
            threshold = self.config.threshold_for(wallet_id.unit)
            if threshold is not None:
                melt = await self.auto_melt(wallet, balance, threshold)

        return DonationReceipt(
            wallet_id=wallet_id,
            token_amount=token.amount,
            received=received,
            balance=balance,
            melt=melt,
        )

    async def auto_melt(self, wallet: Wallet, balance: int, threshold: int) -> MeltAttempt | None:
        """Melt the balance minus a fee buffer once it reaches ``threshold``.

        Never raises for melt failures; the outcome is carried in the
        returned attempt. None means no melt was due.
        """
        amount = Wallet.select_melt_amount(balance, threshold)
        if amount is None:
            return None
        buffer = fee_buffer(balance)
        mint_url, unit = wallet.wallet_id
        logger.info(
            "Balance (%d) >= threshold (%d), attempting auto-melt of %d - Mint: %s, Unit: %s",
            balance,
            threshold,
            amount,
            mint_url,
            unit,
        )

        try:
            result = await wallet.melt(self.config.lightning_address, amount)
        except InsufficientBalanceError as e:
            logger.error(
                "Auto-melt failed (insufficient balance) - Mint: %s, Unit: %s, Amount: %d, Error: %s",
                mint_url,
                unit,
                amount,
                e,
            )
            return MeltAttempt(amount=amount, fee_buffer=buffer, outcome="error", error=str(e))
        except Exception as e:
            # Includes store and unexpected failures: the donation is already accepted
            logger.error(
                "Auto-melt failed - Mint: %s, Unit: %s, Amount: %d, Error: %s",
                mint_url,
                unit,
                amount,
                e,
                exc_info=not isinstance(e, WalletError),
            )
            return MeltAttempt(amount=amount, fee_buffer=buffer, outcome="error", error=str(e))

        if result.paid:
            logger.log(
                SUCCESS,
                "Auto-melt completed - Mint: %s, Unit: %s, Amount: %d, Fee: %d, Preimage: %s",
                mint_url,
                unit,
                amount,
                result.fee,
                result.preimage or "none",
            )
            return MeltAttempt(
                amount=amount,
                fee_buffer=buffer,
                outcome="paid",
                fee=result.fee,
                preimage=result.preimage,
            )

        logger.error(
            "Auto-melt failed (not paid) - Mint: %s, Unit: %s, Amount: %d",
            mint_url,
            unit,
            amount,
        )
        return MeltAttempt(
            amount=amount,
            fee_buffer=buffer,
            outcome="failed",
            error="payment pending" if result.pending else None,
        )
