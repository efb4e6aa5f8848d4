from __future__ import annotations

import asyncio
import logging
import math
from typing import cast

from coincurve import PublicKey

from .crypto import (
    BlindedOutput,
    SecretDeriver,
    get_mint_pubkey_for_amount,
    secret_to_y,
    unblind_signature,
)
from .lnurl import is_bolt11_invoice, resolve_invoice
from .mint import BlindedSignature, Mint, ProofComplete, PostMeltQuoteResponse
from .store import LedgerStore
from .token import Token, decode_token, sum_proofs
from .types import (
    PENDING,
    SPENT,
    UNSPENT,
    CurrencyUnit,
    InsufficientBalanceError,
    LNURLError,
    MeltError,
    MeltResult,
    MintError,
    Proof,
    ReconcileReport,
    RestoreReport,
    StoredProof,
    SwapError,
    WalletId,
)

logger = logging.getLogger(__name__)

CHECKSTATE_BATCH_SIZE = 100
RESERVE_ATTEMPTS = 3


def fee_buffer(balance: int) -> int:
    """Value withheld from an auto-melt for Lightning routing fees."""
    return max(3, math.ceil(balance * 0.02) + 2)


def blank_output_count(max_change: int) -> int:
    """Number of NUT-08 blank outputs able to carry up to ``max_change`` back."""
    if max_change <= 0:
        return 0
    return max(math.ceil(math.log2(max_change)), 1)


# ──────────────────────────────────────────────────────────────────────────────
# Wallet implementation
# ──────────────────────────────────────────────────────────────────────────────


class Wallet:
    """Cashu wallet bound to one (mint, unit) pair.

    Holds no state of its own beyond the derivation seed: proofs and
    derivation counters live in the ledger store, so a wallet can be
    rebuilt on every request.
    """

    def __init__(
        self,
        wallet_id: WalletId,
        *,
        deriver: SecretDeriver,
        store: LedgerStore,
        mint: Mint | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.wallet_id = wallet_id
        self.deriver = deriver
        self.store = store
        self.timeout = timeout
        self._owns_mint = mint is None
        self.mint = mint or Mint(wallet_id.mint_url, timeout=timeout)

    @classmethod
    def from_seed(
        cls,
        seed_phrase: str,
        mint_url: str,
        unit: CurrencyUnit | str,
        store: LedgerStore,
        *,
        mint: Mint | None = None,
        timeout: float = 30.0,
    ) -> Wallet:
        """Build the wallet for (mint_url, unit) from the master seed phrase.

        Raises:
            ConfigurationError: If the seed phrase is not a valid mnemonic
        """
        return cls(
            WalletId.of(mint_url, unit),
            deriver=SecretDeriver.from_phrase(seed_phrase),
            store=store,
            mint=mint,
            timeout=timeout,
        )

    @property
    def mint_url(self) -> str:
        return self.wallet_id.mint_url

    @property
    def unit(self) -> str:
        return self.wallet_id.unit

    async def aclose(self) -> None:
        if self._owns_mint:
            await self.mint.aclose()

    async def __aenter__(self) -> Wallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ─────────────────────────────── Receive ──────────────────────────────────

    async def receive(self, token: str | Token) -> list[Proof]:
        """Swap a donated token's proofs for fresh ones under this wallet's keys.

        On return the original proofs are spent at the mint and the new proofs
        are durably stored as UNSPENT.

        Args:
            token: Encoded token string or an already decoded token

        Returns:
            The newly stored proofs

        Raises:
            TokenDecodeError: If the token string is malformed
            SwapError: If the token belongs to another wallet or the mint
                rejects the swap; nothing is persisted in that case
        """
        if isinstance(token, str):
            token = decode_token(token)
        if WalletId.of(token.mint, token.unit) != self.wallet_id:
            raise SwapError(
                f"Token for {token.mint}#{token.unit} cannot be received by wallet {self.wallet_id}"
            )

        try:
            keyset = await self.mint.get_active_keyset(self.unit)
            input_fees = await self._input_fees(token.proofs)
            output_amount = token.amount - input_fees
            if output_amount <= 0:
                raise SwapError(
                    f"Token amount {token.amount} does not cover input fees of {input_fees}"
                )

            denominations = await self.mint.get_denominations(keyset["id"])
            amounts = Mint.calculate_optimal_split(output_amount, denominations)
            outputs = await self._build_outputs(keyset["id"], amounts)

            swap_resp = await self.mint.swap(
                inputs=cast(list[ProofComplete], token.proofs),
                outputs=[o.to_message() for o in outputs],
            )
            new_proofs = await self._unblind(outputs, swap_resp["signatures"])
        except MintError as e:
            raise SwapError(f"Swap failed: {e}") from e

        # The swap is final at the mint; persist both halves even if the
        # caller is cancelled meanwhile.
        await asyncio.shield(self._store_swapped(token.proofs, new_proofs))
        return new_proofs

    async def _store_swapped(self, spent: list[Proof], new_proofs: list[Proof]) -> None:
        await self.store.put(self.wallet_id, new_proofs)
        await self.store.mark_spent(self.wallet_id, [p["secret"] for p in spent])

    # ─────────────────────────────── Balance ──────────────────────────────────

    async def get_balance(self) -> int:
        return await self.store.get_balance(self.wallet_id)

    @staticmethod
    def select_melt_amount(balance: int, threshold: int) -> int | None:
        """Amount to auto-melt for a balance, or None below the threshold."""
        if balance < threshold:
            return None
        return balance - fee_buffer(balance)

    # ─────────────────────────────── Melt ──────────────────────────────────

    async def melt(self, destination: str, amount: int) -> MeltResult:
        """Pay ``amount`` (in the wallet's unit) to a Lightning destination.

        Args:
            destination: bolt11 invoice, Lightning address or LNURL
            amount: Amount to pay, excluding fees

        Returns:
            The mint's verdict. ``paid=False`` means the reserved proofs are
            UNSPENT again, or still PENDING when ``pending=True``.

        Raises:
            InsufficientBalanceError: If unspent proofs cannot cover the
                quote plus fees
            MeltError: If quoting or paying failed; reserved proofs are
                released unless the mint reports them spent or pending
        """
        if amount <= 0:
            raise MeltError(f"Melt amount must be positive, got {amount}")

        try:
            invoice = await self._resolve_invoice(destination, amount)
            quote = await self.mint.create_melt_quote(invoice, unit=self.unit)
            keyset = await self.mint.get_active_keyset(self.unit)
            fee_ppk = await self._fee_ppk()
        except (MintError, LNURLError) as e:
            raise MeltError(f"Could not obtain melt quote: {e}") from e

        quote_amount = int(quote.get("amount", 0))
        fee_reserve = int(quote.get("fee_reserve", 0) or 0)
        selected = await self._reserve_proofs(quote_amount + fee_reserve, fee_ppk)
        secrets = [p["secret"] for p in selected]
        max_change = sum_proofs(selected) - _input_fees(selected, fee_ppk) - quote_amount

        try:
            blank_outputs = await self._build_outputs(
                keyset["id"], [1] * blank_output_count(max_change)
            )
            melt_resp = await self.mint.melt(
                quote=quote["quote"],
                inputs=cast(list[ProofComplete], selected),
                outputs=[o.to_message() for o in blank_outputs] or None,
            )
        except Exception as e:
            await self._settle_after_error(selected)
            raise MeltError(f"Melt failed: {e}") from e

        state = _melt_state(melt_resp)
        if state == "PAID":
            change = await self._unblind_change(blank_outputs, melt_resp.get("change") or [])
            await asyncio.shield(self._store_paid(secrets, change))
            change_amount = sum_proofs(change)
            return MeltResult(
                paid=True,
                fee=sum_proofs(selected) - quote_amount - change_amount,
                preimage=melt_resp.get("payment_preimage"),
                change=change_amount,
            )
        if state == "PENDING":
            logger.warning(
                "Melt quote %s is pending at %s; %d proofs left PENDING",
                quote["quote"],
                self.mint_url,
                len(selected),
            )
            return MeltResult(paid=False, pending=True)

        await self.store.commit(self.wallet_id, secrets, UNSPENT)
        return MeltResult(paid=False)

    async def _resolve_invoice(self, destination: str, amount: int) -> str:
        if is_bolt11_invoice(destination):
            return destination.removeprefix("lightning:")
        if self.unit == "msat":
            amount_msat = amount
        else:
            sats = int(amount * await self.mint.sats_per_unit(self.unit))
            if sats <= 0:
                raise MeltError(f"{amount} {self.unit} is worth less than one sat")
            amount_msat = sats * 1000
        return await resolve_invoice(destination, amount_msat, timeout=self.timeout)

    async def _reserve_proofs(self, amount: int, fee_ppk: dict[str, int]) -> list[StoredProof]:
        """Select and reserve unspent proofs covering ``amount`` plus input fees."""
        for _ in range(RESERVE_ATTEMPTS):
            unspent = await self.store.list_unspent(self.wallet_id)
            selected = _select_proofs(unspent, amount, fee_ppk)
            if selected is None:
                raise InsufficientBalanceError(
                    f"Insufficient balance: need {amount} {self.unit} plus input fees, "
                    f"have {sum_proofs(cast(list[Proof], unspent))}"
                )
            if await self.store.reserve(self.wallet_id, [p["secret"] for p in selected]):
                return selected
            logger.debug("Proofs for %s taken by a concurrent melt, reselecting", self.wallet_id)
        raise MeltError(f"Could not reserve proofs for {self.wallet_id}: concurrent melts")

    async def _settle_after_error(self, proofs: list[StoredProof]) -> None:
        """Ask the mint what happened to proofs whose melt call failed."""
        secrets = [p["secret"] for p in proofs]
        ys = [secret_to_y(s) for s in secrets]
        try:
            response = await self.mint.check_state(Ys=ys)
            by_y = {entry.get("Y"): entry.get("state") for entry in response["states"]}
        except MintError as e:
            logger.warning("Could not check proof states after failed melt: %s", e)
            by_y = {}

        states = {by_y.get(y) for y in ys}
        if states == {SPENT}:
            await self.store.commit(self.wallet_id, secrets, SPENT)
        elif states & {SPENT, PENDING}:
            logger.warning(
                "Melt outcome unknown for %d proofs of %s; left PENDING",
                len(secrets),
                self.wallet_id,
            )
        else:
            await self.store.commit(self.wallet_id, secrets, UNSPENT)

    async def _store_paid(self, secrets: list[str], change: list[Proof]) -> None:
        await self.store.commit(self.wallet_id, secrets, SPENT)
        await self.store.put(self.wallet_id, change)

    async def _unblind_change(
        self, outputs: list[BlindedOutput], signatures: list[BlindedSignature]
    ) -> list[Proof]:
        try:
            return await self._unblind(outputs, signatures)
        except MintError as e:
            lost = sum(int(s.get("amount", 0)) for s in signatures)
            logger.error(
                "Could not unblind melt change from %s: %s; %d %s of change not recovered "
                "and counted as fee",
                self.mint_url,
                e,
                lost,
                self.unit,
            )
            return []

    # ─────────────────────────────── Maintenance ──────────────────────────────────

    async def reconcile(self) -> ReconcileReport:
        """Align local UNSPENT / PENDING proofs with the mint's view of them."""
        proofs = await self.store.list_proofs(self.wallet_id, [UNSPENT, PENDING])
        report = ReconcileReport()

        for start in range(0, len(proofs), CHECKSTATE_BATCH_SIZE):
            batch = proofs[start : start + CHECKSTATE_BATCH_SIZE]
            ys = [secret_to_y(p["secret"]) for p in batch]
            response = await self.mint.check_state(Ys=ys)
            by_y = {entry.get("Y"): entry.get("state") for entry in response["states"]}

            updates = {}
            for proof, y in zip(batch, ys):
                report.checked += 1
                state = by_y.get(y)
                if state not in (UNSPENT, PENDING, SPENT):
                    continue
                if state == PENDING:
                    report.still_pending += 1
                if state == proof["state"]:
                    continue
                updates[proof["secret"]] = state
                if state == SPENT:
                    report.marked_spent += 1
                elif state == UNSPENT:
                    report.marked_unspent += 1
            await self.store.set_states(self.wallet_id, updates)

        logger.info(
            "Reconciled %s: checked %d, spent %d, released %d, pending %d",
            self.wallet_id,
            report.checked,
            report.marked_spent,
            report.marked_unspent,
            report.still_pending,
        )
        return report

    async def restore(
        self, *, batch_size: int = 25, max_empty_batches: int = 3
    ) -> RestoreReport:
        """Recover proofs from the mint by replaying deterministic outputs (NUT-09).

        Every keyset of the wallet's unit is scanned from counter 0 until
        ``max_empty_batches`` consecutive batches come back empty. Recovered
        proofs the mint still reports UNSPENT are stored, and each keyset
        counter is moved past the last index the mint had signed.
        """
        keysets = [
            ks for ks in await self.mint.get_keysets_info(refresh=True) if ks["unit"] == self.unit
        ]
        known = {p["secret"] for p in await self.store.list_proofs(self.wallet_id)}
        report = RestoreReport(keysets=len(keysets), counters={})

        for keyset in keysets:
            keyset_id = keyset["id"]
            counter = 0
            empty_batches = 0
            last_used = -1

            while empty_batches < max_empty_batches:
                outputs = [
                    self.deriver.blinded_output(1, keyset_id, c)
                    for c in range(counter, counter + batch_size)
                ]
                counter += batch_size
                response = await self.mint.restore(outputs=[o.to_message() for o in outputs])
                signatures = response.get("signatures") or response.get("promises") or []
                if not signatures:
                    empty_batches += 1
                    continue
                empty_batches = 0

                by_b = {o.B_: o for o in outputs}
                matched = [
                    (by_b[msg["B_"]], sig)
                    for msg, sig in zip(response.get("outputs") or [], signatures)
                    if msg["B_"] in by_b
                ]
                if not matched:
                    continue
                last_used = max(last_used, max(o.counter or 0 for o, _ in matched))

                proofs = await self._unblind([o for o, _ in matched], [s for _, s in matched])
                fresh = [p for p in await self._unspent_only(proofs) if p["secret"] not in known]
                await self.store.put(self.wallet_id, fresh)
                known.update(p["secret"] for p in fresh)
                report.recovered_proofs += len(fresh)
                report.recovered_amount += sum_proofs(fresh)

            if last_used >= 0:
                report.counters[keyset_id] = await self.store.advance_counter(
                    keyset_id, last_used + 1
                )

        logger.info(
            "Restored %d proofs worth %d %s for %s",
            report.recovered_proofs,
            report.recovered_amount,
            self.unit,
            self.wallet_id,
        )
        return report

    async def _unspent_only(self, proofs: list[Proof]) -> list[Proof]:
        if not proofs:
            return []
        ys = [secret_to_y(p["secret"]) for p in proofs]
        response = await self.mint.check_state(Ys=ys)
        by_y = {entry.get("Y"): entry.get("state") for entry in response["states"]}
        return [p for p, y in zip(proofs, ys) if by_y.get(y) == UNSPENT]

    # ─────────────────────────────── Helpers ──────────────────────────────────

    async def _fee_ppk(self) -> dict[str, int]:
        return await self.mint.input_fee_ppk()

    async def _input_fees(self, proofs: list[Proof]) -> int:
        fee_ppk = await self._fee_ppk()
        return _input_fees(proofs, fee_ppk)

    async def _build_outputs(self, keyset_id: str, amounts: list[int]) -> list[BlindedOutput]:
        """Deterministic blinded outputs on freshly reserved counters, sorted by amount."""
        if not amounts:
            return []
        first = await self.store.reserve_counter(keyset_id, len(amounts))
        return [
            self.deriver.blinded_output(amount, keyset_id, first + i)
            for i, amount in enumerate(sorted(amounts))
        ]

    async def _unblind(
        self, outputs: list[BlindedOutput], signatures: list[BlindedSignature]
    ) -> list[Proof]:
        if len(signatures) > len(outputs):
            raise MintError(
                f"Mint returned {len(signatures)} signatures for {len(outputs)} outputs"
            )
        proofs: list[Proof] = []
        for output, sig in zip(outputs, signatures):
            keyset = await self.mint.get_keyset(sig["id"])
            amount = int(sig["amount"])
            mint_pubkey = get_mint_pubkey_for_amount(keyset["keys"], amount)
            if mint_pubkey is None:
                raise MintError(f"Could not find mint public key for amount {amount}")

            C = unblind_signature(PublicKey(bytes.fromhex(sig["C_"])), output.r, mint_pubkey)
            proofs.append(
                Proof(
                    id=sig["id"],
                    amount=amount,
                    secret=output.secret,
                    C=C.format(compressed=True).hex(),
                    mint=self.mint_url,
                    unit=cast(CurrencyUnit, self.unit),
                )
            )
        return proofs


def _input_fees(proofs: list[Proof] | list[StoredProof], fee_ppk: dict[str, int]) -> int:
    total_ppk = sum(fee_ppk.get(p["id"], 0) for p in proofs)
    return (total_ppk + 999) // 1000


def _select_proofs(
    unspent: list[StoredProof], amount: int, fee_ppk: dict[str, int]
) -> list[StoredProof] | None:
    """Largest-first selection covering ``amount`` plus the inputs' own fees."""
    selected: list[StoredProof] = []
    total = 0
    for proof in sorted(unspent, key=lambda p: p["amount"], reverse=True):
        if total >= amount + _input_fees(selected, fee_ppk):
            break
        selected.append(proof)
        total += proof["amount"]
    if not selected or total < amount + _input_fees(selected, fee_ppk):
        return None
    return selected


def _melt_state(response: PostMeltQuoteResponse) -> str:
    state = response.get("state")
    if state in ("PAID", "PENDING", "UNPAID"):
        return state
    return "PAID" if response.get("paid") else "UNPAID"
