"""
Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
import time
from typing import Any, TypedDict, cast

import httpx

from .types import (
    BlindedMessage,
    BlindedSignature,
    CurrencyUnit,
    MintCommunicationError,
    MintError,
    Proof,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class InvalidKeysetError(MintError):
    """Raised when keyset structure is invalid per NUT-01."""


class Mint:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        # Normalize URL by removing trailing slashes
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._keysets_info: list[KeysetInfo] = []
        self._keysets: dict[str, Keyset] = {}
        # Exchange rate cache: {unit: (sats_per_unit, timestamp)}
        self._exchange_rate_cache: dict[str, tuple[float, float]] = {}
        self._exchange_rate_cache_ttl = 300  # 5 minutes cache TTL

    async def aclose(self) -> None:
        """Close the HTTP client if we created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> Mint:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint."""
        logger.debug("%s request to %s%s", method, self.url, path)
        try:
            response = await self.client.request(
                method,
                f"{self.url}{path}",
                json=json,
                params=params,
            )
        except httpx.TimeoutException as e:
            raise MintCommunicationError(f"Mint {self.url} timed out on {path}") from e
        except httpx.TransportError as e:
            raise MintCommunicationError(f"Mint {self.url} unreachable: {e}") from e
        except httpx.RequestError as e:
            raise MintCommunicationError(f"Mint {self.url} request to {path} failed: {e}") from e

        if response.status_code >= 400:
            detail: Any = response.text
            try:
                detail = response.json().get("detail", detail)
            except (ValueError, AttributeError):
                pass
            raise MintError(
                f"Mint returned {response.status_code}: {detail}",
                status_code=response.status_code,
                detail=detail,
            )

        try:
            return response.json()
        except ValueError as e:
            raise MintError(f"Mint returned invalid JSON on {path}") from e

    def _validate_keyset(self, keyset: dict[str, Any]) -> bool:
        """Validate keyset structure per NUT-01 specification."""
        required_fields = ["id", "unit", "keys"]
        if not all(field in keyset for field in required_fields):
            return False

        keys = keyset.get("keys", {})
        if not isinstance(keys, dict):
            return False

        for amount_str, pubkey in keys.items():
            if not amount_str.isdigit() or not self._is_valid_compressed_pubkey(pubkey):
                return False

        return True

    def _is_valid_compressed_pubkey(self, pubkey: str) -> bool:
        """Validate that pubkey is a valid compressed secp256k1 public key."""
        try:
            # Compressed secp256k1 pubkeys are 33 bytes (66 hex chars)
            if len(pubkey) != 66:
                return False
            if not pubkey.startswith(("02", "03")):
                return False
            bytes.fromhex(pubkey)
            return True
        except (ValueError, TypeError):
            return False

    def _validate_keys_response(self, response: dict[str, Any]) -> KeysResponse:
        """Validate and cast response to NUT-01 compliant KeysResponse.

        Raises:
            InvalidKeysetError: If response doesn't match NUT-01 specification
        """
        if "keysets" not in response:
            raise InvalidKeysetError("Response missing 'keysets' field")

        keysets = response["keysets"]
        if not isinstance(keysets, list) or not keysets:
            raise InvalidKeysetError("'keysets' must be a non-empty list")

        for i, keyset in enumerate(keysets):
            if not self._validate_keyset(keyset):
                raise InvalidKeysetError(f"Invalid keyset at index {i}")

        return cast(KeysResponse, response)

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_keysets_info(self, *, refresh: bool = False) -> list[KeysetInfo]:
        """Get all keysets known to the mint (active and inactive)."""
        if self._keysets_info and not refresh:
            return self._keysets_info
        response = await self._request("GET", "/v1/keysets")
        self._keysets_info = cast(list[KeysetInfo], response["keysets"])
        return self._keysets_info

    async def get_keyset(self, id: str) -> Keyset:
        """Get the public keys of one keyset."""
        if id not in self._keysets:
            response = await self._request("GET", f"/v1/keys/{id}")
            self._keysets[id] = self._validate_keys_response(response)["keysets"][0]
        return self._keysets[id]

    async def get_active_keyset(self, unit: CurrencyUnit | str) -> KeysetInfo:
        """Active keyset for a unit, preferring the lowest input fee."""
        keysets = [
            ks
            for ks in await self.get_keysets_info()
            if ks.get("active", True) and ks["unit"] == unit
        ]
        if not keysets:
            raise MintError(f"No active keyset found for unit '{unit}' on {self.url}")
        return min(keysets, key=lambda ks: int(ks.get("input_fee_ppk", 0) or 0))

    async def get_denominations(self, keyset_id: str) -> list[int]:
        keyset = await self.get_keyset(keyset_id)
        return sorted(int(amount) for amount in keyset["keys"])

    async def input_fee_ppk(self) -> dict[str, int]:
        """keyset id -> input fee in parts per thousand"""
        fees: dict[str, int] = {}
        for keyset in await self.get_keysets_info():
            try:
                fees[keyset["id"]] = int(keyset.get("input_fee_ppk", 0) or 0)
            except (ValueError, TypeError):
                fees[keyset["id"]] = 0
        return fees

    @staticmethod
    def calculate_optimal_split(amount: int, available_denominations: list[int]) -> list[int]:
        """Split an amount into denominations, largest first.

        Uses a greedy algorithm over the keyset denominations, falling back
        to powers of two when none are known.
        """
        if amount <= 0:
            return []
        denominations = sorted(available_denominations, reverse=True) or [
            2**i for i in range(63, -1, -1)
        ]

        parts: list[int] = []
        remaining = amount
        for denom in denominations:
            while remaining >= denom:
                parts.append(denom)
                remaining -= denom

        if remaining > 0:
            raise MintError(f"Cannot split {amount} into available denominations")
        return parts

    async def sats_per_unit(self, unit: CurrencyUnit | str) -> float:
        """How many satoshis one base unit of ``unit`` is worth.

        For non-bitcoin units the rate comes from pricing a sat invoice
        through a melt quote in ``unit``. No mint fees are included.
        """
        if unit == "sat":
            return 1.0
        if unit == "msat":
            return 0.001

        current_time = time.time()
        if unit in self._exchange_rate_cache:
            rate, timestamp = self._exchange_rate_cache[unit]
            if current_time - timestamp < self._exchange_rate_cache_ttl:
                return rate

        PRECISION_FACTOR = 100_000
        quote = await self.create_mint_quote(amount=PRECISION_FACTOR, unit="sat")
        melt_quote = await self.create_melt_quote(quote["request"], unit=unit)
        if not melt_quote.get("amount"):
            raise MintError(f"Mint could not price {unit} against sat")
        rate = PRECISION_FACTOR / melt_quote["amount"]

        self._exchange_rate_cache[unit] = (rate, current_time)
        return rate

    # ───────────────────────── Minting ─────────────────────────────────

    async def create_mint_quote(
        self,
        *,
        amount: int,
        unit: CurrencyUnit | str = "sat",
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    # ───────────────────────── Melting ─────────────────────────────────

    async def create_melt_quote(
        self,
        request: str,
        *,
        unit: CurrencyUnit | str,
    ) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[ProofComplete],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {
            "quote": quote,
            "inputs": [_wire_proof(p) for p in inputs],
        }
        if outputs:
            body["outputs"] = outputs

        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/bolt11", json=body),
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self,
        *,
        inputs: list[ProofComplete],
        outputs: list[BlindedMessage],
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {
            "inputs": [_wire_proof(p) for p in inputs],
            "outputs": outputs,
        }
        return cast(PostSwapResponse, await self._request("POST", "/v1/swap", json=body))

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        body: dict[str, Any] = {"Ys": Ys}
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json=body),
        )

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Restore proofs from blinded messages."""
        body: dict[str, Any] = {"outputs": outputs}
        return cast(PostRestoreResponse, await self._request("POST", "/v1/restore", json=body))


def _wire_proof(proof: Proof | ProofComplete) -> dict[str, Any]:
    """Strip wallet bookkeeping fields before sending a proof to the mint."""
    wire: dict[str, Any] = {
        "id": proof["id"],
        "amount": proof["amount"],
        "secret": proof["secret"],
        "C": proof["C"],
    }
    for optional in ("witness", "dleq"):
        if optional in proof:
            wire[optional] = proof[optional]  # type: ignore[literal-required]
    return wire


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and OpenAPI schema
# ──────────────────────────────────────────────────────────────────────────────


class ProofOptional(TypedDict, total=False):
    """Optional fields for Proof (NUT-00 specification)."""

    Y: str
    witness: str
    dleq: dict[str, Any]


class ProofComplete(Proof, ProofOptional):
    """Complete Proof type with both required and optional fields."""

    pass


class Keyset(TypedDict):
    """Individual keyset per NUT-01 specification."""

    id: str
    unit: CurrencyUnit
    keys: dict[str, str]  # amount -> compressed secp256k1 pubkey mapping


class KeysResponse(TypedDict):
    """NUT-01 compliant mint keys response from GET /v1/keys."""

    keysets: list[Keyset]


class KeysetInfoRequired(TypedDict):
    id: str
    unit: CurrencyUnit
    active: bool


class KeysetInfoOptional(TypedDict, total=False):
    input_fee_ppk: int  # input fee in parts per thousand


class KeysetInfo(KeysetInfoRequired, KeysetInfoOptional):
    """Keyset information from /v1/keysets."""

    pass


class PostMintQuoteResponse(TypedDict):
    quote: str
    request: str  # bolt11 invoice
    amount: int
    unit: CurrencyUnit
    state: str  # "UNPAID", "PAID", "ISSUED"


class PostMeltQuoteResponse(TypedDict, total=False):
    """Melt quote / melt response."""

    quote: str
    amount: int
    fee_reserve: int
    unit: CurrencyUnit
    request: str
    paid: bool
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int
    payment_preimage: str | None
    change: list[BlindedSignature]


class PostSwapResponse(TypedDict):
    signatures: list[BlindedSignature]


class ProofStateEntry(TypedDict, total=False):
    Y: str
    state: str  # "UNSPENT", "PENDING", "SPENT"
    witness: str | None


class PostCheckStateResponse(TypedDict):
    states: list[ProofStateEntry]


class PostRestoreResponse(TypedDict, total=False):
    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
    promises: list[BlindedSignature]  # deprecated
