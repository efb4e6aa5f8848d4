"""Type definitions and error taxonomy for the nut-sink package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, NamedTuple, TypedDict


class Proof(TypedDict):
    """Proof as tracked by the ledger.

    Extends the NUT-00 proof with mint URL and unit so every proof knows
    which wallet it belongs to.
    """

    id: str
    amount: int
    secret: str
    C: str
    mint: str
    unit: CurrencyUnit


class StoredProof(Proof):
    """Proof row read back from the ledger, including its state tag."""

    state: ProofState


# Standard currency units as per NUT-00 specification
CurrencyUnit = Literal[
    "btc",
    "sat",
    "msat",
    "usd",
    "eur",
    "gbp",
    "jpy",
    "cny",
    "cad",
    "chf",
    "aud",
    "inr",
    "auth",
    "usdt",
    "usdc",
    "dai",
]

ProofState = Literal["UNSPENT", "PENDING", "SPENT"]

UNSPENT: ProofState = "UNSPENT"
PENDING: ProofState = "PENDING"
SPENT: ProofState = "SPENT"


class WalletId(NamedTuple):
    """Identity of one (mint, unit) account."""

    mint_url: str
    unit: str

    @classmethod
    def of(cls, mint_url: str, unit: str) -> WalletId:
        return cls(mint_url.rstrip("/"), unit)

    def __str__(self) -> str:
        return f"{self.mint_url}#{self.unit}"


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    B_: str  # hex encoded blinded message
    id: str  # keyset ID


class BlindedSignature(TypedDict):
    """Blinded signature response from mint."""

    amount: int
    C_: str  # hex encoded blinded signature
    id: str  # keyset ID


# ──────────────────────────────────────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MeltResult:
    """Verdict of one melt against the mint."""

    paid: bool
    fee: int = 0
    preimage: str | None = None
    pending: bool = False
    change: int = 0


MeltOutcome = Literal["paid", "failed", "error"]


@dataclass(frozen=True)
class MeltAttempt:
    """One auto-melt attempt as seen by the donation flow.

    Melt failures are carried in ``outcome`` and ``error`` rather than raised,
    so the donation response never depends on them.
    """

    amount: int
    fee_buffer: int
    outcome: MeltOutcome
    fee: int = 0
    preimage: str | None = None
    error: str | None = None

    @property
    def paid(self) -> bool:
        return self.outcome == "paid"


@dataclass(frozen=True)
class DonationReceipt:
    """Summary of one processed donation."""

    wallet_id: WalletId
    token_amount: int
    received: int
    balance: int
    melt: MeltAttempt | None = None


@dataclass
class ReconcileReport:
    checked: int = 0
    marked_spent: int = 0
    marked_unspent: int = 0
    still_pending: int = 0


@dataclass
class RestoreReport:
    keysets: int = 0
    recovered_proofs: int = 0
    recovered_amount: int = 0
    counters: dict[str, int] | None = None


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class NutSinkError(Exception):
    """Base class for donation sink errors."""


class ConfigurationError(NutSinkError):
    """Configuration is missing or malformed; no request can be served."""


class ValidationError(NutSinkError):
    """Request input is missing or empty."""


class TokenProcessingError(NutSinkError):
    """The donated token could not be accepted."""


class TokenDecodeError(TokenProcessingError):
    """The encoded token string is malformed."""


class SwapError(TokenProcessingError):
    """The mint refused or could not complete the swap."""


class WalletError(NutSinkError):
    """Base class for wallet errors."""


class MeltError(WalletError):
    """Melting to Lightning failed; reserved proofs were released."""


class InsufficientBalanceError(WalletError):
    """Unspent proofs cannot cover the requested melt."""


class MintError(Exception):
    """Base exception for mint errors."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class MintCommunicationError(MintError):
    """Mint unreachable or timed out. Safe to retry."""


class LNURLError(Exception):
    """Base exception for LNURL errors."""
