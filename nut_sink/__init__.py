"""nut-sink - Cashu ecash donation sink.

Swaps donated tokens into a per-mint, per-unit ledger and melts the
balance to Lightning once it crosses a threshold.
"""

from .config import DonationConfig, load_config
from .service import DonationService
from .store import LedgerStore
from .wallet import Wallet

__all__ = [
    # Donation flow
    "DonationService",
    "DonationConfig",
    "load_config",
    # Wallet and ledger
    "Wallet",
    "LedgerStore",
]
