"""Cashu cryptographic primitives: BDHKE blinding and NUT-13 deterministic secrets."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass

from bip32 import BIP32
from coincurve import PrivateKey, PublicKey
from mnemonic import Mnemonic

from .types import ConfigurationError

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"

# secp256k1 field prime
_P = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F


@dataclass
class BlindedOutput:
    """A blinded message together with what is needed to unblind it later."""

    amount: int
    keyset_id: str
    secret: str
    r: bytes
    B_: str  # Blinded point (hex)
    counter: int | None = None

    def to_message(self) -> dict:
        return {"amount": self.amount, "id": self.keyset_id, "B_": self.B_}


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a secp256k1 point (NUT-00).

    Y = PublicKey('02' || sha256(msg_hash || counter)) for the first counter
    that yields a valid point, where msg_hash = sha256(DOMAIN_SEPARATOR || message).
    """
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    counter = 0
    while counter < 2**16:
        candidate = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            counter += 1
    raise ValueError("No valid point found")


def secret_to_y(secret: str) -> str:
    """Compressed hex Y for a proof secret, as used by /v1/checkstate."""
    return hash_to_curve(secret.encode("utf-8")).format(compressed=True).hex()


def blind_message(secret: str, r: bytes) -> PublicKey:
    """B_ = Y + r*G"""
    Y = hash_to_curve(secret.encode("utf-8"))
    return PublicKey.combine_keys([Y, PrivateKey(r).public_key])


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a signature from the mint.

    Args:
        C_: Blinded signature from mint
        r: Blinding factor used
        K: Mint's public key for the amount

    Returns:
        Unblinded signature C = C_ - r*K
    """
    rK = K.multiply(r)

    # Negate r*K by flipping the y coordinate
    rK_bytes = rK.format(compressed=False)
    x = rK_bytes[1:33]
    y_int = int.from_bytes(rK_bytes[33:65], "big")
    neg_y = ((_P - y_int) % _P).to_bytes(32, "big")
    neg_rK = PublicKey(b"\x04" + x + neg_y)

    return PublicKey.combine_keys([C_, neg_rK])


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


# ──────────────────────────────────────────────────────────────────────────────
# NUT-13 deterministic secrets
# ──────────────────────────────────────────────────────────────────────────────


def validate_seed_phrase(seed_phrase: str) -> str:
    """Normalise a BIP39 mnemonic, raising ConfigurationError if it is invalid."""
    words = " ".join(seed_phrase.split()).lower()
    if not words:
        raise ConfigurationError("Seed phrase is empty")
    if not Mnemonic("english").check(words):
        raise ConfigurationError("Seed phrase is not a valid BIP39 mnemonic")
    return words


def seed_from_phrase(seed_phrase: str) -> bytes:
    return Mnemonic.to_seed(validate_seed_phrase(seed_phrase), passphrase="")


def keyset_id_to_int(keyset_id: str) -> int:
    """Derivation index for a keyset: its id as an integer mod 2^31 - 1."""
    try:
        keyset_id_bytes = bytes.fromhex(keyset_id)
    except ValueError:
        # legacy base64 keyset ids
        keyset_id_bytes = base64.b64decode(keyset_id)
    return int.from_bytes(keyset_id_bytes, "big") % (2**31 - 1)


def derivation_path(keyset_id: str, counter: int) -> str:
    return f"m/129372'/0'/{keyset_id_to_int(keyset_id)}'/{counter}'"


class SecretDeriver:
    """Derives proof secrets and blinding factors from one master seed.

    Pure: the same seed, keyset and counter always give the same pair, so
    wallets can be rebuilt per request and restored from the mint.
    """

    def __init__(self, seed: bytes) -> None:
        self._bip32 = BIP32.from_seed(seed)

    @classmethod
    def from_phrase(cls, seed_phrase: str) -> SecretDeriver:
        return cls(seed_from_phrase(seed_phrase))

    def derive(self, keyset_id: str, counter: int) -> tuple[str, bytes]:
        """Return (secret_hex, r) for a keyset and counter."""
        path = derivation_path(keyset_id, counter)
        secret = self._bip32.get_privkey_from_path(f"{path}/0")
        r = self._bip32.get_privkey_from_path(f"{path}/1")
        return secret.hex(), r

    def blinded_output(self, amount: int, keyset_id: str, counter: int) -> BlindedOutput:
        secret, r = self.derive(keyset_id, counter)
        B_ = blind_message(secret, r)
        return BlindedOutput(
            amount=amount,
            keyset_id=keyset_id,
            secret=secret,
            r=r,
            B_=B_.format(compressed=True).hex(),
            counter=counter,
        )
