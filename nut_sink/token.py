"""Cashu token codec (NUT-00 V3 ``cashuA`` and V4 ``cashuB``)."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, cast

import cbor2

from .types import CurrencyUnit, Proof, TokenDecodeError


@dataclass
class Token:
    """A decoded token: one mint, one unit, a list of proofs."""

    mint: str
    unit: CurrencyUnit
    proofs: list[Proof] = field(default_factory=list)
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum_proofs(self.proofs)


def sum_proofs(proofs: list[Proof]) -> int:
    return sum(int(p["amount"]) for p in proofs)


def _b64decode(encoded: str) -> bytes:
    # Add correct padding – (-len) % 4 equals 0,1,2,3
    encoded += "=" * ((-len(encoded)) % 4)
    if "+" in encoded or "/" in encoded:
        return base64.b64decode(encoded)
    return base64.urlsafe_b64decode(encoded)


def decode_token(token: str) -> Token:
    """Parse an encoded token string.

    Raises:
        TokenDecodeError: If the string is not a well-formed V3 or V4 token
            holding proofs from exactly one mint.
    """
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]

    try:
        if token.startswith("cashuA"):
            decoded = _decode_v3(token[6:])
        elif token.startswith("cashuB"):
            decoded = _decode_v4(token[6:])
        else:
            raise TokenDecodeError(f"Unknown token version: {token[:7]!r}")
    except TokenDecodeError:
        raise
    except (
        ValueError,
        KeyError,
        TypeError,
        IndexError,
        AttributeError,
        binascii.Error,
        cbor2.CBORDecodeError,
    ) as e:
        raise TokenDecodeError(f"Malformed token: {e}") from e

    if not decoded.proofs:
        raise TokenDecodeError("Token contains no proofs")
    for proof in decoded.proofs:
        if not isinstance(proof["amount"], int) or proof["amount"] <= 0:
            raise TokenDecodeError(f"Invalid proof amount: {proof['amount']!r}")
    return decoded


def _decode_v3(encoded: str) -> Token:
    token_data = json.loads(_b64decode(encoded).decode())

    entries = [entry for entry in token_data["token"] if entry.get("proofs")]
    mints = {entry["mint"].rstrip("/") for entry in entries}
    if len(mints) > 1:
        raise TokenDecodeError("Multi-mint tokens are not supported")
    if not entries:
        raise TokenDecodeError("Token contains no proofs")

    mint_url = mints.pop()
    # V3 tokens default to "sat" when no unit is given
    unit = cast(CurrencyUnit, token_data.get("unit", "sat"))

    proofs: list[Proof] = []
    for entry in entries:
        for proof in entry["proofs"]:
            proofs.append(
                Proof(
                    id=proof["id"],
                    amount=proof["amount"],
                    secret=proof["secret"],
                    C=proof["C"],
                    mint=mint_url,
                    unit=unit,
                )
            )
    return Token(mint=mint_url, unit=unit, proofs=proofs, memo=token_data.get("memo"))


def _decode_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64decode(encoded))

    # 'm' = mint URL, 'u' = unit, 't' = [{'i': keyset id, 'p': proofs}]
    mint_url = token_data["m"].rstrip("/")
    unit = cast(CurrencyUnit, token_data["u"])

    proofs: list[Proof] = []
    for entry in token_data["t"]:
        keyset_id = entry["i"].hex()
        for proof in entry["p"]:
            proofs.append(
                Proof(
                    id=keyset_id,
                    amount=proof["a"],
                    secret=proof["s"],
                    C=proof["c"].hex(),
                    mint=mint_url,
                    unit=unit,
                )
            )
    return Token(mint=mint_url, unit=unit, proofs=proofs, memo=token_data.get("d"))


def encode_token(token: Token, *, version: int = 4) -> str:
    """Serialize a token (V3 JSON or V4 CBOR)."""
    if version == 3:
        token_data: dict[str, Any] = {
            "token": [
                {
                    "mint": token.mint,
                    "proofs": [
                        {"id": p["id"], "amount": p["amount"], "secret": p["secret"], "C": p["C"]}
                        for p in token.proofs
                    ],
                }
            ],
            "unit": token.unit,
        }
        if token.memo:
            token_data["memo"] = token.memo
        json_str = json.dumps(token_data, separators=(",", ":"))
        return "cashuA" + base64.urlsafe_b64encode(json_str.encode()).decode().rstrip("=")

    if version == 4:
        proofs_by_keyset: dict[str, list[Proof]] = {}
        for proof in token.proofs:
            proofs_by_keyset.setdefault(proof["id"], []).append(proof)

        cbor_data: dict[str, Any] = {
            "m": token.mint,
            "u": token.unit,
            "t": [
                {
                    "i": bytes.fromhex(keyset_id),
                    "p": [
                        {"a": p["amount"], "s": p["secret"], "c": bytes.fromhex(p["C"])}
                        for p in keyset_proofs
                    ],
                }
                for keyset_id, keyset_proofs in proofs_by_keyset.items()
            ],
        }
        if token.memo:
            cbor_data["d"] = token.memo
        return "cashuB" + base64.urlsafe_b64encode(cbor2.dumps(cbor_data)).decode().rstrip("=")

    raise ValueError(f"Unsupported token version: {version}")
