"""LNURL-pay / Lightning address resolution and bolt11 amount parsing."""

from __future__ import annotations

import logging
from typing import Any, TypedDict

import bolt11
import httpx
from bech32 import CHARSET, bech32_verify_checksum, convertbits
from bolt11.exceptions import Bolt11Exception

from .types import LNURLError

logger = logging.getLogger(__name__)

_INVOICE_PREFIXES = ("lnbcrt", "lntbs", "lnbc", "lntb", "lnsb")


class LNURLData(TypedDict):
    callback_url: str
    min_sendable: int  # msat
    max_sendable: int  # msat
    metadata: str


def is_bolt11_invoice(value: str) -> bool:
    value = value.lower().removeprefix("lightning:")
    return value.startswith(_INVOICE_PREFIXES)


def parse_lightning_invoice_amount(invoice: str, unit: str = "sat") -> int:
    """Amount of a bolt11 invoice.

    The invoice is fully decoded, so a bad checksum or signature is rejected.

    Args:
        invoice: BOLT-11 invoice
        unit: "sat" or "msat"

    Raises:
        LNURLError: If the invoice is malformed or carries no amount
    """
    if unit not in ("sat", "msat"):
        raise LNURLError(f"Unsupported unit: {unit}")
    invoice = invoice.strip().lower().removeprefix("lightning:")
    try:
        amount_msat = bolt11.decode(invoice).amount_msat
    except (Bolt11Exception, ValueError, IndexError, KeyError) as e:
        raise LNURLError(f"Invalid invoice: {e}") from e
    if not amount_msat:
        raise LNURLError("Invoice has no amount")

    if unit == "msat":
        return int(amount_msat)
    return int(amount_msat) // 1000


def _bech32_decode_url(lnurl: str) -> str:
    # bech32_decode caps input at 90 characters; LNURLs are usually longer
    lnurl = lnurl.lower()
    separator = lnurl.rfind("1")
    if separator < 1 or separator + 7 > len(lnurl):
        raise LNURLError("Invalid bech32 LNURL")
    hrp = lnurl[:separator]
    try:
        data = [CHARSET.index(c) for c in lnurl[separator + 1 :]]
    except ValueError as e:
        raise LNURLError("Invalid bech32 character in LNURL") from e
    if not bech32_verify_checksum(hrp, data):
        raise LNURLError("Invalid LNURL checksum")

    decoded = convertbits(data[:-6], 5, 8, False)
    if decoded is None:
        raise LNURLError("Invalid bech32 padding in LNURL")
    try:
        return bytes(decoded).decode("utf-8")
    except UnicodeDecodeError as e:
        raise LNURLError("LNURL does not decode to a URL") from e


def lnurl_to_url(lnurl: str) -> str:
    """Turn a Lightning address, bech32 LNURL or plain URL into the LNURL-pay endpoint."""
    lnurl = lnurl.strip().removeprefix("lightning:").removeprefix("LIGHTNING:")
    if "@" in lnurl and not lnurl.startswith(("http://", "https://")):
        user, host = lnurl.split("@", 1)
        if not user or not host:
            raise LNURLError(f"Invalid Lightning address: {lnurl}")
        scheme = "http" if host.endswith(".onion") or host.startswith("localhost") else "https"
        return f"{scheme}://{host}/.well-known/lnurlp/{user}"
    if lnurl.lower().startswith("lnurl"):
        return _bech32_decode_url(lnurl)
    if lnurl.startswith(("http://", "https://")):
        return lnurl
    raise LNURLError(f"Unrecognised LNURL: {lnurl}")


async def _get_json(client: httpx.AsyncClient, url: str, **kwargs: Any) -> dict[str, Any]:
    try:
        response = await client.get(url, **kwargs)
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPError as e:
        raise LNURLError(f"LNURL request to {url} failed: {e}") from e
    except ValueError as e:
        raise LNURLError(f"LNURL endpoint {url} returned invalid JSON") from e

    if not isinstance(data, dict):
        raise LNURLError(f"LNURL endpoint {url} returned unexpected payload")
    if data.get("status") == "ERROR":
        raise LNURLError(f"LNURL error: {data.get('reason', 'unknown')}")
    return data


async def get_lnurl_data(lnurl: str, *, client: httpx.AsyncClient) -> LNURLData:
    """Fetch the LNURL-pay parameters (LUD-06 / LUD-16)."""
    data = await _get_json(client, lnurl_to_url(lnurl))
    if data.get("tag") != "payRequest":
        raise LNURLError(f"Not an LNURL-pay endpoint: tag={data.get('tag')!r}")
    try:
        return LNURLData(
            callback_url=data["callback"],
            min_sendable=int(data["minSendable"]),
            max_sendable=int(data["maxSendable"]),
            metadata=data.get("metadata", ""),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise LNURLError(f"Incomplete LNURL-pay response: {e}") from e


async def get_lnurl_invoice(
    callback_url: str, amount_msat: int, *, client: httpx.AsyncClient
) -> tuple[str, dict[str, Any]]:
    """Request an invoice for ``amount_msat`` from an LNURL-pay callback."""
    data = await _get_json(client, callback_url, params={"amount": amount_msat})
    invoice = data.get("pr")
    if not invoice:
        raise LNURLError("LNURL callback returned no invoice")
    return invoice, data


async def resolve_invoice(destination: str, amount_msat: int, *, timeout: float) -> str:
    """Return a bolt11 invoice paying ``amount_msat`` to ``destination``.

    A bolt11 destination is returned unchanged. Anything else is resolved
    through LNURL-pay and the returned invoice amount is verified.
    """
    if is_bolt11_invoice(destination):
        return destination.removeprefix("lightning:")

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        lnurl_data = await get_lnurl_data(destination, client=client)
        if not lnurl_data["min_sendable"] <= amount_msat <= lnurl_data["max_sendable"]:
            raise LNURLError(
                f"Amount {amount_msat} msat is outside LNURL limits "
                f"({lnurl_data['min_sendable']} - {lnurl_data['max_sendable']} msat)"
            )
        invoice, _ = await get_lnurl_invoice(
            lnurl_data["callback_url"], amount_msat, client=client
        )

    invoice_msat = parse_lightning_invoice_amount(invoice, "msat")
    if invoice_msat != amount_msat:
        raise LNURLError(
            f"LNURL invoice amount {invoice_msat} msat does not match requested {amount_msat} msat"
        )
    logger.debug("Resolved %s to invoice for %d msat", destination, amount_msat)
    return invoice
