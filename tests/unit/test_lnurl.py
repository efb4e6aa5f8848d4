"""Tests for Lightning address resolution and invoice parsing."""

from unittest.mock import patch

import httpx
import pytest
from bech32 import bech32_encode, convertbits

from fake_mint import fake_invoice, invoice_for_msat
from nut_sink.lnurl import (
    get_lnurl_data,
    get_lnurl_invoice,
    is_bolt11_invoice,
    lnurl_to_url,
    parse_lightning_invoice_amount,
    resolve_invoice,
)
from nut_sink.types import LNURLError

PAY_URL = "https://example.com/.well-known/lnurlp/donations"
CALLBACK = "https://example.com/lnurlp/donations/callback"


def encode_lnurl(url: str) -> str:
    return bech32_encode("lnurl", convertbits(list(url.encode()), 8, 5))


def lnurl_server(*, invoice_for=invoice_for_msat, pay_request=None):
    """MockTransport handler for a LUD-16 endpoint and its callback."""
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if str(request.url) == PAY_URL:
            return httpx.Response(
                200,
                json=pay_request
                or {
                    "tag": "payRequest",
                    "callback": CALLBACK,
                    "minSendable": 1000,
                    "maxSendable": 1_000_000_000,
                    "metadata": '[["text/plain","donations"]]',
                },
            )
        if request.url.path == "/lnurlp/donations/callback":
            amount = int(request.url.params["amount"])
            return httpx.Response(200, json={"pr": invoice_for(amount), "routes": []})
        return httpx.Response(404, json={"status": "ERROR", "reason": "not found"})

    return handler, requests


class TestInvoiceAmount:
    @pytest.mark.parametrize("amount_msat", [1_000, 488_000, 250_000_000, 2_000_000_000])
    def test_sat(self, amount_msat):
        invoice = invoice_for_msat(amount_msat)
        assert parse_lightning_invoice_amount(invoice, "sat") == amount_msat // 1000

    def test_sub_sat_amounts(self):
        invoice = invoice_for_msat(123)
        assert parse_lightning_invoice_amount(invoice, "msat") == 123
        assert parse_lightning_invoice_amount(invoice, "sat") == 0

    def test_prefix_and_case_are_ignored(self):
        invoice = fake_invoice(21)
        assert parse_lightning_invoice_amount(" lightning:" + invoice.upper()) == 21

    def test_open_amount_invoice(self):
        with pytest.raises(LNURLError, match="no amount"):
            parse_lightning_invoice_amount(invoice_for_msat(None))

    def test_corrupted_invoice(self):
        invoice = fake_invoice(488)
        position = len(invoice) // 2
        typo = "q" if invoice[position] != "q" else "p"
        with pytest.raises(LNURLError):
            parse_lightning_invoice_amount(invoice[:position] + typo + invoice[position + 1 :])

    @pytest.mark.parametrize("invoice", ["nothing", "lnbc1pvjluez", "lnbc4880n1pfakeinvoice"])
    def test_invalid(self, invoice):
        with pytest.raises(LNURLError):
            parse_lightning_invoice_amount(invoice)

    def test_unsupported_unit(self):
        with pytest.raises(LNURLError):
            parse_lightning_invoice_amount(fake_invoice(100), "usd")

    def test_is_bolt11(self):
        assert is_bolt11_invoice(fake_invoice(100))
        assert is_bolt11_invoice("lightning:lntb1m1pabc")
        assert not is_bolt11_invoice("donations@example.com")
        assert not is_bolt11_invoice(encode_lnurl(PAY_URL))


class TestLnurlToUrl:
    def test_lightning_address(self):
        assert lnurl_to_url("donations@example.com") == PAY_URL

    def test_onion_address_uses_http(self):
        assert lnurl_to_url("me@abc.onion") == "http://abc.onion/.well-known/lnurlp/me"

    def test_bech32(self):
        assert lnurl_to_url(encode_lnurl(PAY_URL)) == PAY_URL
        assert lnurl_to_url("lightning:" + encode_lnurl(PAY_URL).upper()) == PAY_URL

    def test_bech32_typo_is_rejected(self):
        lnurl = encode_lnurl(PAY_URL)
        typo = "q" if lnurl[10] != "q" else "p"
        with pytest.raises(LNURLError, match="checksum"):
            lnurl_to_url(lnurl[:10] + typo + lnurl[11:])

    def test_plain_url(self):
        assert lnurl_to_url(PAY_URL) == PAY_URL

    @pytest.mark.parametrize("value", ["@example.com", "donations@", "ftp://x", "lnurl1b"])
    def test_invalid(self, value):
        with pytest.raises(LNURLError):
            lnurl_to_url(value)


class TestLnurlRequests:
    async def test_get_lnurl_data(self):
        handler, _ = lnurl_server()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            data = await get_lnurl_data("donations@example.com", client=client)

        assert data["callback_url"] == CALLBACK
        assert data["min_sendable"] == 1000
        assert data["max_sendable"] == 1_000_000_000

    async def test_not_a_pay_request(self):
        handler, _ = lnurl_server(pay_request={"tag": "withdrawRequest"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(LNURLError, match="Not an LNURL-pay"):
                await get_lnurl_data("donations@example.com", client=client)

    async def test_error_status(self):
        handler, _ = lnurl_server()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(LNURLError):
                await get_lnurl_data("someone@example.com", client=client)

    async def test_lnurl_error_payload(self):
        handler, _ = lnurl_server(pay_request={"status": "ERROR", "reason": "disabled"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(LNURLError, match="disabled"):
                await get_lnurl_data("donations@example.com", client=client)

    async def test_get_invoice(self):
        handler, requests = lnurl_server()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            invoice, data = await get_lnurl_invoice(CALLBACK, 21_000, client=client)

        assert parse_lightning_invoice_amount(invoice, "msat") == 21_000
        assert data["routes"] == []
        assert requests[-1].url.params["amount"] == "21000"

    async def test_missing_invoice(self):
        def handler(request):
            return httpx.Response(200, json={"routes": []})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(LNURLError, match="no invoice"):
                await get_lnurl_invoice(CALLBACK, 21_000, client=client)

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(LNURLError, match="failed"):
                await get_lnurl_data("donations@example.com", client=client)


class TestResolveInvoice:
    @pytest.fixture
    def serve(self):
        real_client = httpx.AsyncClient

        def _serve(handler):
            def client_factory(**kwargs):
                return real_client(transport=httpx.MockTransport(handler), **kwargs)

            return patch("nut_sink.lnurl.httpx.AsyncClient", side_effect=client_factory)

        return _serve

    async def test_bolt11_passthrough(self, serve):
        handler, requests = lnurl_server()
        with serve(handler):
            invoice = await resolve_invoice("lightning:lnbc100u1pabc", 1, timeout=5)
        assert invoice == "lnbc100u1pabc"
        assert requests == []

    async def test_lightning_address(self, serve):
        handler, requests = lnurl_server()
        with serve(handler):
            invoice = await resolve_invoice("donations@example.com", 488_000, timeout=5)

        assert parse_lightning_invoice_amount(invoice, "msat") == 488_000
        assert [r.url.path for r in requests] == [
            "/.well-known/lnurlp/donations",
            "/lnurlp/donations/callback",
        ]

    async def test_amount_outside_limits(self, serve):
        handler, _ = lnurl_server()
        with serve(handler):
            with pytest.raises(LNURLError, match="outside LNURL limits"):
                await resolve_invoice("donations@example.com", 500, timeout=5)

    async def test_invoice_amount_mismatch(self, serve):
        handler, _ = lnurl_server(invoice_for=lambda msat: invoice_for_msat(msat + 1_000))
        with serve(handler):
            with pytest.raises(LNURLError, match="does not match"):
                await resolve_invoice("donations@example.com", 488_000, timeout=5)
