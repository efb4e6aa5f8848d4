"""Tests for the HTTP donation endpoint and its response contract."""

import re
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from fake_mint import FakeMint, resolve_to_fake_invoice
from nut_sink.app import create_app
from nut_sink.mint import Mint
from nut_sink.service import DonationService
from nut_sink.types import ConfigurationError

THANK_YOU = {"status": "success", "message": "thank you"}
MISSING = {"status": "error", "message": "Missing token parameter"}
TOKEN_FAILED = {"status": "error", "message": "Token processing failed"}


def token_for(mint: FakeMint, amount: int) -> str:
    return mint.make_token(Mint.calculate_optimal_split(amount, []))


@pytest.fixture
def config(make_config):
    return make_config(melt_thresholds={"sat": 500})


@pytest.fixture
def client(config, mint):
    app = create_app(config, mint_factory=lambda url: mint)
    with patch("nut_sink.wallet.resolve_invoice", AsyncMock(side_effect=resolve_to_fake_invoice)):
        with TestClient(app) as test_client:
            yield test_client


class TestMethods:
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
    def test_non_post_is_rejected(self, client, method):
        response = client.request(method, "/")
        assert response.status_code == 405
        assert response.json() == {"status": "error", "message": "Method not allowed. Use POST."}

    def test_unknown_path(self, client):
        response = client.post("/elsewhere", json={"token": "x"})
        assert response.status_code == 404
        assert response.json()["status"] == "error"


class TestTokenInput:
    def test_json_body(self, client, mint):
        response = client.post("/", json={"token": token_for(mint, 21)})
        assert response.status_code == 200
        assert response.json() == THANK_YOU

    def test_form_body(self, client, mint):
        response = client.post("/", data={"token": token_for(mint, 21)})
        assert response.status_code == 200
        assert response.json() == THANK_YOU

    def test_multipart_body(self, client, mint):
        response = client.post("/", files={"token": (None, token_for(mint, 21))})
        assert response.status_code == 200
        assert response.json() == THANK_YOU

    def test_token_is_stripped(self, client, mint):
        response = client.post("/", json={"token": f"\n  {token_for(mint, 21)}  "})
        assert response.json() == THANK_YOU

    @pytest.mark.parametrize(
        "kwargs",
        [
            {},
            {"json": {}},
            {"json": {"nope": "x"}},
            {"json": {"token": ""}},
            {"json": {"token": "   "}},
            {"json": {"token": 123}},
            {"data": {"token": ""}},
            {"content": b"{not json", "headers": {"content-type": "application/json"}},
        ],
    )
    def test_missing_token(self, client, kwargs):
        response = client.post("/", **kwargs)
        assert response.status_code == 400
        assert response.json() == MISSING


class TestOutcomes:
    def test_malformed_token(self, client):
        response = client.post("/", json={"token": "cashuBdefinitely-not-a-token"})
        assert response.status_code == 500
        assert response.json() == TOKEN_FAILED

    def test_double_spend(self, client, mint):
        token = token_for(mint, 64)
        assert client.post("/", json={"token": token}).status_code == 200

        response = client.post("/", json={"token": token})
        assert response.status_code == 500
        assert response.json() == TOKEN_FAILED

    def test_mint_unreachable(self, client, mint):
        token = token_for(mint, 64)
        mint.available = False
        response = client.post("/", json={"token": token})
        assert response.status_code == 500
        assert response.json() == TOKEN_FAILED

    def test_undecodable_mint_response(self, config, mint):
        def handler(request):
            raise httpx.DecodingError("bad gzip")

        def mint_factory(url):
            return Mint(url, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

        app = create_app(config, mint_factory=mint_factory)
        with TestClient(app) as client:
            response = client.post("/", json={"token": token_for(mint, 64)})

        assert response.status_code == 500
        assert response.json() == TOKEN_FAILED

    @pytest.mark.parametrize("behaviour", ["paid", "unpaid", "error", "pending"])
    def test_success_regardless_of_melt_outcome(self, client, mint, behaviour):
        mint.melt_behaviour = behaviour
        response = client.post("/", json={"token": token_for(mint, 500)})
        assert response.status_code == 200
        assert response.json() == THANK_YOU
        assert "melt" in mint.calls

    def test_unexpected_error(self, client, mint):
        with patch.object(DonationService, "process", AsyncMock(side_effect=RuntimeError("db gone"))):
            response = client.post("/", json={"token": token_for(mint, 8)})
        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Internal server error"}


class TestConfiguration:
    def test_configuration_error_fails_every_request(self):
        with patch("nut_sink.app.load_config", side_effect=ConfigurationError("SEED_PHRASE missing")):
            app = create_app()
        with TestClient(app) as client:
            response = client.post("/", json={"token": "cashuBanything"})
        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Server configuration error"}


class TestLogFile:
    LINE = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] [A-Z]+: .+$")

    def test_donation_is_logged(self, client, config, mint):
        client.post("/", json={"token": token_for(mint, 21)})
        client.post("/", json={})

        with open(config.log_path) as f:
            lines = f.read().splitlines()

        assert all(self.LINE.match(line) for line in lines)
        text = "\n".join(lines)
        assert f"INFO: Received donation - Mint: {mint.url}, Unit: sat, Amount: 21" in text
        assert f"SUCCESS: Swapped donation - Mint: {mint.url}, Unit: sat, Amount: 21" in text
        assert f"INFO: Current balance - Mint: {mint.url}, Unit: sat, Balance: 21" in text
        assert "ERROR: Missing token in request" in text

    def test_failures_are_logged_with_detail(self, client, config):
        client.post("/", json={"token": "cashuXbogus"})
        with open(config.log_path) as f:
            assert "ERROR: Token processing failed - Unknown token version" in f.read()
