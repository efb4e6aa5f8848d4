"""FastAPI application exposing the donation endpoint."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import DonationConfig, load_config
from .log import configure_logging
from .service import DonationService, MintFactory
from .store import LedgerStore
from .types import ConfigurationError, MintError, TokenProcessingError, ValidationError

logger = logging.getLogger(__name__)


def envelope(status_code: int, status: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": status, "message": message})


async def extract_token(request: Request) -> str | None:
    """Token from a JSON body, falling back to a form field."""
    token = None
    if "application/json" in request.headers.get("content-type", ""):
        try:
            data = json.loads(await request.body())
        except ValueError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("token"), str):
            token = data["token"]

    if token is None:
        form = await request.form()
        value = form.get("token")
        if isinstance(value, str):
            token = value

    if token is None or not token.strip():
        return None
    return token.strip()


def create_app(
    config: DonationConfig | None = None, *, mint_factory: MintFactory | None = None
) -> FastAPI:
    """Create the donation sink application.

    Configuration problems do not prevent the app from starting; every
    request is answered with a server configuration error instead.
    """
    config_error: ConfigurationError | None = None
    if config is None:
        try:
            config = load_config()
        except ConfigurationError as e:
            config_error = e

    store = LedgerStore(config.database_path) if config else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if store is not None:
            await store.init()
        yield
        if store is not None:
            await store.dispose()

    app = FastAPI(
        title="nut-sink",
        description="Cashu donation sink",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.config_error = config_error
    app.state.service = None
    if config is not None and store is not None:
        configure_logging(config.log_path)
        app.state.service = DonationService(config, store, mint_factory=mint_factory)
    else:
        logger.error("Configuration error - %s", config_error)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code == 405:
            return envelope(405, "error", "Method not allowed. Use POST.")
        if exc.status_code == 404:
            return envelope(404, "error", "Not found")
        return envelope(exc.status_code, "error", str(exc.detail))

    @app.post("/")
    async def donate(request: Request) -> JSONResponse:
        """Accept one Cashu token as a donation."""
        service: DonationService | None = request.app.state.service
        if service is None:
            return envelope(500, "error", "Server configuration error")

        token = await extract_token(request)
        if token is None:
            logger.error("Missing token in request")
            return envelope(400, "error", "Missing token parameter")

        try:
            await service.process(token)
        except ValidationError:
            logger.error("Missing token in request")
            return envelope(400, "error", "Missing token parameter")
        except (TokenProcessingError, MintError) as e:
            logger.error("Token processing failed - %s", e)
            return envelope(500, "error", "Token processing failed")
        except Exception as e:
            logger.error("Unexpected error - %s", e, exc_info=True)
            return envelope(500, "error", "Internal server error")

        return envelope(200, "success", "thank you")

    return app
