"""
HTTP entry point for the chat relay.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Annotated, Any

import structlog
import uvicorn
from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from chat_relay.collaborators import (
    AuthenticationError,
    CreditLedger,
    IdentityVerifier,
    TranscriptStore,
)
from chat_relay.config import Configuration
from chat_relay.llm.client import UpstreamClient
from chat_relay.llm.exceptions import LLMError
from chat_relay.logging_utils import RelayErrorHandler, configure_logging
from chat_relay.relay_service import ChatRequest, RelayService

logger = structlog.get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def create_app(
    configuration: Configuration | None = None,
    *,
    upstream: UpstreamClient | None = None,
    identity: IdentityVerifier | None = None,
    ledger: CreditLedger | None = None,
    transcripts: TranscriptStore | None = None,
) -> FastAPI:
    """Build the relay application. Collaborators default to permissive no-ops."""
    configuration = configuration or Configuration()
    upstream_client = upstream or UpstreamClient(configuration.get_upstream_config())

    service = RelayService(
        RelayService.RelayServiceConfig(
            upstream=upstream_client,
            configuration=configuration,
            identity=identity,
            ledger=ledger,
            transcripts=transcripts,
        )
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "relay.started",
            provider=upstream_client.provider,
            base_url=upstream_client.config.base_url,
        )
        yield
        await upstream_client.close()
        logger.info("relay.stopped")

    app = FastAPI(title="Chat Relay", lifespan=lifespan)
    app.state.relay = service

    @app.post("/v1/chat/stream", response_model=None)
    async def chat_stream(
        request: ChatRequest,
        authorization: Annotated[str | None, Header()] = None,
    ) -> StreamingResponse | JSONResponse:
        request_start = time.time()
        token = authorization.removeprefix("Bearer ").strip() if authorization else None

        try:
            caller = await service.authenticate(token)
            session = await service.open(request, caller)
        except AuthenticationError as e:
            return JSONResponse(
                status_code=401,
                content={"error": {"kind": "unauthorized", "message": str(e)}},
            )
        except LLMError as e:
            status, payload = RelayErrorHandler.create_error_payload(
                e, "relay.open", {"model": request.model}
            )
            # Mirror the upstream status when there was one
            return JSONResponse(status_code=e.status_code or status, content=payload)

        return StreamingResponse(
            service.relay(session),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Request-Start": f"{request_start:.3f}"},
            background=BackgroundTask(service.settle, session),
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "provider": upstream_client.provider,
            "models": sorted(configuration.get_models_config()),
        }

    return app


def main() -> None:
    """Main entry point - run the relay under uvicorn."""
    configuration = Configuration()
    configure_logging(configuration.get_logging_config().get("level", "INFO"))
    server = configuration.get_server_config()

    uvicorn.run(
        create_app(configuration),
        host=server["host"],
        port=server["port"],
        log_level=server.get("log_level", "info"),
    )


if __name__ == "__main__":
    main()
