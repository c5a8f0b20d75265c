"""
HTTP ingress - receives enhanced swap webhooks.
"""

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
import structlog

from .ingest import EventProcessor

logger = structlog.get_logger()


def create_app(processor: EventProcessor) -> FastAPI:
    """Build the ingress app around an event processor."""
    app = FastAPI(title="watchr")

    @app.get("/", response_class=PlainTextResponse)
    async def health():
        return "watchr OK"

    @app.post("/helius-webhook", response_class=PlainTextResponse)
    async def helius_webhook(request: Request):
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("webhook_invalid_json")
            return PlainTextResponse("invalid json", status_code=400)

        try:
            outcomes = await processor.process(payload)
        except Exception as e:
            logger.error("webhook_processing_failed", error=str(e))
            return PlainTextResponse("error", status_code=500)

        if outcomes:
            logger.info("webhook_processed", outcomes=outcomes)
        return "ok"

    return app
