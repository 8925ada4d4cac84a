"""
FastAPI application entry point for the action processor.

Serves the health check and, for the lifetime of the app, runs the AMQP
consumer loop as a background task. Set ACTION_CONSUMER_ENABLED=false to
serve the health check only.
"""

import os
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from action_processor.config.settings import get_settings
from action_processor.messaging.kombu_broker import KombuBroker
from action_processor.platform.secrets import install_redacting_filter
from action_processor.workers.action_worker import WorkerStats, build_processor, consume

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
install_redacting_filter()
logger = logging.getLogger(__name__)


def _consumer_enabled() -> bool:
    return os.getenv("ACTION_CONSUMER_ENABLED", "true").lower() not in ("false", "0", "no")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the consumer on startup; let the in-flight message finish on shutdown."""
    logger.info("Starting action processor")
    app.state.stats = WorkerStats()
    app.state.consumer = None

    processor = None
    broker = None
    shutdown_event = asyncio.Event()

    if _consumer_enabled():
        settings = get_settings()
        processor = build_processor(settings)
        broker = KombuBroker(settings)
        await broker.connect()
        app.state.consumer = asyncio.create_task(
            consume(processor.resolver, broker, shutdown_event, app.state.stats)
        )
    else:
        logger.warning("Action consumer disabled, serving health check only")

    yield

    # Shutdown
    logger.info("Shutting down action processor")
    shutdown_event.set()
    if app.state.consumer is not None:
        try:
            await app.state.consumer
        except Exception as e:
            logger.error("Action consumer stopped with error", extra={"error": str(e)})
    if broker is not None:
        await broker.close()
    if processor is not None:
        await processor.close()
    logger.info("Action processor stopped", extra=app.state.stats.to_dict())


app = FastAPI(
    title="Action Processor",
    description="Executes platform actions consumed from the action exchange",
    version="1.0.0",
    lifespan=lifespan
)


@app.get("/")
async def health(request: Request):
    """Liveness check. Fails once the consumer task has stopped."""
    consumer = getattr(request.app.state, "consumer", None)
    if consumer is not None and consumer.done():
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "consumer_stopped"},
        )
    return {"status": "ok"}


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        extra={
            "error": str(exc),
            "error_type": type(exc).__name__,
            "path": request.url.path
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
