from contextlib import asynccontextmanager

from fastapi import FastAPI

from indexer_common.observability import init_observability, get_logger, shutdown_tracing

from indexer import __version__
from indexer.config import IngestSettings
from indexer.database import init_db
from indexer.routes import transactions_router, health_router, status_router

# Bootstrap logging + tracing + service-info in one call
init_observability("slot-indexer-api", __version__)

logger = get_logger("slot-indexer-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = IngestSettings.from_env()

    init_db(reset=settings.db_reset_on_start)
    logger.info("Database initialized")

    app.state.ingestion_loop = None
    thread = None
    if settings.ingestion_enabled:
        from indexer.ingestion import build_loop, start_ingestion
        loop = build_loop(settings)
        thread = start_ingestion(loop)
        app.state.ingestion_loop = loop

    yield

    loop = app.state.ingestion_loop
    if loop is not None:
        logger.info("Ingestion stopping...")
        loop.stop()
        # the in-flight slot finishes its write and checkpoint before the thread exits
        thread.join(timeout=settings.rpc_timeout_seconds + 5)
        if thread.is_alive():
            logger.warning("Ingestion thread did not stop in time")
        app.state.ingestion_loop = None

    # Flush remaining traces before shutdown
    shutdown_tracing()


app = FastAPI(
    title="Slot Indexer",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(transactions_router)
app.include_router(status_router)
app.include_router(health_router)

# Initialize telemetry at module level (before requests start)
try:
    from indexer import telemetry
    telemetry.init(app)
except Exception as e:
    logger.warning(f"Telemetry init skipped: {e}")
