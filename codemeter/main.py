"""CodeMeter FastAPI application: read-only analytics over the shared data directory."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from codemeter import config
from codemeter.db.factory import create_log_store
from codemeter.observability import initialize as initialize_observability, shutdown as shutdown_observability
from codemeter.routers.analytics import analytics_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("codemeter")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("CodeMeter API starting up (data dir %s)", config.DATA_DIR)
    initialize_observability()
    if getattr(app.state, "log_store", None) is None:
        app.state.log_store = create_log_store()

    yield

    logger.info("CodeMeter API shutting down")
    shutdown_observability()


app = FastAPI(
    title="CodeMeter API",
    description="Per-project cost attribution for AI coding assistants",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(analytics_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    store = getattr(app.state, "log_store", None)
    return {
        "status": "ok",
        "store": str(store.data_dir) if store is not None else "uninitialized",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("codemeter.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
