"""Epic Dashboard - FastAPI application."""

import logging
import os

import uvicorn
from fastapi import FastAPI

from .api import close_datasource, get_datasource
from .api import router as api_router
from .config import ConfigurationError
from .health import router as health_router

logger = logging.getLogger(__name__)

app = FastAPI(title="Epic Dashboard")
app.include_router(health_router)
app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    """Start background refreshes when the settings allow it."""
    try:
        get_datasource().start()
    except ConfigurationError as e:
        logger.warning(f"Background refresh disabled: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop refreshes and close transport clients on shutdown."""
    await close_datasource()


def run() -> None:
    """Serve the app with uvicorn (``python -m epic_dash.main``)."""
    logging.basicConfig(
        level=os.getenv("EPIC_DASH_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=os.getenv("EPIC_DASH_HOST", "127.0.0.1"),
        port=int(os.getenv("EPIC_DASH_PORT", "8000")),
    )


if __name__ == "__main__":
    run()
