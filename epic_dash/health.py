"""Health check endpoint for Docker HEALTHCHECK and deploy verification."""

import os

from fastapi import APIRouter, Depends

from .api import get_datasource
from .datasource import Datasource

router = APIRouter()


@router.get("/health")
async def health(ds: Datasource = Depends(get_datasource)) -> dict[str, str]:
    """Return liveness, deployed git SHA, and the cache state.

    Always 200: an empty or stale cache is reported, not treated as down.
    """
    return {
        "status": "ok",
        "git_sha": os.getenv("GIT_SHA", "dev"),
        "transport": ds.settings.api_call_type,
        "cache": ds.cache_state,
    }
