"""JSON API for the dashboard panels.

Errors are returned as ``{"error": ..., "code": ...}`` with a status code
that tells the caller whether to fix the query, the settings, or wait.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from .cache import NoDataError
from .config import ConfigurationError, load_settings
from .datasource import Datasource
from .query import QueryError, QueryRequest
from .transport import TransportError

logger = logging.getLogger(__name__)

router = APIRouter()

_datasource: Datasource | None = None


def get_datasource() -> Datasource:
    """Get or create the process-wide datasource from the environment."""
    global _datasource
    if _datasource is None:
        _datasource = Datasource(load_settings())
    return _datasource


async def close_datasource() -> None:
    global _datasource
    if _datasource is not None:
        await _datasource.close()
        _datasource = None


def _error(message: str, code: str, status: int) -> JSONResponse:
    return JSONResponse({"error": message, "code": code}, status_code=status)


def _handle_exception(e: Exception) -> JSONResponse:
    """Map pipeline exceptions to JSON error responses."""
    if isinstance(e, QueryError):
        return _error(str(e), "query_error", 400)
    if isinstance(e, NoDataError):
        return _error(str(e), "no_data", 503)
    if isinstance(e, TransportError):
        return _error(str(e), "transport_error", 502)
    if isinstance(e, ConfigurationError):
        return _error(str(e), "configuration_error", 500)
    logger.exception("Unhandled error in API")
    return _error("Internal server error", "internal_error", 500)


@router.post("/api/query")
async def query(body: QueryRequest, ds: Datasource = Depends(get_datasource)):
    try:
        result = await ds.query(body)
    except Exception as e:
        return _handle_exception(e)
    return result.to_dict()


@router.get("/api/test-connection")
async def test_connection(ds: Datasource = Depends(get_datasource)):
    return await ds.test_connection()


@router.get("/api/fields/{record_type}")
async def field_values(record_type: str, ds: Datasource = Depends(get_datasource)):
    try:
        return await ds.field_values(record_type)
    except Exception as e:
        return _handle_exception(e)
