from __future__ import annotations

from typing import NoReturn

import structlog
from fastapi import HTTPException
from services.api.app.errors import MarketlaneError

logger = structlog.get_logger(__name__)


def raise_http_error(e: Exception) -> NoReturn:
    if isinstance(e, MarketlaneError):
        raise HTTPException(status_code=e.status_code, detail=str(e)) from e

    if isinstance(e, ValueError):
        # Adapter selection and from_env() raise ValueError for bad configuration.
        logger.error("api.configuration_error", error=str(e))
        raise HTTPException(status_code=500, detail=str(e)) from e

    logger.exception("api.unhandled_error", error_type=type(e).__name__)
    raise HTTPException(status_code=500, detail="Internal Server Error") from e
