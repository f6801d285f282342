from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from flask import current_app, jsonify

from pagefields.services.exceptions import ErrorKind, ScraperError
from pagefields.utils.correlation import current_request_id

logger = logging.getLogger(__name__)

HELP_BASE_URL = "https://api.example.com/docs/errors"
GENERIC_MESSAGE = "An unexpected error occurred"


def status_for(error: ScraperError) -> int:
    match error.kind:
        case ErrorKind.VALIDATION:
            return 422
        case ErrorKind.SECURITY:
            return 403
        case ErrorKind.NETWORK | ErrorKind.TIMEOUT:
            return 502
        case ErrorKind.PARSING | ErrorKind.EXTRACTION:
            return 422
        case ErrorKind.RATE_LIMIT:
            return 429
        case _:
            return 500


def help_url_for(error: ScraperError) -> Optional[str]:
    match error.kind:
        case ErrorKind.VALIDATION:
            return f"{HELP_BASE_URL}#validation"
        case ErrorKind.SECURITY:
            return f"{HELP_BASE_URL}#security"
        case ErrorKind.NETWORK | ErrorKind.TIMEOUT:
            return f"{HELP_BASE_URL}#network"
        case ErrorKind.RATE_LIMIT:
            return f"{HELP_BASE_URL}#rate-limit"
        case _:
            return None


def _log_error(error: ScraperError, status: int) -> None:
    payload = {
        "status_code": status,
        "error_code": error.error_code,
        "error_kind": error.kind.value,
        "error_context": error.context,
    }
    if error.kind == ErrorKind.INTERNAL:
        logger.error("Error occurred: %s", error.message, extra=payload)
    elif error.kind == ErrorKind.SECURITY:
        logger.error("Security rejection: %s", error.message, extra=payload)
    else:
        logger.warning("Error occurred: %s", error.message, extra=payload)


def error_response(
    error: ScraperError,
    *,
    status: Optional[int] = None,
    code: Optional[str] = None,
):
    """Render ``error`` as ``{"success": false, "error": {envelope}}``."""
    status = status or status_for(error)
    message = error.message
    if error.kind == ErrorKind.INTERNAL and not current_app.debug:
        message = GENERIC_MESSAGE
    _log_error(error, status)

    body: dict[str, Any] = {
        "code": code or (
            "INTERNAL_ERROR" if error.kind == ErrorKind.INTERNAL else error.error_code
        ),
        "message": message,
        "error_id": str(uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": current_request_id(),
    }
    help_url = help_url_for(error)
    if help_url:
        body["help_url"] = help_url
    retry_after = getattr(error, "retry_after", None)
    if retry_after is not None:
        body["retry_after"] = retry_after

    response = jsonify({"success": False, "error": body})
    response.status_code = status
    if error.kind == ErrorKind.RATE_LIMIT and retry_after is not None:
        response.headers["Retry-After"] = str(int(retry_after))
    return response
