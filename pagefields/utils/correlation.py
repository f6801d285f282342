from __future__ import annotations

import re
import structlog
from contextlib import suppress
from typing import Any, Mapping, Optional
from uuid import uuid4

from flask import g

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def _get_flask_request_id() -> Optional[str]:
    with suppress(RuntimeError):
        if g is not None and hasattr(g, "request_id"):
            return getattr(g, "request_id")
    return None


def current_request_id() -> Optional[str]:
    """Return the active request id if bound."""
    rid = _get_flask_request_id()
    if rid:
        return rid
    context = structlog.contextvars.get_contextvars()
    return context.get("request_id")


def request_id_from_headers(headers: Mapping[str, str]) -> Optional[str]:
    """Caller-supplied request id, or ``None`` when absent or unsafe to log."""
    raw = (headers.get(REQUEST_ID_HEADER) or "").strip()
    if not raw or len(raw) > MAX_REQUEST_ID_LENGTH:
        return None
    if not _REQUEST_ID_RE.match(raw):
        return None
    return raw


def ensure_request_id(value: Optional[str] = None) -> str:
    """Guarantee that a request id is bound and returned."""
    request_id = value or current_request_id() or uuid4().hex
    with suppress(RuntimeError):
        setattr(g, "request_id", request_id)
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def start_request(headers: Mapping[str, str], **extra: Any) -> str:
    """Reset the logging context and bind a request id for a new request."""
    clear_request_context()
    request_id = ensure_request_id(request_id_from_headers(headers))
    if extra:
        structlog.contextvars.bind_contextvars(**extra)
    return request_id


def echo_request_id(response: Any) -> Any:
    """Copy the bound request id onto ``response``."""
    request_id = current_request_id()
    if request_id:
        response.headers[REQUEST_ID_HEADER] = request_id
    return response


def bind_request_context(url: Optional[str] = None, **extra: Any) -> None:
    """Bind request metadata into the logging context."""
    context: dict[str, Any] = {"url": url}
    context.update(extra)
    structlog.contextvars.bind_contextvars(**context)


def clear_request_context() -> None:
    """Reset request id and related context vars for the current scope."""
    structlog.contextvars.clear_contextvars()
    with suppress(RuntimeError):
        if g is not None and hasattr(g, "request_id"):
            delattr(g, "request_id")
