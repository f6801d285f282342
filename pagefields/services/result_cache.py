from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from typing import Any, Iterable, Optional, Protocol

from pagefields.services.fields import FieldSpec

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60
KEY_PREFIX = "scraper_result"


class CacheBackend(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, timeout: Optional[int] = None) -> Any: ...

    def delete(self, key: str) -> Any: ...


def _normalise_fields(fields: Iterable[FieldSpec]) -> list[dict[str, Any]]:
    # Request order is part of the key; cached data keeps the caller's order.
    return [
        {key: value for key, value in sorted(asdict(field).items()) if value is not None}
        for field in fields
    ]


def cache_key(url: str, fields: Iterable[FieldSpec]) -> str:
    """Stable key for a URL plus its requested field list."""
    content = json.dumps(
        {"url": url, "fields": _normalise_fields(fields)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return f"{KEY_PREFIX}:{hashlib.sha256(content.encode('utf-8')).hexdigest()}"


class ResultCache:
    """Pass-through cache of extracted field sets.

    Backend failures are logged and treated as a miss (reads) or a no-op
    (writes) so a broken cache never fails an extraction.
    """

    def __init__(self, backend: CacheBackend, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.backend = backend
        self.ttl = ttl

    def get(self, url: str, fields: Iterable[FieldSpec]) -> Optional[dict[str, Any]]:
        key = cache_key(url, fields)
        try:
            cached = self.backend.get(key)
        except Exception as exc:  # noqa: BLE001 - backend errors are never fatal
            logger.warning("Cache read failed: %s", exc)
            return None
        if cached is None:
            return None
        if not isinstance(cached, dict):
            logger.warning("Ignoring malformed cache entry for %s", key)
            return None
        return cached

    def set(
        self,
        url: str,
        fields: Iterable[FieldSpec],
        data: dict[str, Any],
        ttl: Optional[int] = None,
    ) -> bool:
        key = cache_key(url, fields)
        try:
            self.backend.set(key, data, timeout=ttl if ttl is not None else self.ttl)
        except Exception as exc:  # noqa: BLE001 - backend errors are never fatal
            logger.warning("Cache write failed: %s", exc)
            return False
        return True

    def invalidate(self, url: str, fields: Iterable[FieldSpec]) -> bool:
        key = cache_key(url, fields)
        try:
            self.backend.delete(key)
        except Exception as exc:  # noqa: BLE001 - backend errors are never fatal
            logger.warning("Cache invalidation failed: %s", exc)
            return False
        return True
