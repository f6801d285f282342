from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import structlog

from pagefields.services.exceptions import (
    NetworkError,
    ParsingError,
    ScraperError,
    TimeoutError,
    ValidationError,
    wrap_unexpected,
)
from pagefields.services.fetch import Fetcher, FetchResult
from pagefields.services.fields import (
    ExtractedField,
    FieldSpec,
    classify_fields,
    is_meta_field,
)
from pagefields.services.parser import (
    CssExtractionStrategy,
    HtmlParser,
    MetaExtractionStrategy,
)
from pagefields.services.result_cache import ResultCache
from pagefields.services.url_validator import UrlValidator
from pagefields.utils.correlation import current_request_id

logger = structlog.get_logger(__name__)


@dataclass
class ExtractionResponse:
    success: bool
    data: Optional[dict[str, Any]] = None
    cached: bool = False
    error: Optional[ScraperError] = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data, "cached": self.cached}
        return {
            "success": False,
            "error": self.error.message if self.error else "Unknown error",
        }


def merge_results(
    fields: Sequence[FieldSpec],
    css_results: Sequence[ExtractedField],
    meta_results: Sequence[ExtractedField],
) -> dict[str, Any]:
    """Merge both strategies' results back into the caller's field order.

    Keys are the names the caller sent (``meta:`` prefix included). Failed
    fields keep their slot as ``{"error": <message>}``.
    """
    css_iter = iter(css_results)
    meta_iter = iter(meta_results)

    merged: dict[str, Any] = {}
    for field in fields:
        result = next(meta_iter) if is_meta_field(field) else next(css_iter)
        merged[field.result_key] = (
            result.value if result.success else {"error": result.error}
        )
    return merged


class ScraperOrchestrator:
    """Sequences validation, cache, fetch, parse and extraction for one request.

    Every failure leaving ``extract`` is a ``ScraperError``; nothing else
    reaches the boundary layer.
    """

    def __init__(
        self,
        *,
        validator: UrlValidator,
        fetcher: Fetcher,
        parser: Optional[HtmlParser] = None,
        cache: Optional[ResultCache] = None,
        css_strategy: Optional[CssExtractionStrategy] = None,
        meta_strategy: Optional[MetaExtractionStrategy] = None,
    ) -> None:
        self.validator = validator
        self.fetcher = fetcher
        self.parser = parser or HtmlParser()
        self.cache = cache
        self.css_strategy = css_strategy or CssExtractionStrategy()
        self.meta_strategy = meta_strategy or MetaExtractionStrategy()

    def extract(
        self,
        url: str,
        fields: Sequence[FieldSpec],
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractionResponse:
        started = time.perf_counter()
        logger.info(
            "scraper.started",
            url=url,
            fields_count=len(fields),
            request_id=current_request_id(),
        )
        try:
            response = self._run(url, list(fields), deadline, cancel_event)
        except Exception as exc:  # noqa: BLE001 - single translation point
            error = wrap_unexpected(exc)
            self._log_completion(started, url, False, False, error=error)
            return ExtractionResponse(success=False, error=error)

        self._log_completion(started, url, True, response.cached)
        return response

    def _run(
        self,
        url: str,
        fields: list[FieldSpec],
        deadline: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> ExtractionResponse:
        if not fields:
            raise ValidationError("At least one field is required")
        normalized_url = self.validator.validate(url)

        if self.cache is not None:
            cached = self.cache.get(normalized_url, fields)
            if cached is not None:
                return ExtractionResponse(success=True, data=cached, cached=True)

        body = self._fetch(normalized_url, deadline, cancel_event)
        try:
            document = self.parser.parse(body)
        except ScraperError:
            raise
        except Exception as exc:  # noqa: BLE001 - parser internals vary by backend
            raise ParsingError(f"Failed to parse HTML: {exc}") from exc

        css_fields, meta_fields = classify_fields(fields)
        css_results = self.css_strategy.extract_all(document, css_fields)
        meta_results = self.meta_strategy.extract_all(document, meta_fields)
        data = merge_results(fields, css_results, meta_results)

        failed = [
            result.selector
            for result in (*css_results, *meta_results)
            if result.failed
        ]
        if failed:
            logger.info("scraper.partial_failure", url=normalized_url, failed=failed)

        if self.cache is not None:
            self.cache.set(normalized_url, fields, data)
        return ExtractionResponse(success=True, data=data, cached=False)

    def _fetch(
        self,
        url: str,
        deadline: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> str:
        result: FetchResult = self.fetcher.fetch(
            url,
            deadline=deadline,
            cancel_event=cancel_event,
            url_check=self.validator.validate,
        )
        if result.success:
            return result.body

        context = {
            "url": url,
            "attempts": result.attempts,
            "response_time": round(result.response_time, 3),
        }
        message = result.error or "Failed to fetch URL"
        if result.timed_out:
            raise TimeoutError(
                message, timeout=self.fetcher.config.timeout, context=context
            )
        raise NetworkError(message, status_code=result.status_code, context=context)

    def _log_completion(
        self,
        started: float,
        url: str,
        success: bool,
        cached: bool,
        *,
        error: Optional[ScraperError] = None,
    ) -> None:
        payload: dict[str, Any] = {
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "success": success,
            "cached": cached,
            "url": url,
            "request_id": current_request_id(),
        }
        if error is not None:
            payload["error_class"] = type(error).__name__
            payload["error_message"] = error.message
            logger.error("scraper.completed", **payload)
            return
        logger.info("scraper.completed", **payload)


__all__ = ["ScraperOrchestrator", "ExtractionResponse", "merge_results"]
