from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from pagefields.config import FetcherConfig
from pagefields.services.exceptions import NetworkError, ScraperError

logger = logging.getLogger(__name__)

# Connection-level failures only; HTTP error statuses are never retried here.
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    requests.ConnectionError,
    requests.Timeout,
    requests.exceptions.ChunkedEncodingError,
)

ACCEPT_HEADER = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})

SleepFn = Callable[[float], None]
UrlCheckFn = Callable[[str], str]

_session_lock = threading.Lock()
_session: requests.Session | None = None


def _get_session() -> requests.Session:
    global _session
    if _session is not None:
        return _session
    with _session_lock:
        if _session is not None:
            return _session
        sess = requests.Session()
        # Retries are owned by Fetcher, so the adapter itself never retries.
        adapter = HTTPAdapter(max_retries=0, pool_connections=16, pool_maxsize=32)
        sess.mount("https://", adapter)
        sess.mount("http://", adapter)
        _session = sess
    return _session


@dataclass
class FetchResult:
    success: bool
    attempts: int
    response_time: float
    body: str = ""
    status: Optional[int] = None
    headers: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None
    status_code: Optional[int] = None
    timed_out: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {
                "success": True,
                "body": self.body,
                "status": self.status,
                "headers": self.headers,
                "response_time": self.response_time,
                "attempts": self.attempts,
            }
        return {
            "success": False,
            "error": self.error,
            "attempts": self.attempts,
            "response_time": self.response_time,
        }


class Fetcher:
    """Single logical HTTP GET with bounded, exponentially backed-off retries."""

    def __init__(
        self,
        config: Optional[FetcherConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        sleep: SleepFn = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or FetcherConfig()
        self._session = session
        self._sleep = sleep
        self._clock = clock

    @property
    def session(self) -> requests.Session:
        return self._session or _get_session()

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.config.user_agent,
            "Accept": ACCEPT_HEADER,
        }

    def _perform_request(
        self, url: str, url_check: Optional[UrlCheckFn] = None
    ) -> requests.Response:
        current = url
        for _ in range(self.config.max_redirects + 1):
            response = self.session.get(
                current,
                headers=self._headers(),
                timeout=self.config.timeout,
                allow_redirects=False,
            )
            location = response.headers.get("Location")
            if response.status_code not in REDIRECT_STATUSES or not location:
                break
            response.close()
            target = urljoin(current, location)
            if url_check is not None:
                try:
                    target = url_check(target)
                except ScraperError:
                    logger.warning(
                        "Rejected redirect from %s to %s",
                        current,
                        target,
                        extra={"url": url, "location": target},
                    )
                    raise
            logger.debug("Following redirect %s -> %s", current, target)
            current = target
        else:
            raise requests.TooManyRedirects(
                f"Exceeded {self.config.max_redirects} redirects", response=response
            )

        if not 200 <= response.status_code < 300:
            message = f"HTTP request failed with status {response.status_code}"
            reason = getattr(response, "reason", None)
            if reason:
                message = f"{message}: {reason}"
            raise NetworkError(
                message,
                status_code=response.status_code,
                context={"url": current},
            )
        return response

    def _wait(
        self,
        delay: float,
        deadline: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> bool:
        """Sleep before the next attempt; return False if the loop must stop."""
        if cancel_event is not None and cancel_event.is_set():
            return False
        if deadline is not None and self._clock() + delay > deadline:
            return False
        if cancel_event is not None:
            return not cancel_event.wait(delay)
        self._sleep(delay)
        return True

    def fetch(
        self,
        url: str,
        *,
        deadline: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        url_check: Optional[UrlCheckFn] = None,
    ) -> FetchResult:
        """Fetch ``url``; always returns a result carrying attempts and timing.

        ``deadline`` is an absolute value of the fetcher clock
        (``time.monotonic`` by default) after which no further retry starts.
        Redirects are followed by hand and every ``Location`` goes through
        ``url_check`` first; a ``ScraperError`` it raises reaches the caller.
        """
        attempts = 0
        delay = self.config.initial_delay
        max_retries = max(1, self.config.max_retries)
        started = time.perf_counter()

        while True:
            attempts += 1
            try:
                logger.debug("Fetching %s (attempt %s)", url, attempts)
                response = self._perform_request(url, url_check)
            except RETRYABLE_EXCEPTIONS as exc:
                timed_out = isinstance(exc, requests.Timeout)
                if attempts < max_retries:
                    logger.warning(
                        "HTTP request failed (attempt %s/%s): %s",
                        attempts,
                        max_retries,
                        exc,
                        extra={"url": url, "attempt": attempts, "error": str(exc)},
                    )
                    if self._wait(delay, deadline, cancel_event):
                        delay = min(delay * 2, self.config.max_delay)
                        continue
                    logger.warning(
                        "fetch.retry_aborted",
                        extra={"url": url, "attempt": attempts},
                    )
                    return FetchResult(
                        success=False,
                        attempts=attempts,
                        response_time=time.perf_counter() - started,
                        error=f"Fetch aborted after {attempts} attempts: {exc}",
                        timed_out=timed_out,
                    )
                return FetchResult(
                    success=False,
                    attempts=attempts,
                    response_time=time.perf_counter() - started,
                    error=f"Failed to fetch URL after {max_retries} attempts: {exc}",
                    timed_out=timed_out,
                )
            except NetworkError as exc:
                logger.error("Non-retriable status %s for %s", exc.status_code, url)
                return FetchResult(
                    success=False,
                    attempts=attempts,
                    response_time=time.perf_counter() - started,
                    error=exc.message,
                    status_code=exc.status_code,
                )
            except requests.RequestException as exc:
                logger.error("Non-retriable request error for %s: %s", url, exc)
                return FetchResult(
                    success=False,
                    attempts=attempts,
                    response_time=time.perf_counter() - started,
                    error=str(exc),
                )

            elapsed = time.perf_counter() - started
            logger.debug(
                "fetch.success",
                extra={
                    "url": url,
                    "status": response.status_code,
                    "attempts": attempts,
                    "elapsed_ms": int(elapsed * 1000),
                },
            )
            return FetchResult(
                success=True,
                attempts=attempts,
                response_time=elapsed,
                body=response.text,
                status=response.status_code,
                headers={
                    key.lower(): value for key, value in dict(response.headers).items()
                },
            )
