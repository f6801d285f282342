"""Admission gate: throttles and the malicious-URL blocklist.

Evaluated in a Flask ``before_request`` hook for the pipeline path prefix, so
a rejected request never reaches URL validation or the fetcher.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlparse

import structlog
from flask import Flask, Request, jsonify, request

from pagefields.config import GateConfig, ThrottleRule
from pagefields.services.exceptions import RateLimitError
from pagefields.utils.rate_limits import CounterStore

logger = structlog.get_logger(__name__)

ADMIT = "admit"
THROTTLE = "throttle"
BLOCK = "block"
SAFELIST = "safelist"

BLOCKED_MESSAGE = "Request blocked for security reasons"
BLOCKLIST_RULE = "block malicious urls"
LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1"})

# Cheap pre-filter; over-blocking is accepted. UrlValidator does the real parse.
MALICIOUS_URL_PATTERNS = tuple(
    re.compile(pattern, flags)
    for pattern, flags in (
        (r"localhost", re.IGNORECASE),
        (r"127\.0\.0\.1", 0),
        (r"0\.0\.0\.0", 0),
        (r"192\.168\.", 0),
        (r"10\.\d+\.", 0),
        (r"172\.1[6-9]\.", 0),
        (r"172\.2[0-9]\.", 0),
        (r"172\.3[0-1]\.", 0),
        (r"file://", re.IGNORECASE),
        (r"javascript:", re.IGNORECASE),
        (r"data:", re.IGNORECASE),
    )
)


@dataclass(frozen=True)
class GateDecision:
    action: str
    rule: Optional[str] = None
    scope: Optional[str] = None
    limit: Optional[int] = None
    window: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[int] = None

    @property
    def admitted(self) -> bool:
        return self.action in (ADMIT, SAFELIST)


def matches_malicious_pattern(url: Optional[str]) -> Optional[str]:
    """Return the first blocklist pattern found in ``url``, if any."""
    if not url:
        return None
    for pattern in MALICIOUS_URL_PATTERNS:
        if pattern.search(url):
            return pattern.pattern
    return None


def extract_domain(url: Optional[str]) -> Optional[str]:
    """Lower-cased host of ``url``; ``None`` when it can not be parsed."""
    if not url:
        return None
    try:
        host = urlparse(url).hostname
    except ValueError:
        return None
    return host.lower() if host else None


def target_url_from_request(req: Request) -> Optional[str]:
    """Target URL from the GET query or the JSON body of a POST."""
    url_param = req.args.get("url")
    if url_param:
        return url_param
    if req.method != "POST" or not req.is_json:
        return None
    payload = req.get_json(silent=True)
    if isinstance(payload, dict):
        value = payload.get("url")
        return value if isinstance(value, str) else None
    return None


def client_ip_from_request(req: Request) -> str:
    return req.remote_addr or "unknown"


class AdmissionGate:
    """Throttles per IP, per IP+domain and globally, plus a URL blocklist."""

    def __init__(self, config: GateConfig, counters: CounterStore) -> None:
        self.config = config
        self.counters = counters

    def applies_to(self, path: str) -> bool:
        return path.startswith(self.config.path_prefix)

    def is_safelisted(self, client_ip: str, path: str) -> bool:
        if path == self.config.health_path:
            return True
        return self.config.safelist_loopback and client_ip in LOOPBACK_ADDRESSES

    def _scopes(
        self, client_ip: str, target_url: Optional[str]
    ) -> list[tuple[ThrottleRule, str]]:
        scopes: list[tuple[ThrottleRule, str]] = [(self.config.by_ip, client_ip)]
        domain = extract_domain(target_url)
        if domain:
            scopes.append((self.config.by_domain, f"{client_ip}:{domain}"))
        # No domain means no domain constraint: this rule alone fails open.
        scopes.append((self.config.globally, "global"))
        return scopes

    def evaluate(
        self, client_ip: str, path: str, target_url: Optional[str]
    ) -> GateDecision:
        if self.is_safelisted(client_ip, path):
            return GateDecision(SAFELIST)
        if not self.applies_to(path):
            return GateDecision(ADMIT)

        if matches_malicious_pattern(target_url):
            return GateDecision(BLOCK, rule=BLOCKLIST_RULE, scope=client_ip)

        for rule, scope in self._scopes(client_ip, target_url):
            result = self.counters.increment_and_check(
                rule.name, scope, rule.limit, rule.period
            )
            if not result.allowed:
                return GateDecision(
                    THROTTLE,
                    rule=rule.name,
                    scope=scope,
                    limit=rule.limit,
                    window=rule.period,
                    remaining=0,
                    reset_at=result.reset_at,
                )
        return GateDecision(ADMIT)


def throttled_response(decision: GateDecision):
    error = RateLimitError(
        retry_after=decision.window,
        context={"rule": decision.rule, "scope": decision.scope},
    )
    response = jsonify(
        {
            "success": False,
            "error": error.message,
            "retry_after": error.retry_after,
        }
    )
    response.status_code = 429
    response.headers["Retry-After"] = str(decision.window)
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = "0"
    response.headers["X-RateLimit-Reset"] = str(decision.reset_at)
    return response


def blocked_response():
    response = jsonify({"success": False, "error": BLOCKED_MESSAGE})
    response.status_code = 422
    return response


def _log_decision(decision: GateDecision, req: Request) -> None:
    payload: dict[str, Any] = {
        "ip": client_ip_from_request(req),
        "path": req.path,
        "matched": decision.rule,
        "user_agent": req.user_agent.string if req.user_agent else None,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if decision.action == THROTTLE:
        logger.warning("rate_limit_triggered", match_type="throttle", **payload)
    else:
        logger.error("request_blocked", match_type="blocklist", **payload)


def register_admission_gate(app: Flask, gate: AdmissionGate) -> None:
    """Install ``gate`` as a ``before_request`` hook on ``app``."""
    app.extensions["admission_gate"] = gate

    @app.before_request
    def enforce_admission_gate():
        if not gate.applies_to(request.path):
            return None
        decision = gate.evaluate(
            client_ip_from_request(request),
            request.path,
            target_url_from_request(request),
        )
        if decision.admitted:
            return None
        _log_decision(decision, request)
        if decision.action == THROTTLE:
            return throttled_response(decision)
        return blocked_response()


__all__ = [
    "AdmissionGate",
    "GateDecision",
    "register_admission_gate",
    "matches_malicious_pattern",
    "extract_domain",
    "target_url_from_request",
]
