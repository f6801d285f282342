from __future__ import annotations

import os
from dataclasses import dataclass, field

from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(
        fragment.strip().lower()
        for fragment in raw.replace(",", " ").split()
        if fragment.strip()
    )


@dataclass(frozen=True)
class FetcherConfig:
    """Typed configuration for the outbound HTTP fetcher."""

    timeout: float = 30.0
    max_retries: int = 3
    user_agent: str = "Pagefields-Scraper/1.0"
    initial_delay: float = 1.0
    max_delay: float = 30.0
    max_redirects: int = 5

    @classmethod
    def from_env(cls) -> FetcherConfig:
        """Create a FetcherConfig from environment variables."""
        return cls(
            timeout=_env_float("FETCH_TIMEOUT_SECONDS", 30.0),
            max_retries=max(1, _env_int("FETCH_MAX_RETRIES", 3)),
            user_agent=os.getenv("FETCH_USER_AGENT") or "Pagefields-Scraper/1.0",
        )


@dataclass(frozen=True)
class ValidatorConfig:
    """Configuration for the SSRF-safe URL validator."""

    max_url_length: int = 2048
    extra_blocked_hostnames: tuple[str, ...] = ()
    resolve_hosts: bool = True

    @classmethod
    def from_env(cls) -> ValidatorConfig:
        return cls(
            max_url_length=_env_int("MAX_URL_LENGTH", 2048),
            extra_blocked_hostnames=_env_list("BLOCKED_HOSTNAMES"),
            resolve_hosts=(
                os.getenv("RESOLVE_HOSTS", "true").strip().lower() != "false"
            ),
        )


@dataclass(frozen=True)
class ThrottleRule:
    name: str
    limit: int
    period: int


@dataclass(frozen=True)
class GateConfig:
    """Limits and scoping for the admission gate."""

    path_prefix: str = "/api/v1/data"
    health_path: str = "/up"
    by_ip: ThrottleRule = field(
        default_factory=lambda: ThrottleRule("requests by ip", 20, 60)
    )
    by_domain: ThrottleRule = field(
        default_factory=lambda: ThrottleRule("requests by domain", 10, 60)
    )
    globally: ThrottleRule = field(
        default_factory=lambda: ThrottleRule("requests globally", 100, 60)
    )
    safelist_loopback: bool = True

    @classmethod
    def from_env(cls, env_name: str | None = None) -> GateConfig:
        """Create a GateConfig; loopback is only safelisted outside production."""
        env_name = (env_name or os.getenv("ENV") or "").strip().lower()
        return cls(
            by_ip=ThrottleRule(
                "requests by ip",
                _env_int("THROTTLE_IP_LIMIT", 20),
                _env_int("THROTTLE_IP_PERIOD", 60),
            ),
            by_domain=ThrottleRule(
                "requests by domain",
                _env_int("THROTTLE_DOMAIN_LIMIT", 10),
                _env_int("THROTTLE_DOMAIN_PERIOD", 60),
            ),
            globally=ThrottleRule(
                "requests globally",
                _env_int("THROTTLE_GLOBAL_LIMIT", 100),
                _env_int("THROTTLE_GLOBAL_PERIOD", 60),
            ),
            safelist_loopback=env_name != "production",
        )

    @property
    def rules(self) -> tuple[ThrottleRule, ...]:
        return (self.by_ip, self.by_domain, self.globally)


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    ENV: str = "development"
    DEBUG: bool = False
    CACHE_TYPE: str = ""
    CACHE_DEFAULT_TIMEOUT: int = 3600
    RATELIMIT_STORAGE_URI: str = "memory://"
    PIPELINE_DEADLINE_SECONDS: float = 120.0
    ALLOWED_ORIGINS: str = ""
