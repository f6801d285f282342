from __future__ import annotations

import ipaddress
import logging
import re
import socket
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

from pagefields.config import ValidatorConfig
from pagefields.services.exceptions import SecurityError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = {"http", "https"}

PRIVATE_NETWORKS = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "::/128",
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "0.0.0.0",
        "metadata.google.internal",
        "169.254.169.254",
    }
)

ResolverFn = Callable[[str], Iterable[str]]

# Hosts inet_aton may read as IPv4: "127.1", "2130706433", "0x7f000001".
_NUMERIC_HOST_RE = re.compile(
    r"^(0x[0-9a-f]+|[0-9]+)(\.(0x[0-9a-f]+|[0-9]+)){0,3}$"
)


def _resolve_host(host: str) -> list[str]:
    infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    return sorted({info[4][0] for info in infos})


def _parse_ip_host(
    host: str,
) -> Optional[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    """Address a host denotes literally, including shorthand IPv4 forms."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    if not _NUMERIC_HOST_RE.match(host):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def _is_private(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return any(
        address.version == network.version and address in network
        for network in PRIVATE_NETWORKS
    )


class UrlValidator:
    """Authoritative SSRF check run after admission and before any fetch."""

    def __init__(
        self,
        config: Optional[ValidatorConfig] = None,
        *,
        resolver: ResolverFn = _resolve_host,
    ) -> None:
        self.config = config or ValidatorConfig()
        self._resolver = resolver
        self._blocked_hosts = BLOCKED_HOSTNAMES | set(
            self.config.extra_blocked_hostnames
        )

    def validate(self, url: Optional[str]) -> str:
        """Return the stripped URL or raise a taxonomy error.

        Blank input is a ``ValidationError``; every scheme, length, host and
        address failure is a ``SecurityError``.
        """
        candidate = url.strip() if isinstance(url, str) else ""
        if not candidate:
            raise ValidationError("URL cannot be blank")

        try:
            parsed = urlparse(candidate)
        except ValueError as exc:
            raise SecurityError(
                f"Invalid URL format: {exc}", context={"url": candidate}
            ) from exc

        scheme = (parsed.scheme or "").lower()
        if scheme not in ALLOWED_SCHEMES:
            raise SecurityError(
                f"URL scheme '{parsed.scheme}' not allowed. Must be HTTP or HTTPS",
                context={"url": candidate, "scheme": parsed.scheme},
            )

        if len(candidate) > self.config.max_url_length:
            raise SecurityError(
                f"URL too long (max {self.config.max_url_length} characters)",
                context={"length": len(candidate)},
            )

        try:
            host = parsed.hostname
        except ValueError:
            host = None
        if not host:
            raise SecurityError("URL must have a host", context={"url": candidate})

        host = host.rstrip(".").lower()
        if host in self._blocked_hosts:
            raise SecurityError(
                f"Access to host '{host}' is not allowed", context={"host": host}
            )

        is_literal = self._check_address(host)
        if self.config.resolve_hosts and not is_literal:
            self._check_resolved(host)

        return candidate

    def _check_address(self, host: str) -> bool:
        address = _parse_ip_host(host)
        if address is None:
            return False
        if _is_private(address):
            raise SecurityError(
                f"Access to private IP address '{host}' is not allowed",
                context={"host": host},
            )
        return True

    def _check_resolved(self, host: str) -> None:
        try:
            addresses = list(self._resolver(host))
        except (OSError, UnicodeError) as exc:
            # Resolution failures surface later as network errors from the fetcher.
            logger.debug("Could not resolve %s during validation: %s", host, exc)
            return
        for raw in addresses:
            try:
                address = ipaddress.ip_address(raw.split("%", 1)[0])
            except ValueError:
                continue
            if _is_private(address):
                raise SecurityError(
                    f"Host '{host}' resolves to a private address",
                    context={"host": host, "address": raw},
                )


__all__ = ["UrlValidator", "ALLOWED_SCHEMES", "BLOCKED_HOSTNAMES", "PRIVATE_NETWORKS"]
