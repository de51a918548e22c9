# src/cid_portal/core/whitelist.py
"""Trusted host and origin whitelists."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Final

from cid_portal.core.settings import Settings

DEFAULT_TRUSTED_HOSTS: Final[tuple[str, ...]] = (
    "localhost",
    "127.0.0.1",
    "0.0.0.0",
    "cid.tspolice.gov.in",
    "cid-staging.tspolice.gov.in",
    "cid-telangana.local",
    # container names used behind the reverse proxy
    "app",
    "cid-app",
)

DEFAULT_ALLOWED_ORIGINS: Final[tuple[str, ...]] = (
    "https://cid.tspolice.gov.in",
    "https://cid-staging.tspolice.gov.in",
)

DEVELOPMENT_ORIGINS: Final[tuple[str, ...]] = tuple(
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (3000, 5000, 5001)
)

ORIGIN_PATTERNS: Final[tuple[str, ...]] = (r"^https://[a-z0-9-]+(\.[a-z0-9-]+)*\.tspolice\.gov\.in$",)


def _wildcard_to_pattern(entry: str) -> re.Pattern[str]:
    escaped = re.escape(entry).replace(r"\*", r"[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


@dataclass(frozen=True)
class Whitelist:
    """Exact entries plus compiled patterns with a single match function."""

    exact: frozenset[str] = field(default_factory=frozenset)
    patterns: tuple[re.Pattern[str], ...] = ()

    @classmethod
    def build(
        cls,
        entries: Iterable[str],
        patterns: Iterable[str | re.Pattern[str]] = (),
    ) -> Whitelist:
        """Build a whitelist from plain entries and regular expressions.

        Entries containing ``*`` are treated as wildcards; ``*.example.org``
        matches any subdomain of ``example.org`` but not the bare domain.
        """
        exact: set[str] = set()
        compiled: list[re.Pattern[str]] = []
        for entry in entries:
            value = entry.strip().lower()
            if not value:
                continue
            if "*" in value:
                compiled.append(_wildcard_to_pattern(value))
            else:
                exact.add(value)
        for pattern in patterns:
            if isinstance(pattern, str):
                compiled.append(re.compile(pattern, re.IGNORECASE))
            else:
                compiled.append(pattern)
        return cls(exact=frozenset(exact), patterns=tuple(compiled))

    def matches(self, value: str | None) -> bool:
        if not value:
            return False
        candidate = value.strip().lower()
        if candidate in self.exact:
            return True
        return any(pattern.match(candidate) for pattern in self.patterns)

    def __len__(self) -> int:
        return len(self.exact) + len(self.patterns)


def strip_port(host: str) -> str:
    """Return ``host`` without its port, keeping bracketed IPv6 literals intact."""
    host = host.strip()
    if host.startswith("["):
        end = host.find("]")
        return host[: end + 1] if end != -1 else host
    if host.count(":") == 1:
        return host.split(":", 1)[0]
    return host


def build_host_whitelist(config: Settings) -> Whitelist:
    return Whitelist.build([*DEFAULT_TRUSTED_HOSTS, *config.trusted_host_additions])


def build_origin_whitelist(config: Settings) -> Whitelist:
    entries = [*DEFAULT_ALLOWED_ORIGINS, *config.cors_origin_additions]
    if config.is_development:
        entries.extend(DEVELOPMENT_ORIGINS)
    return Whitelist.build(entries, ORIGIN_PATTERNS)


__all__ = [
    "DEFAULT_ALLOWED_ORIGINS",
    "DEFAULT_TRUSTED_HOSTS",
    "Whitelist",
    "build_host_whitelist",
    "build_origin_whitelist",
    "strip_port",
]
