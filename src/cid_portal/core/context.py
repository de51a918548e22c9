# src/cid_portal/core/context.py
"""Requester attributes attached to audit entries."""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class RequestContext:
    """Who asked, from where, and for what."""

    ip_address: str = "unknown"
    method: str | None = None
    url: str | None = None
    user_agent: str | None = None
    referrer: str | None = None
    session_id: str | None = None
    username: str | None = None

    def with_identity(
        self,
        *,
        session_id: str | None = None,
        username: str | None = None,
    ) -> RequestContext:
        return replace(
            self,
            session_id=session_id or self.session_id,
            username=username or self.username,
        )
