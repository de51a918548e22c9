"""CAPTCHA issuance and verification.

Only a keyed hash of each answer is stored. A challenge allows a bounded
number of verification attempts and expires after a fixed window. Once a
real login consumes it, only a "used" marker remains until expiry, so any
later presentation is rejected and audited as reuse. Non-consuming checks let
the UI give live feedback without spending the single use.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import random
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

from cid_portal.core.settings import Settings
from cid_portal.services.audit import AuditSink, RequestContext, Severity, Status
from cid_portal.services.store import KeyValueStore
from cid_portal.utils.svg import render_captcha_svg

logger = logging.getLogger(__name__)

# 0/O and 1/I/l are excluded as visually ambiguous
CAPTCHA_ALPHABET: Final[str] = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CAPTCHA_LENGTH: Final[int] = 5
BACKGROUNDS: Final[tuple[str, ...]] = (
    "#f8f9fa", "#e9ecef", "#dee2e6", "#f1f3f5", "#e8eaf6", "#fff3e0", "#f3e5f5", "#e0f2f1",
)


@dataclass(frozen=True)
class CaptchaChallenge:
    """A freshly issued challenge as returned to the client."""

    id: str
    svg: str


class CaptchaService:
    """Issue, verify and expire CAPTCHA challenges."""

    def __init__(
        self,
        config: Settings,
        challenges: KeyValueStore,
        rate_limits: KeyValueStore,
        audit: AuditSink,
        *,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._challenges = challenges
        self._rate_limits = rate_limits
        self._audit = audit
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()

    def _answer_hash(self, challenge_id: str, answer: str) -> str:
        normalized = answer.strip().upper()
        return hmac.new(
            self._config.session_secret.encode("utf-8"),
            f"{challenge_id}:{normalized}".encode(),
            hashlib.sha256,
        ).hexdigest()

    def _generate_text(self) -> str:
        return "".join(self._rng.choice(CAPTCHA_ALPHABET) for _ in range(CAPTCHA_LENGTH))

    def _allow_generation(self, client_ip: str) -> bool:
        if self._config.is_development:
            return True
        now = self._clock()
        window = self._config.captcha_rate_window_seconds
        limit = self._config.captcha_rate_limit
        outcome = {"allowed": False}

        def count(entry: dict[str, Any] | None) -> dict[str, Any]:
            if entry is None or entry["reset_at"] <= now:
                entry = {"count": 0, "reset_at": now + window}
            outcome["allowed"] = entry["count"] < limit
            if outcome["allowed"]:
                entry["count"] += 1
            return entry

        self._rate_limits.update(client_ip, count, ttl_seconds=window)
        return outcome["allowed"]

    def generate(
        self,
        client_ip: str,
        context: RequestContext | None = None,
    ) -> CaptchaChallenge | None:
        """Issue a new challenge, or return None when ``client_ip`` is rate limited."""
        if not self._allow_generation(client_ip):
            logger.warning("CAPTCHA generation rate limit exceeded for %s", client_ip)
            self._audit.record(
                "CAPTCHA_RATE_LIMITED",
                Severity.MEDIUM,
                Status.FAILURE,
                {"limit": self._config.captcha_rate_limit},
                context,
            )
            return None

        text = self._generate_text()
        challenge_id = secrets.token_hex(32)
        svg = render_captcha_svg(
            text,
            self._rng,
            width=200 + self._rng.randrange(50),
            height=80 + self._rng.randrange(20),
            font_size=45 + self._rng.randrange(15),
            noise_lines=3 + self._rng.randrange(3),
            background=self._rng.choice(BACKGROUNDS),
        )
        self._challenges.set(
            challenge_id,
            {
                "answer_hash": self._answer_hash(challenge_id, text),
                "created_at": self._clock(),
                "attempts": 0,
                "verified": False,
                "used": False,
                "client_ip": client_ip,
            },
            ttl_seconds=self._config.captcha_ttl_seconds,
        )
        logger.debug("CAPTCHA %s issued to %s", challenge_id[:12], client_ip)
        return CaptchaChallenge(id=challenge_id, svg=svg)

    def verify(
        self,
        challenge_id: str,
        answer: str,
        client_ip: str | None = None,
        consume: bool = False,
        context: RequestContext | None = None,
    ) -> bool:
        """Check an answer against a challenge.

        The check and the attempt count are applied as one atomic store
        update, so concurrent requests cannot both consume a challenge.

        Args:
            challenge_id: Handle returned by :meth:`generate`.
            answer: User input; compared case-insensitively after trimming.
            client_ip: Requester IP; in production it must match the issuer IP.
            consume: Spend the challenge on success (login/registration).

        Returns:
            True only for a live challenge with a matching answer. Missing,
            used, exhausted and expired challenges always fail.
        """
        if not challenge_id or not answer:
            return False
        answer_hash = self._answer_hash(challenge_id, answer)
        bind_ip = self._config.is_production and bool(client_ip)
        max_attempts = self._config.captcha_max_attempts
        now = self._clock()
        outcome: dict[str, Any] = {}

        def check(record: dict[str, Any] | None) -> dict[str, Any] | None:
            outcome.clear()
            if record is None:
                outcome["result"] = "missing"
                return None
            if record["used"]:
                outcome["result"] = "reused"
                return record
            if bind_ip and record.get("client_ip") and record["client_ip"] != client_ip:
                outcome.update(result="ip_mismatch", issued_to=record["client_ip"])
                return None
            record["attempts"] += 1
            outcome["attempts"] = record["attempts"]
            if record["attempts"] > max_attempts:
                outcome["result"] = "exhausted"
                return None
            if now - record["created_at"] > self._config.captcha_ttl_seconds:
                outcome["result"] = "expired"
                return None
            if not hmac.compare_digest(answer_hash, record["answer_hash"]):
                outcome["result"] = "wrong"
                return record
            if consume:
                outcome["result"] = "consumed"
                # tombstone until expiry so later reuse is detected
                return {"used": True, "created_at": record["created_at"]}
            record["verified"] = True
            outcome["result"] = "verified"
            return record

        self._challenges.update(challenge_id, check)
        result = outcome["result"]

        if result == "reused":
            logger.warning("CAPTCHA reuse attempt for %s from %s", challenge_id[:12], client_ip)
            self._audit.record(
                "CAPTCHA_REUSE_ATTEMPT",
                Severity.HIGH,
                Status.FAILURE,
                {"challenge": challenge_id[:12]},
                context,
            )
        elif result == "ip_mismatch":
            logger.warning(
                "CAPTCHA IP mismatch: issued to %s, presented by %s", outcome["issued_to"], client_ip
            )
        elif result == "exhausted":
            logger.warning("CAPTCHA attempts exhausted for %s", challenge_id[:12])
            self._audit.record(
                "CAPTCHA_ATTEMPTS_EXHAUSTED",
                Severity.HIGH,
                Status.FAILURE,
                {"challenge": challenge_id[:12], "attempts": outcome["attempts"]},
                context,
            )
        return result in ("consumed", "verified")

    def refresh(
        self,
        challenge_id: str | None,
        client_ip: str,
        context: RequestContext | None = None,
    ) -> CaptchaChallenge | None:
        if challenge_id:
            self._challenges.delete(challenge_id)
        return self.generate(client_ip, context)

    def is_valid(self, challenge_id: str) -> bool:
        record = self._challenges.get(challenge_id)
        if record is None:
            return False
        if self._clock() - record["created_at"] > self._config.captcha_ttl_seconds:
            self._challenges.delete(challenge_id)
            return False
        return not record["used"] and record["attempts"] < self._config.captcha_max_attempts

    def stats(self) -> dict[str, Any]:
        return {
            "activeSessions": sum(
                1 for _, record in self._challenges.items() if not record["used"]
            ),
            "rateLimitedIPs": len(self._rate_limits),
        }

    def clear_rate_limits(self) -> int:
        cleared = self._rate_limits.clear()
        logger.info("Cleared CAPTCHA rate limits for %s addresses", cleared)
        return cleared

    def sweep(self) -> int:
        """Drop expired challenges and stale rate-limit windows."""
        return self._challenges.sweep() + self._rate_limits.sweep()


__all__ = ["CAPTCHA_ALPHABET", "CaptchaChallenge", "CaptchaService"]
