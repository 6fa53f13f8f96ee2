from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from accountia_auth.logging import get_logger
from accountia_auth.storage.models import utcnow

logger = get_logger(__name__)

MAX_LOGIN_ATTEMPTS = 5
LOGIN_WINDOW = timedelta(minutes=10)
LOGIN_BLOCK_DURATION = timedelta(minutes=15)
MAX_EMAIL_ATTEMPTS = 5
EMAIL_WINDOW = timedelta(minutes=5)
CLEANUP_INTERVAL_SECONDS = 5 * 60


@dataclass(frozen=True)
class LoginCheck:
    allowed: bool
    blocked_until: Optional[datetime] = None


@dataclass(frozen=True)
class EmailCheck:
    allowed: bool
    wait_time_ms: Optional[int] = None


@dataclass
class _EmailAttempts:
    count: int
    last_attempt: datetime


class RateLimiter:
    """In-process login and email-resend limiter.

    Login attempts are bucketed by ``ip:identifier``. Once five failures fall
    inside the retention window (the longer of the counting window and the
    lockout) the bucket is blocked until fifteen minutes after the most
    recent failure. Email resends are capped at five per five minutes per
    user.

    State is per-process; a restart forgets every bucket.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS,
    ) -> None:
        self._clock = clock
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.login_attempts: Dict[str, List[datetime]] = {}
        self.email_attempts: Dict[str, _EmailAttempts] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @staticmethod
    def _login_key(identifier: str, ip: str) -> str:
        return f"{ip}:{identifier}"

    @property
    def _retention(self) -> timedelta:
        return max(LOGIN_WINDOW, LOGIN_BLOCK_DURATION)

    # -- login --------------------------------------------------------------

    def check_login_attempts(self, identifier: str, ip: str) -> LoginCheck:
        key = self._login_key(identifier, ip)
        now = self._clock()
        attempts = self.login_attempts.get(key, [])
        recent = [a for a in attempts if now - a < self._retention]

        if len(recent) >= MAX_LOGIN_ATTEMPTS:
            last_attempt = attempts[-1]
            if now - last_attempt < LOGIN_BLOCK_DURATION:
                return LoginCheck(
                    allowed=False, blocked_until=last_attempt + LOGIN_BLOCK_DURATION
                )
            self.login_attempts.pop(key, None)
            return LoginCheck(allowed=True)

        if recent:
            self.login_attempts[key] = recent
        else:
            self.login_attempts.pop(key, None)
        return LoginCheck(allowed=True)

    def record_failed_login(self, identifier: str, ip: str) -> None:
        key = self._login_key(identifier, ip)
        self.login_attempts.setdefault(key, []).append(self._clock())

    def clear_login_attempts(self, identifier: str, ip: str) -> None:
        self.login_attempts.pop(self._login_key(identifier, ip), None)

    # -- email resend -------------------------------------------------------

    def check_email_attempts(self, user_id: str) -> EmailCheck:
        attempts = self.email_attempts.get(user_id)
        if attempts is None:
            return EmailCheck(allowed=True)

        elapsed = self._clock() - attempts.last_attempt
        if attempts.count >= MAX_EMAIL_ATTEMPTS and elapsed < EMAIL_WINDOW:
            wait = EMAIL_WINDOW - elapsed
            return EmailCheck(allowed=False, wait_time_ms=int(wait.total_seconds() * 1000))

        if elapsed >= EMAIL_WINDOW:
            del self.email_attempts[user_id]
        return EmailCheck(allowed=True)

    def record_email_attempt(self, user_id: str) -> None:
        now = self._clock()
        attempts = self.email_attempts.get(user_id)
        if attempts is None:
            attempts = _EmailAttempts(count=0, last_attempt=now)
            self.email_attempts[user_id] = attempts
        attempts.count += 1
        attempts.last_attempt = now

    # -- maintenance --------------------------------------------------------

    def cleanup_expired_entries(self) -> int:
        """Drop aged-out attempts and empty keys. Returns keys removed."""
        now = self._clock()
        removed = 0
        for key, attempts in list(self.login_attempts.items()):
            recent = [a for a in attempts if now - a < self._retention]
            if recent:
                self.login_attempts[key] = recent
            else:
                del self.login_attempts[key]
                removed += 1

        for user_id, attempts in list(self.email_attempts.items()):
            if now - attempts.last_attempt > EMAIL_WINDOW:
                del self.email_attempts[user_id]
                removed += 1
        return removed

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._running:
            logger.warning("rate_limit_sweep_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "rate_limit_sweep_started", interval_seconds=self.cleanup_interval_seconds
        )

    async def stop(self) -> None:
        """Stop the periodic sweep task."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("rate_limit_sweep_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                removed = self.cleanup_expired_entries()
            except Exception as exc:
                logger.error("rate_limit_sweep_failed", error=str(exc))
                continue
            if removed:
                logger.debug("rate_limit_sweep_complete", removed=removed)


__all__ = [
    "EMAIL_WINDOW",
    "LOGIN_BLOCK_DURATION",
    "LOGIN_WINDOW",
    "MAX_EMAIL_ATTEMPTS",
    "MAX_LOGIN_ATTEMPTS",
    "EmailCheck",
    "LoginCheck",
    "RateLimiter",
]
