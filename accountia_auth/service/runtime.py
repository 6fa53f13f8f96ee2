from __future__ import annotations

import threading
from typing import Optional

from accountia_auth.config import Settings, get_settings, reset_settings_cache
from accountia_auth.logging import get_logger
from accountia_auth.service.auth import AuthService
from accountia_auth.service.email import EmailService
from accountia_auth.service.oauth import GoogleOAuthFlow
from accountia_auth.service.rate_limit import RateLimiter
from accountia_auth.service.tokens import TokenService
from accountia_auth.service.two_factor import TwoFactorEngine
from accountia_auth.storage.memory import MemoryUserStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            persistent_state=self.settings.use_persistent_state,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryUserStore(
                fs_root=(
                    self.settings.shared_fs_root
                    if self.settings.use_persistent_state
                    else None
                ),
                mfa_encryption_key=(
                    self.settings.mfa_encryption_key or self.settings.jwt_secret
                ),
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.rate_limiter = RateLimiter()
        self.tokens = TokenService(self.settings, self.store)
        self.two_factor = TwoFactorEngine(self.settings, self.store)
        self.oauth = GoogleOAuthFlow(self.settings, self.store, self.tokens)
        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_dev_mode_enabled")
        self.auth = AuthService(
            self.settings,
            self.store,
            rate_limiter=self.rate_limiter,
            tokens=self.tokens,
            two_factor=self.two_factor,
            oauth=self.oauth,
            email=self.email,
        )
        logger.info(
            "runtime_init_complete",
            google_oauth=self.settings.google_oauth_configured,
        )

    async def start(self) -> None:
        await self.rate_limiter.start()

    async def close(self) -> None:
        await self.rate_limiter.stop()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path, the
    locked re-check prevents two threads building separate runtimes.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
