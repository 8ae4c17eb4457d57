from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from realmauth.config import get_settings, reset_settings_cache
from realmauth.logging import get_logger
from realmauth.service.accounts import AccountService
from realmauth.service.email import EmailService
from realmauth.service.invites import InviteCodeService
from realmauth.service.maintenance import MaintenanceJobs, MaintenanceWorker
from realmauth.storage.memory import MemoryStore
from realmauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                # Test runs start from an empty store every time
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService.from_settings(self.settings)
        if not self.email.is_configured:
            logger.warning("email_service_dev_mode", reason="SMTP_HOST or EMAIL_FROM_ADDRESS unset")
        self.accounts = AccountService(self.store, self.settings, self.email)
        self.invites = InviteCodeService(self.store, self.settings)
        self.maintenance = MaintenanceWorker(
            MaintenanceJobs(self.store),
            interval=self.settings.maintenance_interval_seconds,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
