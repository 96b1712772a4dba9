from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from walletauth.config import get_settings, reset_settings_cache
from walletauth.logging import get_logger
from walletauth.service.auth import AuthService
from walletauth.service.claims import MemoryConsentSource
from walletauth.service.keys import SettingsKeyProvider
from walletauth.service.partners import AllowListPartnerRegistry
from walletauth.service.signature import HttpSignatureVerifier, RejectingSignatureVerifier
from walletauth.service.tokens import TokenCodec
from walletauth.storage.memory import MemoryStore
from walletauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
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

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.keys = SettingsKeyProvider(self.settings)
        self.codec = TokenCodec(self.keys, self.settings)
        self.partners = AllowListPartnerRegistry(self.settings.allowed_audiences)
        self.consents = MemoryConsentSource()
        if self.settings.signature_verifier_url:
            self.signatures = HttpSignatureVerifier(
                self.settings.signature_verifier_url,
                timeout=self.settings.signature_verifier_timeout_seconds,
            )
        else:
            logger.warning(
                "signature_verifier_disabled",
                message="SIGNATURE_VERIFIER_URL is unset; every sign-in will be rejected",
            )
            self.signatures = RejectingSignatureVerifier()
        self.auth = AuthService(
            self.store,
            self.codec,
            self.settings,
            signatures=self.signatures,
            partners=self.partners,
            consents=self.consents,
        )

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        runtime = Runtime()
        return runtime
