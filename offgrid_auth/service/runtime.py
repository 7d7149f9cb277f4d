from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from offgrid_auth.config import Settings, get_settings
from offgrid_auth.logging import get_logger
from offgrid_auth.service.audit import AuditTrail
from offgrid_auth.service.credentials import Argon2PasswordHasher, CredentialStore
from offgrid_auth.service.devices import DeviceRegistry
from offgrid_auth.service.keys import SigningKeys, load_signing_keys
from offgrid_auth.service.ledger import RefreshTokenLedger
from offgrid_auth.service.sessions import SessionManager
from offgrid_auth.service.tokens import TokenIssuer
from offgrid_auth.storage.memory import MemoryStore
from offgrid_auth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (
                    parsed.scheme,
                    netloc,
                    parsed.path,
                    parsed.params,
                    parsed.query,
                    parsed.fragment,
                )
            )
        return url
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            # test runs keep state in-process only
            store = MemoryStore(None if settings.test_mode else settings.shared_fs_root)
        else:
            store = PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Assembles the session components once at process start.

    Nothing here is global: construct a ``Runtime`` and hand its
    ``sessions`` to whatever boundary serves requests.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        keys: Optional[SigningKeys] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else build_store(self.settings)
        self.keys = keys or load_signing_keys(self.settings)
        self.issuer = TokenIssuer.from_settings(self.settings, self.keys)
        self.hasher = Argon2PasswordHasher.from_settings(self.settings)
        self.credentials = CredentialStore(self.store, self.hasher)
        self.devices = DeviceRegistry(self.store)
        self.ledger = RefreshTokenLedger(self.store)
        self.audit = AuditTrail(self.store)
        self.sessions = SessionManager(
            store=self.store,
            credentials=self.credentials,
            devices=self.devices,
            issuer=self.issuer,
            ledger=self.ledger,
            audit=self.audit,
            revoke_on_upgrade=self.settings.revoke_on_upgrade,
            device_policy=self.settings.refresh_device_policy,
        )
        logger.info(
            "runtime_init_completed",
            jwt_algorithm=self.issuer.algorithm,
            access_ttl_seconds=self.issuer.access_ttl_seconds,
            refresh_ttl_seconds=self.issuer.refresh_ttl_seconds,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


__all__ = ["Runtime", "build_store"]
