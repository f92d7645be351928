from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from formvault.config import get_settings, reset_settings_cache
from formvault.logging import get_logger
from formvault.service.authorities import GrantedAuthorities
from formvault.service.bootstrap import SuperUserBootstrap
from formvault.service.identity import IdentityService
from formvault.service.preferences import ServerPreferences
from formvault.service.revisions import SecurityRevisions
from formvault.service.users import RegisteredUsers
from formvault.storage.memory import MemoryDatastore
from formvault.storage.postgres import PostgresDatastore
from formvault.storage.relation import RelationRegistry

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a DSN with ``***`` before it is logged."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the datastore, relation registry and stores for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.datastore: Union[MemoryDatastore, PostgresDatastore] = (
                MemoryDatastore(
                    fs_root=self.settings.data_root,
                    schema_name=self.settings.datastore_schema,
                )
                if self.settings.use_memory_store
                else PostgresDatastore(
                    self.settings.database_url,
                    schema_name=self.settings.datastore_schema,
                )
            )
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

        self.identity = IdentityService(self.settings)
        # one registry per datastore per process
        self.registry = RelationRegistry(self.datastore, self.identity.daemon_principal)
        self.authorities = GrantedAuthorities(self.registry)
        self.preferences = ServerPreferences(self.registry)
        self.users = RegisteredUsers(self.registry, self.authorities)
        self.revisions = SecurityRevisions(self.registry)
        self.bootstrap = SuperUserBootstrap(
            self.settings,
            self.identity,
            self.users,
            self.authorities,
            self.preferences,
            self.revisions,
        )

    def close(self) -> None:
        if isinstance(self.datastore, PostgresDatastore):
            self.datastore.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check keeps creation to a single thread.
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
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
