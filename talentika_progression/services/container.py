"""
Service Container - Dependency Injection Container

Builds the store and the engine facade once, lazily, from configuration.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging

from talentika_progression import config

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """
    Dependency injection container for the engine.

    The store is chosen by STORAGE_BACKEND; the PostgreSQL store shares the
    injected Database pool.
    """

    db: object  # Database instance
    storage_backend: str = config.STORAGE_BACKEND

    _store: Optional[object] = field(default=None, init=False, repr=False)
    _notifier: Optional[object] = field(default=None, init=False, repr=False)
    _progression_service: Optional[object] = field(default=None, init=False, repr=False)

    @property
    def store(self):
        """Get the progression store (lazy-loaded)"""
        if self._store is None:
            if self.storage_backend == "memory":
                from talentika_progression.db.store import InMemoryStore
                self._store = InMemoryStore()
            else:
                from talentika_progression.db.postgres import PostgresStore
                self._store = PostgresStore(self.db)
            logger.debug(f"{type(self._store).__name__} instantiated")
        return self._store

    @property
    def notifier(self):
        """Get the event notifier (lazy-loaded)"""
        if self._notifier is None:
            from talentika_progression.collaborators import LoggingNotifier, WebhookNotifier
            if config.NOTIFICATION_WEBHOOK_URL:
                self._notifier = WebhookNotifier(
                    config.NOTIFICATION_WEBHOOK_URL,
                    timeout=config.OPERATION_TIMEOUT_SECONDS
                )
            else:
                self._notifier = LoggingNotifier()
        return self._notifier

    @property
    def progression_service(self):
        """Get ProgressionService instance (lazy-loaded)"""
        if self._progression_service is None:
            from talentika_progression.services.progression_service import ProgressionService
            self._progression_service = ProgressionService(
                store=self.store,
                catalog=self.store,
                notifier=self.notifier,
            )
            logger.debug("ProgressionService instantiated")
        return self._progression_service

    async def close(self) -> None:
        """Release resources held by lazily created services"""
        close = getattr(self._notifier, "aclose", None)
        if close is not None:
            await close()


# Global container instance (initialized at application startup)
_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """
    Get the global service container.

    Raises:
        RuntimeError: If container not initialized (call init_container first)
    """
    if _container is None:
        raise RuntimeError(
            "Service container not initialized. "
            "Call init_container() at startup before using services."
        )
    return _container


def init_container(db: object, storage_backend: Optional[str] = None) -> ServiceContainer:
    """
    Initialize the global service container.

    Args:
        db: Database instance (unused by the in-memory backend)
        storage_backend: Overrides STORAGE_BACKEND

    Returns:
        ServiceContainer: The initialized container
    """
    global _container

    _container = ServiceContainer(db=db, storage_backend=storage_backend or config.STORAGE_BACKEND)

    logger.info(f"Service container initialized (storage: {_container.storage_backend})")
    return _container


def reset_container() -> None:
    """Drop the global container (tests and shutdown)"""
    global _container
    _container = None
