"""Storage backends for definitions and instances.

The backend is chosen by the scheme of a database URL. No URL gives
:class:`InMemoryProcessRepository`, ``sqlite://<path>`` gives
:class:`SQLiteProcessRepository` and ``postgres://`` or ``postgresql://``
give :class:`PostgresProcessRepository`.
"""

from __future__ import annotations

import logging
import os
from typing import Callable, Dict, Optional

from ..config import ProcflowConfig, load_config
from .inmemory import InMemoryProcessRepository
from .postgres import PostgresProcessRepository
from .repository import ExpectedState, InstanceFilter, ProcessRepository
from .sqlite import SQLiteProcessRepository

logger = logging.getLogger(__name__)

DATABASE_URL_VARIABLES = ("PROCFLOW_DATABASE_URL", "DATABASE_URL")

_BACKENDS: Dict[str, Callable[[str], ProcessRepository]] = {
    "sqlite": lambda url: SQLiteProcessRepository(url.split("://", 1)[1]),
    "postgres": PostgresProcessRepository,
    "postgresql": PostgresProcessRepository,
}

_repository_instance: ProcessRepository | None = None


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[ProcflowConfig] = None
) -> Optional[str]:
    """The explicit URL, then the environment, then ``config.database_url``."""
    if database_url:
        return database_url
    for name in DATABASE_URL_VARIABLES:
        if os.getenv(name):
            return os.environ[name]
    config = config or load_config()
    return config.database_url


def repository_from_url(database_url: Optional[str]) -> ProcessRepository:
    """Open the repository a database URL points at.

    Raises:
        ValueError: the URL scheme has no backend.
    """
    if not database_url:
        return InMemoryProcessRepository()
    scheme, separator, _ = database_url.partition("://")
    backend = _BACKENDS.get(scheme.lower()) if separator else None
    if backend is None:
        supported = ", ".join(f"{name}://" for name in _BACKENDS)
        raise ValueError(
            f"Unsupported database URL {database_url!r}; expected one of {supported}"
        )
    return backend(database_url)


def get_repository(
    database_url: Optional[str] = None, config: Optional[ProcflowConfig] = None
) -> ProcessRepository:
    """Shared repository for engines and catalogs built without one.

    A call without arguments returns the repository opened by an earlier
    call. Passing a URL or a config always opens a fresh one and makes it the
    shared repository.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = resolve_database_url(database_url, config)
    _repository_instance = repository_from_url(url)
    logger.debug(f"Using {type(_repository_instance).__name__} repository")
    return _repository_instance


def reset_repository() -> None:
    """Forget the shared repository so the next call reopens one."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "ExpectedState",
    "InMemoryProcessRepository",
    "InstanceFilter",
    "PostgresProcessRepository",
    "ProcessRepository",
    "SQLiteProcessRepository",
    "get_repository",
    "repository_from_url",
    "reset_repository",
    "resolve_database_url",
]
