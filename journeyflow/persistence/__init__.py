"""Persistence layer for journeys and their executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import JourneyflowConfig, load_config
from .inmemory import InMemoryJourneyRepository
from .repository import JourneyRepository, TriggerWithJourney
from .sqlite import SQLiteJourneyRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresJourneyRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresJourneyRepository = None  # type: ignore

_repository_instance: JourneyRepository | None = None
_repository_url: Optional[str] = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[JourneyflowConfig] = None
) -> JourneyRepository:
    """Factory function to obtain a journey repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via ``JOURNEYFLOW_DATABASE_URL`` or ``DATABASE_URL``, or from
    loaded configuration. Without a database an in-memory repository is
    returned.
    """

    global _repository_instance, _repository_url
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("JOURNEYFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    if _repository_instance is not None and database_url == _repository_url:
        return _repository_instance
    _repository_url = database_url

    if not database_url:
        _repository_instance = InMemoryJourneyRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteJourneyRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresJourneyRepository is None:
            raise RuntimeError("Postgres support not available; install asyncpg")
        _repository_instance = PostgresJourneyRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Forget the cached repository so the next call rebuilds it."""
    global _repository_instance, _repository_url
    _repository_instance = None
    _repository_url = None


__all__ = [
    "JourneyRepository",
    "TriggerWithJourney",
    "InMemoryJourneyRepository",
    "SQLiteJourneyRepository",
    "PostgresJourneyRepository",
    "get_repository",
    "reset_repository",
]
