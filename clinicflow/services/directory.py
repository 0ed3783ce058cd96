"""User directory lookups used to enrich appointments and events."""

import asyncio
from typing import Protocol
from uuid import UUID

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.config import Settings
from clinicflow.core.exceptions import InfrastructureError
from clinicflow.models.users import users
from clinicflow.schemas.users import DirectoryEntry

logger = structlog.get_logger(__name__)


class DirectoryLookup(Protocol):
    """Resolves a user id to display data."""

    async def get_user(self, user_id: UUID) -> DirectoryEntry | None:
        """
        Look a user up.

        Returns:
            The entry, or None if the user does not exist

        Raises:
            InfrastructureError: If the directory is unavailable or too slow
        """
        ...


class DatabaseDirectory:
    """Directory backed by the ``users`` table of the shared database."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], timeout: float):
        """Initialize with a session factory and a per-lookup timeout in seconds."""
        self.sessionmaker = sessionmaker
        self.timeout = timeout

    async def _fetch(self, user_id: UUID) -> DirectoryEntry | None:
        async with self.sessionmaker() as session:
            result = await session.execute(select(users).where(users.c.id == user_id))
            row = result.mappings().first()
        return DirectoryEntry.model_validate(dict(row)) if row else None

    async def get_user(self, user_id: UUID) -> DirectoryEntry | None:
        try:
            return await asyncio.wait_for(self._fetch(user_id), timeout=self.timeout)
        except TimeoutError as e:
            raise InfrastructureError("User directory timed out") from e
        except InfrastructureError:
            raise
        except Exception as e:
            logger.warning("directory_lookup_failed", user_id=str(user_id), error=str(e))
            raise InfrastructureError("User directory unavailable") from e


class HttpDirectory:
    """Directory backed by the auth service's ``/api/auth/users/{id}`` endpoint."""

    def __init__(self, client: httpx.AsyncClient):
        """Initialize with an HTTP client whose base URL points at the auth service."""
        self.client = client

    async def get_user(self, user_id: UUID) -> DirectoryEntry | None:
        try:
            response = await self.client.get(f"/api/auth/users/{user_id}")
        except httpx.HTTPError as e:
            logger.warning("directory_lookup_failed", user_id=str(user_id), error=str(e))
            raise InfrastructureError("User directory unavailable") from e

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise InfrastructureError(f"User directory returned {response.status_code}")

        body = response.json()
        user = body.get("data", {}).get("user") if isinstance(body, dict) else None
        if not user:
            return None
        user["role"] = str(user.get("role", "")).upper()
        return DirectoryEntry.model_validate(user)


def build_directory(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient | None = None,
) -> DirectoryLookup:
    """
    Select the directory backend from settings.

    Args:
        settings: Application settings
        sessionmaker: Session factory for the database backend
        http_client: Client for the HTTP backend (required when it is selected)

    Returns:
        Directory lookup implementation
    """
    if settings.directory_backend == "http":
        if http_client is None:
            raise ValueError("HTTP directory backend requires an HTTP client")
        return HttpDirectory(http_client)
    return DatabaseDirectory(sessionmaker, settings.directory_timeout_seconds)


async def lookup_or_none(directory: DirectoryLookup, user_id: UUID) -> DirectoryEntry | None:
    """
    Look a user up for display purposes only.

    Directory failures degrade to None so callers can show "Unknown" instead of
    failing the whole query.
    """
    try:
        return await directory.get_user(user_id)
    except InfrastructureError as e:
        logger.warning("directory_enrichment_degraded", user_id=str(user_id), error=e.message)
        return None
