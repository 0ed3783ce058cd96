"""Shared helpers for the test suite."""

from datetime import timedelta
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import get_settings
from clinicflow.container import ServiceContainer
from clinicflow.core.exceptions import InfrastructureError
from clinicflow.core.security import Identity, create_access_token
from clinicflow.schemas.users import DirectoryEntry
from clinicflow.services.appointment_service import AppointmentService


class StaticDirectory:
    """In-memory directory lookup with switchable failure."""

    def __init__(self, entries: list[DirectoryEntry]):
        self.entries = {entry.id: entry for entry in entries}
        self.calls: list[UUID] = []
        self.fail = False

    async def get_user(self, user_id: UUID) -> DirectoryEntry | None:
        self.calls.append(user_id)
        if self.fail:
            raise InfrastructureError("User directory unavailable")
        return self.entries.get(user_id)


def identity_of(entry: DirectoryEntry) -> Identity:
    """Identity the core sees for a directory entry."""
    return Identity(user_id=entry.id, role=entry.role, email=entry.email)


def token_for(entry: DirectoryEntry) -> str:
    """Mint an access token for a directory entry."""
    return create_access_token(
        data={"sub": str(entry.id), "role": entry.role.value, "email": entry.email},
        settings=get_settings(),
        expires_delta=timedelta(minutes=30),
    )


def headers_for(entry: DirectoryEntry) -> dict[str, str]:
    """Authorization headers for a directory entry."""
    return {"Authorization": f"Bearer {token_for(entry)}"}


def appointment_service(container: ServiceContainer, session: AsyncSession) -> AppointmentService:
    """Appointment service bound to an explicit session, as the request dependency builds it."""
    return AppointmentService(
        session,
        cache=container.cache,
        directory=container.directory,
        producer=container.producer,
        hooks=container.hooks,
        settings=container.settings,
    )


async def process_events(container: ServiceContainer) -> int:
    """Let the fanout consumer drain every partition once, without blocking."""
    await container.hooks.drain()
    await container.consumer.ensure_groups()

    processed = 0
    for partition in container.consumer.partitions:
        while True:
            batch = await container.consumer.poll_partition(partition)
            if batch == 0:
                break
            processed += batch
    return processed
