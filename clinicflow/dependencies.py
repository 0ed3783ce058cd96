"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.container import ServiceContainer
from clinicflow.core.exceptions import UnauthorizedException
from clinicflow.core.security import Identity, identity_from_token
from clinicflow.database import get_db
from clinicflow.services.appointment_service import AppointmentService
from clinicflow.services.notification_service import NotificationService

# Security
security = HTTPBearer(auto_error=False)


def get_container(request: Request) -> ServiceContainer:
    """Service container attached to the application."""
    return request.app.state.container  # type: ignore[no-any-return]


async def get_current_identity(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> Identity:
    """
    Resolve the caller from the bearer token.

    Args:
        credentials: Bearer token credentials
        container: Service container whose settings verify the token

    Returns:
        Caller identity (user id and role)

    Raises:
        UnauthorizedException: If the token is missing, invalid or expired
    """
    if credentials is None:
        raise UnauthorizedException("Authentication required")

    identity = identity_from_token(credentials.credentials, container.settings)
    if identity is None:
        raise UnauthorizedException("Could not validate credentials")

    return identity


def get_appointment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> AppointmentService:
    """Appointment service bound to the request's session."""
    return AppointmentService(
        db,
        cache=container.cache,
        directory=container.directory,
        producer=container.producer,
        hooks=container.hooks,
        settings=container.settings,
    )


def get_notification_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> NotificationService:
    """Notification service bound to the request's session."""
    return NotificationService(
        db,
        cache=container.cache,
        hooks=container.hooks,
        settings=container.settings,
    )


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentIdentity = Annotated[Identity, Depends(get_current_identity)]
Container = Annotated[ServiceContainer, Depends(get_container)]
AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]
