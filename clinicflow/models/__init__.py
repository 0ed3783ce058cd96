"""Database models."""

from clinicflow.models.appointments import appointments
from clinicflow.models.base import metadata
from clinicflow.models.notifications import notifications
from clinicflow.models.users import users

__all__ = [
    "appointments",
    "metadata",
    "notifications",
    "users",
]
