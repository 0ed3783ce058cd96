"""User directory schemas."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class UserRole(str, Enum):
    """Roles understood by the appointment core."""

    PATIENT = "PATIENT"
    DOCTOR = "DOCTOR"
    ADMIN = "ADMIN"


class DirectoryEntry(BaseModel):
    """Display data for a user, as returned by the directory lookup."""

    id: UUID
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole
    specialization: str | None = None

    model_config = {"from_attributes": True}

    @property
    def full_name(self) -> str:
        """First and last name joined, skipping blanks."""
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else "Unknown"
