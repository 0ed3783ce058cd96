"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, status_code: int = 500, headers: dict[str, str] | None = None):
        """Initialize exception with message, status code and optional response headers."""
        self.message = message
        self.status_code = status_code
        self.headers = headers
        super().__init__(self.message)


class ValidationError(AppException):
    """Malformed input that passed schema validation but not business validation."""

    def __init__(self, message: str = "Validation error"):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400)


class UnauthorizedException(AppException):
    """Missing or invalid credentials."""

    def __init__(self, message: str = "Authentication required"):
        """Initialize with 401 status code and a bearer challenge."""
        super().__init__(message, status_code=401, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(AppException):
    """Caller has the wrong role or is not a party to the resource."""

    def __init__(self, message: str = "Unauthorized access"):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403)


class NotFoundError(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class ConflictError(AppException):
    """Slot already taken or transition not allowed from the current state."""

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class InfrastructureError(AppException):
    """Store, log, cache, broker or directory unavailable."""

    def __init__(self, message: str = "Service temporarily unavailable"):
        """Initialize with 503 status code."""
        super().__init__(message, status_code=503)
