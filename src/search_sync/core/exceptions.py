"""Exception hierarchy for the change-synchronization pipeline."""


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        super().__init__(message)


class ValidationException(AppException):
    """Invalid administrative input (e.g. a routing percentage outside 0-100)."""

    def __init__(self, message: str = "Validation error"):
        super().__init__(message)


class PermanentChangeError(AppException):
    """A change record that can never be applied, no matter how often it is retried."""


class UnknownEntityKind(PermanentChangeError):
    """The change record refers to an entity kind with no document mapping."""

    def __init__(self, entity_kind: str):
        self.entity_kind = entity_kind
        super().__init__(f"Unknown entity kind: {entity_kind}")


class MalformedPayload(PermanentChangeError):
    """The change payload does not have the shape its operation requires."""


class SearchIndexError(AppException):
    """The search index rejected or failed an operation (transient)."""


class QueueServiceError(AppException):
    """The external queue service failed to accept a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SyncAlreadyRunning(AppException):
    """A full resync was requested while another run is still active."""

    def __init__(self, message: str = "Sync already running"):
        super().__init__(message)
