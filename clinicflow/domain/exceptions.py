import datetime as dt


class ClinicError(Exception):
    """Base exception for all scheduling and notification errors."""


class NotFoundError(ClinicError):
    """Raised when an appointment, provider, template or patient does not exist."""

    def __init__(self, kind: str, identifier: str | None = None) -> None:
        self.kind = kind
        self.identifier = identifier
        if identifier is None:
            super().__init__(f"{kind} not found")
        else:
            super().__init__(f"{kind} not found with id of {identifier}")


class ConflictError(ClinicError):
    """Raised when the requested interval overlaps an existing booking."""

    def __init__(
        self,
        provider_id: str,
        date: dt.date,
        start_time: str,
        end_time: str,
    ) -> None:
        self.provider_id = provider_id
        self.date = date
        self.start_time = start_time
        self.end_time = end_time
        super().__init__(
            f"Doctor is not available at the requested time ({date} {start_time}-{end_time})"
        )


class ValidationError(ClinicError):
    """Raised when a request is missing fields or carries an invalid value."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class TransportError(ClinicError):
    """Raised when the messaging provider rejects or fails a call."""


class PersistenceError(ClinicError):
    """Raised when the backing store is unavailable."""
