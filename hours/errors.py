"""Exceptions raised by the sync engine."""


class HoursError(Exception):
    """Base class for all errors raised by hours."""

    pass


class ConfigurationError(HoursError):
    """Raised when required settings (e.g. Bitbucket credentials) are missing."""

    pass


class RemoteAPIError(HoursError):
    """Raised when a remote API call fails (HTTP status or network error)."""

    def __init__(self, status_code: int | None, reason: str) -> None:
        self.status_code = status_code
        self.reason = reason
        prefix = f"HTTP {status_code}" if status_code is not None else "Network error"
        super().__init__(f"Bitbucket API request failed: {prefix}: {reason}")


class NotFound(HoursError):
    """Raised for an unknown job id or repository."""

    pass


class ValidationError(HoursError):
    """Raised when request parameters are malformed."""

    pass


class JobAlreadyTerminal(HoursError):
    """Raised when cancelling a job that already completed, failed or was cancelled."""

    def __init__(self, job_id: str, status: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} cannot be cancelled: already {status}")


class CancellationSignal(HoursError):
    """Internal signal: the refresh job was cancelled and must unwind."""

    pass
