"""
Exception types shared across the ingest pipeline and the job store.

Per-page and per-image failures are caught and counted where they happen;
only configuration errors and job-store state errors are meant to reach
callers.
"""


class ConfigurationError(RuntimeError):
    """Required credentials or storage settings are missing."""


class LoginRequiredError(RuntimeError):
    """The static fetch landed on a login wall; a browser render is needed."""

    def __init__(self, url: str) -> None:
        super().__init__(f"login required for {url}")
        self.url = url


class StorageError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoragePermissionError(StorageError):
    """Upload rejected for lack of permission (401/403 or row-level security)."""


class ImageValidationError(ValueError):
    """Downloaded payload is not a decodable, supported image."""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"No job found with id={job_id}")
        self.job_id = job_id


class JobStateError(RuntimeError):
    """Requested transition is not allowed from the job's current status."""

    def __init__(self, job_id: str, status: str, message: str | None = None) -> None:
        super().__init__(message or f"Cannot change job {job_id} with status='{status}'")
        self.job_id = job_id
        self.status = status


class ProgressInvariantError(AssertionError):
    pass
