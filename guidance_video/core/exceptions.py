"""Domain errors raised synchronously to API callers or inside the job lifecycle."""


class IntakeValidationError(Exception):
    """Upload rejected before any job is created (MIME type, size, duration, form data)."""


class MissingRequiredFieldError(IntakeValidationError):
    """A required multipart field was not supplied."""

    def __init__(self, *fields: str) -> None:
        self.fields = fields
        super().__init__(f"{' and '.join(fields)} required")


class JobNotFoundError(Exception):
    def __init__(self, job_id) -> None:
        self.job_id = job_id
        super().__init__(f"Video job {job_id} not found")


class JobStateError(Exception):
    """A job was asked to leave a terminal state."""


class PoolSaturatedError(Exception):
    """The transcode queue has no free slot."""
