"""
Error taxonomy for the CGI pipeline.

ValidationError and InsufficientCredits are raised synchronously to the
submitter before any job or ledger mutation. ProviderError is raised by
adapters; the executor either absorbs it (enhancement stages) or records
it as the job's terminal error.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    pass


class InsufficientCredits(PipelineError):
    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits: {required} required, {available} available"
        )


class JobNotFound(PipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class ProviderError(PipelineError):
    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"{provider}: {message}")


class JobFailed(PipelineError):
    """Terminal failure of a job after an unrecoverable ProviderError."""

    def __init__(self, job_id: str, reason: str):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} failed: {reason}")


class InvalidTransition(PipelineError):
    pass
