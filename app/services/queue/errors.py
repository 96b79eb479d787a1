"""
Job-level error taxonomy.

The queue retries TransientJobError (and anything it does not recognise);
TerminalJobError fails the job without retrying. DuplicateWorkError and
NoIntegrationsError end the report as skipped. JobInProgressError tells a
redelivering transport to come back later.
"""


class JobError(Exception):
    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id


class TransientJobError(JobError):
    """Retry with backoff, same job id."""


class TerminalJobError(JobError):
    """Do not retry; record the reason."""


class NoIntegrationsError(JobError):
    """User has no working integration after the refresh pass."""


class DuplicateWorkError(JobError):
    """The work was already done. Not a failure, the job ends as skipped."""

    def __init__(self, message: str, job_id: str | None = None, report_id: str | None = None):
        super().__init__(message, job_id=job_id)
        self.report_id = report_id


class JobInProgressError(JobError):
    """A redelivery arrived while the first delivery is still running."""

    def __init__(self, message: str, job_id: str | None = None, retry_after: int = 0):
        super().__init__(message, job_id=job_id)
        self.retry_after = retry_after


class SignatureInvalidError(Exception):
    """Inbound webhook signature did not verify."""
