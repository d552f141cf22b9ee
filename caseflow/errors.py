"""Failure types raised by the intake and analysis pipeline.

Validation problems are never raised; they travel as a ValidationReport.
Everything here is caught by the workflow controller and turned into a
WorkflowError for the presentation layer.
"""


class ConsentRequired(Exception):
    """Submission attempted before the patient granted consent."""


class CacheWriteFailure(Exception):
    """A cache write could not be completed (logged, never propagated)."""


class AnalysisError(Exception):
    """Base class for failures talking to the remote analysis service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SubmissionError(AnalysisError):
    """The case could not be submitted."""


class AnalysisFailedError(AnalysisError):
    """The remote service reported a terminal failure for the request."""


class PollTimeoutError(AnalysisError):
    """Polling exhausted its attempts without a terminal result.

    The request id stays valid, so the caller may re-poll instead of
    resubmitting the case.
    """

    def __init__(self, request_id: str, attempts: int) -> None:
        super().__init__("Analysis is taking longer than expected - please check back later")
        self.request_id = request_id
        self.attempts = attempts


class PollCancelledError(AnalysisError):
    """Polling was abandoned because the session moved on."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Polling for {request_id} was cancelled")
        self.request_id = request_id
