from __future__ import annotations


class WorkflowError(Exception):
    pass


class UnknownWorkflowError(WorkflowError):
    pass


class InvalidPayloadError(WorkflowError):
    pass


class RunNotFoundError(WorkflowError):
    pass


class RunNotRetryableError(WorkflowError):
    pass


class VideoNotFoundError(WorkflowError):
    """The video is gone, or belongs to someone else."""


class UpstreamError(WorkflowError):
    """A provider, storage or generation call failed."""


class EmptyTranscriptError(WorkflowError):
    pass


class StepFailedError(WorkflowError):
    def __init__(self, step: str, cause: BaseException):
        super().__init__(f"step {step!r} failed: {type(cause).__name__}: {cause}")
        self.step = step
        self.cause = cause
