"""Exceptions raised by the reasoning pipeline and its services."""

from typing import Any, Optional


class PipelineError(Exception):
    """Base exception for pipeline errors."""

    pass


class ValidationError(PipelineError):
    """Invalid input to the engine. Raised before any graph mutation."""

    pass


class StageOrderError(ValidationError):
    """A stage was requested before its predecessors completed."""

    def __init__(self, stage: int, missing: list[int]) -> None:
        self.stage = stage
        self.missing = missing
        super().__init__(
            f"Stage {stage} requires stages {missing} to be completed first"
        )


class CredentialError(PipelineError):
    """A required credential is absent or malformed."""

    pass


class AuthenticationError(CredentialError):
    """An external service rejected the supplied credential."""

    pass


class RateLimitError(PipelineError):
    """An external service throttled the request."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)


class CostLimitExceeded(PipelineError):
    """The cost guardrail refused admission of an external call."""

    def __init__(self, service: str, reason: str) -> None:
        self.service = service
        self.reason = reason
        super().__init__(f"Cost guardrail refused '{service}' call: {reason}")


class ExternalApiError(PipelineError):
    """An external service failed or returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class MalformedResponseError(ExternalApiError):
    """The external response could not be parsed."""

    pass


class ResponseTruncated(PipelineError):
    """The external service stopped early because the token budget ran out."""

    def __init__(self, partial_response: Any = None) -> None:
        self.partial_response = partial_response
        super().__init__("Response truncated by the token limit")


class CallTimeoutError(PipelineError, TimeoutError):
    """An external call did not complete within its timeout."""

    pass


class GraphConsistencyError(PipelineError):
    """A graph mutation would break a structural invariant."""

    pass


class StageExecutionError(PipelineError):
    """Error raised when a stage fails during execution."""

    def __init__(
        self,
        stage_name: str,
        original_error: Exception,
        context: dict | None = None,
    ) -> None:
        self.stage_name = stage_name
        self.original_error = original_error
        self.context = context or {}
        message = f"Stage '{stage_name}' failed: {original_error}"
        super().__init__(message)


# --- Background task queue ---
class TaskQueueError(PipelineError):
    """Base class for task queue errors."""

    pass


class QueueFullError(TaskQueueError):
    """Raised by ``submit`` when the waiting queue is at capacity."""

    pass


class TaskNotFoundError(TaskQueueError):
    """The task id is unknown or its record has been evicted."""

    pass


class TaskTimeoutError(TaskQueueError, TimeoutError):
    """The task did not finish before the poll timeout elapsed."""

    def __init__(self, task_id: str, timeout: float) -> None:
        self.task_id = task_id
        self.timeout = timeout
        super().__init__(f"Task {task_id} did not finish within {timeout}s")


class TaskFailedError(TaskQueueError):
    """The task raised. The original error is kept for the caller."""

    def __init__(self, task_id: str, original_error: BaseException) -> None:
        self.task_id = task_id
        self.original_error = original_error
        super().__init__(f"Task {task_id} failed: {original_error}")
