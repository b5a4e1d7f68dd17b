"""awstools exception hierarchy."""

from typing import Any


class AWSToolsError(Exception):
    """Base exception for all awstools errors."""


class MarkerIOError(AWSToolsError, OSError):
    """A job marker could not be read or written.

    Liveness of the job cannot be established, so the caller must abort
    before any mutation.
    """

    def __init__(self, message: str, path: str) -> None:
        self.path = path
        super().__init__(message)


class ResourceNotCreatedError(AWSToolsError):
    """A create call returned no usable identifier."""


class RemoteStateError(AWSToolsError):
    """The remote side reported an explicit failure."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class WaitTimeoutError(AWSToolsError, TimeoutError):
    """A resource did not converge before the wait deadline."""

    def __init__(
        self,
        handle: str,
        condition: dict[str, Any],
        last_sample: dict[str, Any] | None,
        elapsed: float,
    ) -> None:
        self.handle = handle
        self.condition = condition
        self.last_sample = last_sample
        self.elapsed = elapsed
        super().__init__(
            f"Timed out after {elapsed:.0f}s waiting for '{handle}' to reach "
            f"{condition} (last seen: {last_sample})"
        )


class WaitCancelledError(AWSToolsError):
    """A wait was aborted through its cancel event."""

    def __init__(self, handle: str, condition: dict[str, Any]) -> None:
        self.handle = handle
        self.condition = condition
        super().__init__(f"Wait for '{handle}' to reach {condition} was cancelled")


class RemoteCommandError(AWSToolsError):
    """An rsync or ssh command exited with a non-zero status."""


class StepFailedError(AWSToolsError):
    """A lifecycle workflow step failed."""

    def __init__(self, workflow: str, step: str, cause: BaseException) -> None:
        self.workflow = workflow
        self.step = step
        self.cause = cause
        super().__init__(f"Workflow '{workflow}' failed at step '{step}': {cause}")


class ResourceNotFoundError(AWSToolsError):
    """A resource a workflow depends on does not exist."""
