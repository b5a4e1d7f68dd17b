"""awstools - AWS image, snapshot and stack lifecycle automation."""

from .cli import app
from .config import Settings
from .errors import (
    AWSToolsError,
    MarkerIOError,
    RemoteCommandError,
    RemoteStateError,
    ResourceNotCreatedError,
    ResourceNotFoundError,
    StepFailedError,
    WaitCancelledError,
    WaitTimeoutError,
)
from .lifecycle import Step, Wait, Workflow
from .lock import ProcessLock, acquire
from .poller import Poller, wait_until
from .providers import AWSClient
from .types import CallResult, IngressRule, ScalingPolicy, WaitCondition, WaitState
from .utils import error, log, warn

__all__ = [
    "AWSClient",
    "Settings",
    "ProcessLock",
    "acquire",
    "Poller",
    "wait_until",
    "Step",
    "Wait",
    "Workflow",
    "app",
    "log",
    "warn",
    "error",
    "AWSToolsError",
    "MarkerIOError",
    "RemoteCommandError",
    "RemoteStateError",
    "ResourceNotCreatedError",
    "ResourceNotFoundError",
    "StepFailedError",
    "WaitCancelledError",
    "WaitTimeoutError",
    "CallResult",
    "IngressRule",
    "ScalingPolicy",
    "WaitCondition",
    "WaitState",
]
