"""Type definitions for awstools."""

from dataclasses import dataclass, field
from typing import Any, Literal, TypedDict

from .errors import RemoteStateError, ResourceNotCreatedError

WaitState = Literal["polling", "satisfied", "timed-out", "cancelled"]
Outcome = Literal["ok", "remote_error", "malformed"]
ResourceKind = Literal[
    "instance",
    "image",
    "snapshot",
    "security_group",
    "key_pair",
    "launch_configuration",
    "auto_scaling_group",
    "load_balancer",
    "db_instance",
    "db_security_group",
    "bucket",
]


class WaitCondition(TypedDict, total=False):
    """Named checks a resource must match on a single sample."""

    state: str
    status: str
    capacity_reached: bool
    ssh: str


class ScalingPolicy(TypedDict):
    """Scaling policy plus the CloudWatch alarm that triggers it."""

    Adjustment: int
    Comparison: str  # e.g. GreaterThanOrEqualToThreshold
    Metric: str  # e.g. CPUUtilization
    Threshold: float


class IngressRule(TypedDict, total=False):
    """Security group ingress rule, passed through to the API."""

    IpProtocol: str
    FromPort: int
    ToPort: int
    CidrIp: str
    SourceSecurityGroupName: str


@dataclass(frozen=True)
class CallResult:
    """Outcome of a mutating call against the cloud API.

    ``remote_error`` means the remote side reported a failure and the call
    may be retried; ``malformed`` means the response lacked the field the
    caller needs and retrying will not help.
    """

    outcome: Outcome
    handle: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    code: str | None = None

    @classmethod
    def success(cls, handle: str | None, data: dict | None = None) -> "CallResult":
        return cls("ok", handle=handle, data=data or {})

    @classmethod
    def remote_error(
        cls, message: str, code: str | None = None, data: dict | None = None
    ) -> "CallResult":
        return cls("remote_error", data=data or {}, message=message, code=code)

    @classmethod
    def malformed(cls, message: str, data: dict | None = None) -> "CallResult":
        return cls("malformed", data=data or {}, message=message)

    @property
    def ok(self) -> bool:
        return self.outcome == "ok"

    @property
    def retryable(self) -> bool:
        return self.outcome == "remote_error"

    def unwrap(self) -> str | None:
        """Return the handle, raising if the call did not succeed."""
        if self.outcome == "malformed":
            raise ResourceNotCreatedError(self.message or "Resource not created")
        if self.outcome == "remote_error":
            raise RemoteStateError(self.message or "Remote call failed", code=self.code)
        return self.handle
