"""
DeploymentState schema - observed runtime status of a deployed workload.

DeploymentState is never cached by the orchestrator: every check re-queries
the WorkloadInspector, and the snapshot kept on the session is informational.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class RuntimeFailureReason(str, Enum):
    """Classified cause of a rollout that never became ready."""
    CRASH_LOOP = "crash_loop"
    IMAGE_UNAVAILABLE = "image_unavailable"
    UNSCHEDULABLE = "unschedulable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ReplicaStatus:
    """Replica counts reported by the scheduler for a workload selector."""
    desired: int
    ready: int
    restarts: int = 0

    @property
    def healthy(self) -> bool:
        """All desired replicas ready with zero restarts at this instant."""
        return self.desired > 0 and self.ready >= self.desired and self.restarts == 0

    def to_dict(self) -> dict[str, Any]:
        return {"desired": self.desired, "ready": self.ready, "restarts": self.restarts}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReplicaStatus":
        return cls(
            desired=int(data.get("desired", 0)),
            ready=int(data.get("ready", 0)),
            restarts=int(data.get("restarts", 0)),
        )


@dataclass(frozen=True)
class WorkloadEvent:
    """A failure signal reported by the scheduler (event or waiting reason)."""
    reason: str
    message: str = ""
    object_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "message": self.message, "object_name": self.object_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkloadEvent":
        return cls(
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            object_name=data.get("object_name", ""),
        )


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one reachability probe."""
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status_code is not None and 200 <= self.status_code < 300

    def describe(self) -> str:
        if self.status_code is not None:
            return f"HTTP {self.status_code}"
        return self.error or "no response"

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.status_code is not None:
            result["status_code"] = self.status_code
        if self.error is not None:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProbeResult":
        return cls(status_code=data.get("status_code"), error=data.get("error"))


@dataclass(frozen=True)
class DeploymentState:
    """
    Observed runtime status of the deployed workload.

    Attributes:
        selector: Workload selector that was inspected
        replicas: Replica counts at observation time
        last_probe: Most recent reachability probe result, if any
        observed_at: When the snapshot was taken
    """
    selector: str
    replicas: ReplicaStatus
    last_probe: Optional[ProbeResult] = None
    observed_at: datetime = field(default_factory=_utcnow)

    @property
    def verified(self) -> bool:
        """Both checks pass in this snapshot."""
        return self.replicas.healthy and self.last_probe is not None and self.last_probe.ok

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "selector": self.selector,
            "replicas": self.replicas.to_dict(),
            "observed_at": self.observed_at.isoformat(),
        }
        if self.last_probe is not None:
            result["last_probe"] = self.last_probe.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentState":
        return cls(
            selector=data["selector"],
            replicas=ReplicaStatus.from_dict(data.get("replicas", {})),
            last_probe=ProbeResult.from_dict(data["last_probe"]) if data.get("last_probe") else None,
            observed_at=datetime.fromisoformat(data["observed_at"]) if data.get("observed_at") else _utcnow(),
        )
