"""
BuildRun schema - one remote build attempt for a revision.

Status only moves forward:

    PENDING -> RUNNING -> SUCCEEDED | FAILED

A Failed run is never resurrected; a retry is a new BuildRun for a new
revision.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class BuildStatus(str, Enum):
    """Status of a remote build."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)


_ORDER = {
    BuildStatus.PENDING: 0,
    BuildStatus.RUNNING: 1,
    BuildStatus.SUCCEEDED: 2,
    BuildStatus.FAILED: 2,
}


class FailureReason(str, Enum):
    """Classified cause of a failed build."""
    DEPENDENCY_MISSING = "dependency_missing"
    TYPE_CHECK_FAILED = "type_check_failed"
    STALE_REFERENCE = "stale_reference"
    CONFIG_MISMATCH = "config_mismatch"
    BASE_IMAGE_INCOMPATIBLE = "base_image_incompatible"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNKNOWN = "unknown"


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BuildRun:
    """
    One attempt to build a revision.

    Attributes:
        revision_id: The pushed revision being built
        status: Current build status
        attempt: Attempt number within the session (1-indexed)
        failure_reason: Classified cause when status is FAILED
        log_excerpt: Tail of the build log, used for classification
        provider_run_id: Identifier of the run at the CI provider
        url: Link to the run at the CI provider
        observed_at: When this status was observed
    """
    revision_id: str
    status: BuildStatus = BuildStatus.PENDING
    attempt: int = 1
    failure_reason: Optional[FailureReason] = None
    log_excerpt: str = ""
    provider_run_id: Optional[str] = None
    url: Optional[str] = None
    observed_at: Optional[datetime] = None

    def __post_init__(self):
        if self.attempt < 1:
            raise ValueError("attempt must be >= 1")
        if self.failure_reason is not None and self.status != BuildStatus.FAILED:
            raise ValueError("Only failed builds carry a failure_reason")

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == BuildStatus.FAILED

    def advance(self, observed: "BuildRun") -> "BuildRun":
        """
        Merge a newer provider observation into this run.

        Raises:
            ValueError: If the observation would move status backwards or
                leave a terminal status
        """
        if observed.revision_id != self.revision_id:
            raise ValueError(
                f"Observation for {observed.revision_id} cannot advance run for {self.revision_id}"
            )
        if self.status.is_terminal and observed.status != self.status:
            raise ValueError(f"Build for {self.revision_id} already {self.status.value}")
        if _ORDER[observed.status] < _ORDER[self.status]:
            raise ValueError(
                f"Build status cannot move from {self.status.value} to {observed.status.value}"
            )
        return replace(
            self,
            status=observed.status,
            log_excerpt=observed.log_excerpt or self.log_excerpt,
            provider_run_id=observed.provider_run_id or self.provider_run_id,
            url=observed.url or self.url,
            observed_at=observed.observed_at or _utcnow(),
        )

    def classified(self, reason: FailureReason) -> "BuildRun":
        """Return a copy of this failed run with its classification attached."""
        if self.status != BuildStatus.FAILED:
            raise ValueError("Only failed builds can be classified")
        return replace(self, failure_reason=reason)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "revision_id": self.revision_id,
            "status": self.status.value,
            "attempt": self.attempt,
        }
        if self.failure_reason is not None:
            result["failure_reason"] = self.failure_reason.value
        if self.log_excerpt:
            result["log_excerpt"] = self.log_excerpt
        if self.provider_run_id is not None:
            result["provider_run_id"] = self.provider_run_id
        if self.url is not None:
            result["url"] = self.url
        if self.observed_at is not None:
            result["observed_at"] = self.observed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuildRun":
        """Deserialize from dictionary."""
        return cls(
            revision_id=data["revision_id"],
            status=BuildStatus(data.get("status", "pending")),
            attempt=data.get("attempt", 1),
            failure_reason=FailureReason(data["failure_reason"]) if data.get("failure_reason") else None,
            log_excerpt=data.get("log_excerpt", ""),
            provider_run_id=data.get("provider_run_id"),
            url=data.get("url"),
            observed_at=datetime.fromisoformat(data["observed_at"]) if data.get("observed_at") else None,
        )
