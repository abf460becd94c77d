"""
LifecycleSession schema - the end-to-end delivery operation.

The session is the single record of where a delivery stands:

    COMMITTING -> BUILDING -> DEPLOYING -> VERIFYING -> LIVE
                     |  ^          |           |    \\
                     +--+          v           v     VERIFYING_DOMAIN -> LIVE
                  (corrective    FAILED      FAILED
                    retry)

Retry bounds are explicit RetryBudget fields on the session rather than loop
counters, and phase changes go through transition(), which rejects any move
not in TRANSITIONS.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from deplorch.errors import PermanentError

from .build_run import BuildRun, FailureReason
from .changeset import ChangeSet
from .deployment_state import DeploymentState
from .domain_binding import DomainBinding, DomainStatus

# ULID type alias for documentation
ULID = str

# Ceiling on build attempts and on reachability probes per session
MAX_ATTEMPTS = 3


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Phase(str, Enum):
    """Phase of a LifecycleSession."""
    COMMITTING = "committing"
    BUILDING = "building"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    VERIFYING_DOMAIN = "verifying_domain"
    LIVE = "live"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.LIVE, Phase.FAILED)


TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.COMMITTING: frozenset({Phase.BUILDING, Phase.FAILED}),
    Phase.BUILDING: frozenset({Phase.BUILDING, Phase.DEPLOYING, Phase.FAILED}),
    Phase.DEPLOYING: frozenset({Phase.VERIFYING, Phase.FAILED}),
    Phase.VERIFYING: frozenset({Phase.LIVE, Phase.VERIFYING_DOMAIN, Phase.FAILED}),
    Phase.VERIFYING_DOMAIN: frozenset({Phase.LIVE}),
    Phase.LIVE: frozenset(),
    Phase.FAILED: frozenset(),
}


class InvalidTransitionError(PermanentError, ValueError):
    """A phase change outside the transition table was attempted."""
    pass


@dataclass
class RetryBudget:
    """
    Per-phase attempt counter.

    The limit can be lowered but never raised above MAX_ATTEMPTS.

    Attributes:
        limit: Maximum attempts for the phase in this session
        used: Attempts consumed so far
        revisions: Revision observed by each attempt, in order
        failed_revisions: Revisions whose attempt ended in a failure
        last_reason: Classified reason of the most recent failure
    """
    limit: int = MAX_ATTEMPTS
    used: int = 0
    revisions: list[str] = field(default_factory=list)
    failed_revisions: list[str] = field(default_factory=list)
    last_reason: Optional[str] = None

    def __post_init__(self):
        if not 1 <= self.limit <= MAX_ATTEMPTS:
            raise ValueError(f"limit must be between 1 and {MAX_ATTEMPTS}")

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    @property
    def current_revision(self) -> Optional[str]:
        return self.revisions[-1] if self.revisions else None

    def consume(self, revision_id: Optional[str] = None) -> int:
        """
        Consume one attempt and return its number (1-indexed).

        Raises:
            ValueError: If the budget is already exhausted
        """
        if self.exhausted:
            raise ValueError(f"Retry budget exhausted ({self.used}/{self.limit})")
        self.used += 1
        if revision_id is not None:
            self.revisions.append(revision_id)
        return self.used

    def record_failure(self, revision_id: Optional[str], reason: Optional[str]) -> None:
        if revision_id is not None and revision_id not in self.failed_revisions:
            self.failed_revisions.append(revision_id)
        self.last_reason = reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "limit": self.limit,
            "used": self.used,
            "revisions": list(self.revisions),
            "failed_revisions": list(self.failed_revisions),
            "last_reason": self.last_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryBudget":
        return cls(
            limit=data.get("limit", MAX_ATTEMPTS),
            used=data.get("used", 0),
            revisions=list(data.get("revisions", [])),
            failed_revisions=list(data.get("failed_revisions", [])),
            last_reason=data.get("last_reason"),
        )


@dataclass(frozen=True)
class Narration:
    """
    Structured status event emitted on every transition.

    Wording for end users is left to the listener; this carries only the
    phase, attempt count and machine-readable detail.
    """
    session_id: ULID
    phase: Phase
    attempt: int
    event: str
    message: str = ""
    detail: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "session_id": self.session_id,
            "phase": self.phase.value,
            "attempt": self.attempt,
            "event": self.event,
            "at": self.at.isoformat(),
        }
        if self.message:
            result["message"] = self.message
        if self.detail:
            result["detail"] = self.detail
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Narration":
        return cls(
            session_id=data["session_id"],
            phase=Phase(data["phase"]),
            attempt=data.get("attempt", 1),
            event=data["event"],
            message=data.get("message", ""),
            detail=data.get("detail", {}),
            at=datetime.fromisoformat(data["at"]) if data.get("at") else _utcnow(),
        )


@dataclass(frozen=True)
class LiveSignal:
    """The externally visible "operation succeeded" signal."""
    session_id: ULID
    url: str
    revision_id: str
    domain: Optional[str] = None
    domain_status: Optional[DomainStatus] = None

    @property
    def domain_pending(self) -> bool:
        return self.domain_status == DomainStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "session_id": self.session_id,
            "url": self.url,
            "revision_id": self.revision_id,
        }
        if self.domain is not None:
            result["domain"] = self.domain
            result["domain_status"] = self.domain_status.value if self.domain_status else None
        return result


@dataclass
class LifecycleSession:
    """
    A record of one end-to-end delivery.

    Attributes:
        session_id: ULID uniquely identifying this session
        workspace: Workspace/application key used for mutual exclusion
        changeset: The ChangeSet that opened the session
        selector: Workload selector checked by the DeploymentVerifier
        endpoint_url: Public endpoint probed for reachability
        domain: Optional custom domain binding
        phase: Current phase
        base_revision: HEAD before the first commit
        revision_id: Latest pushed revision
        pending_changeset: Corrective ChangeSet accepted but not yet pushed
        build_run: Latest BuildRun
        deployment_state: Latest DeploymentState snapshot (informational)
        build_budget: Build attempt counter
        deploy_budget: Reachability probes made this session
        narration: Every structured event emitted so far
        error: Serialized terminal error when phase is FAILED
        live_url: Endpoint reported on entry into LIVE
    """
    session_id: ULID
    workspace: str
    changeset: ChangeSet
    selector: str
    endpoint_url: str
    domain: Optional[DomainBinding] = None
    phase: Phase = Phase.COMMITTING
    base_revision: Optional[str] = None
    revision_id: Optional[str] = None
    pending_changeset: Optional[ChangeSet] = None
    build_run: Optional[BuildRun] = None
    deployment_state: Optional[DeploymentState] = None
    build_budget: RetryBudget = field(default_factory=RetryBudget)
    deploy_budget: RetryBudget = field(default_factory=RetryBudget)
    narration: list[Narration] = field(default_factory=list)
    error: Optional[dict[str, Any]] = None
    live_url: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def domain_requested(self) -> bool:
        return self.domain is not None

    @property
    def last_failure_reason(self) -> Optional[FailureReason]:
        if self.build_run is not None and self.build_run.failure_reason is not None:
            return self.build_run.failure_reason
        return None

    def attempt_for(self, phase: Phase) -> int:
        """Attempt number reported in narration for a phase."""
        if phase == Phase.BUILDING:
            return max(self.build_budget.used, 1)
        if phase in (Phase.DEPLOYING, Phase.VERIFYING):
            return max(self.deploy_budget.used, 1)
        if phase == Phase.VERIFYING_DOMAIN and self.domain is not None:
            return max(self.domain.checks, 1)
        return 1

    def transition(self, to: Phase) -> None:
        """
        Move to another phase.

        Raises:
            InvalidTransitionError: If the move is not in TRANSITIONS
        """
        if to not in TRANSITIONS[self.phase]:
            raise InvalidTransitionError(
                f"Session {self.session_id}: cannot move from {self.phase.value} to {to.value}"
            )
        self.phase = to
        self.updated_at = _utcnow()
        if to.is_terminal:
            self.completed_at = self.updated_at

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "session_id": self.session_id,
            "workspace": self.workspace,
            "changeset": self.changeset.to_dict(),
            "selector": self.selector,
            "endpoint_url": self.endpoint_url,
            "phase": self.phase.value,
            "build_budget": self.build_budget.to_dict(),
            "deploy_budget": self.deploy_budget.to_dict(),
            "narration": [n.to_dict() for n in self.narration],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.domain is not None:
            result["domain"] = self.domain.to_dict()
        if self.base_revision is not None:
            result["base_revision"] = self.base_revision
        if self.revision_id is not None:
            result["revision_id"] = self.revision_id
        if self.pending_changeset is not None:
            result["pending_changeset"] = self.pending_changeset.to_dict()
        if self.build_run is not None:
            result["build_run"] = self.build_run.to_dict()
        if self.deployment_state is not None:
            result["deployment_state"] = self.deployment_state.to_dict()
        if self.error is not None:
            result["error"] = self.error
        if self.live_url is not None:
            result["live_url"] = self.live_url
        if self.completed_at is not None:
            result["completed_at"] = self.completed_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LifecycleSession":
        """Deserialize from dictionary."""
        return cls(
            session_id=data["session_id"],
            workspace=data["workspace"],
            changeset=ChangeSet.from_dict(data["changeset"]),
            selector=data["selector"],
            endpoint_url=data["endpoint_url"],
            domain=DomainBinding.from_dict(data["domain"]) if data.get("domain") else None,
            phase=Phase(data.get("phase", "committing")),
            base_revision=data.get("base_revision"),
            revision_id=data.get("revision_id"),
            pending_changeset=ChangeSet.from_dict(data["pending_changeset"]) if data.get("pending_changeset") else None,
            build_run=BuildRun.from_dict(data["build_run"]) if data.get("build_run") else None,
            deployment_state=DeploymentState.from_dict(data["deployment_state"]) if data.get("deployment_state") else None,
            build_budget=RetryBudget.from_dict(data.get("build_budget", {})),
            deploy_budget=RetryBudget.from_dict(data.get("deploy_budget", {})),
            narration=[Narration.from_dict(n) for n in data.get("narration", [])],
            error=data.get("error"),
            live_url=data.get("live_url"),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else _utcnow(),
            updated_at=datetime.fromisoformat(data["updated_at"]) if data.get("updated_at") else _utcnow(),
            completed_at=datetime.fromisoformat(data["completed_at"]) if data.get("completed_at") else None,
        )
