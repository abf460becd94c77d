"""
deplorch.schemas - Data structures for the delivery lifecycle.

ChangeSet -> BuildRun -> DeploymentState -> DomainBinding, all owned by a
LifecycleSession:

1. ChangeSet: Atomic bundle of file mutations plus commit message
2. BuildRun: One remote build attempt for a pushed revision
3. DeploymentState: Observed replica counts and last probe result
4. DomainBinding: Optional custom-domain verification state
5. LifecycleSession: Phase, retry budgets and narration for one delivery
"""

from .changeset import (
    ChangeSet,
    FileOp,
    is_protected,
    normalize_path,
)
from .build_run import (
    BuildRun,
    BuildStatus,
    FailureReason,
)
from .deployment_state import (
    DeploymentState,
    ProbeResult,
    ReplicaStatus,
    RuntimeFailureReason,
    WorkloadEvent,
)
from .domain_binding import (
    CertificateState,
    DomainBinding,
    DomainStatus,
)
from .session import (
    InvalidTransitionError,
    LifecycleSession,
    LiveSignal,
    MAX_ATTEMPTS,
    Narration,
    Phase,
    RetryBudget,
    TRANSITIONS,
    ULID,
)

__all__ = [
    # ChangeSet
    "ChangeSet",
    "FileOp",
    "is_protected",
    "normalize_path",
    # Build
    "BuildRun",
    "BuildStatus",
    "FailureReason",
    # Deployment
    "DeploymentState",
    "ProbeResult",
    "ReplicaStatus",
    "RuntimeFailureReason",
    "WorkloadEvent",
    # Domain
    "CertificateState",
    "DomainBinding",
    "DomainStatus",
    # Session
    "InvalidTransitionError",
    "LifecycleSession",
    "LiveSignal",
    "MAX_ATTEMPTS",
    "Narration",
    "Phase",
    "RetryBudget",
    "TRANSITIONS",
    "ULID",
]
