"""
Capability interfaces for everything outside the orchestrator.

The orchestrator never talks to git, CI, the scheduler, HTTP or DNS
directly. Each collaborator sits behind one of these ABCs:
- SourceControl: workspace checkout and remote default branch
- BuildProvider: remote CI runs (polled; no push notification assumed)
- WorkloadInspector: scheduler replica state and failure signals
- Prober: HTTP reachability
- DomainRegistrar: DNS records and certificate state
- ChangeSetCorrector: produces corrective ChangeSets for classified failures
- StatusListener: receives narration and the Live signal

Concrete implementations live in deplorch.adapters; tests use in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import Optional

from deplorch.schemas import (
    BuildRun,
    CertificateState,
    ChangeSet,
    DomainBinding,
    LifecycleSession,
    LiveSignal,
    Narration,
    ReplicaStatus,
    WorkloadEvent,
)


class SourceControl(ABC):
    """
    Version-controlled workspace with a single remote default branch.

    Push is conditional: it succeeds only if the remote is still at
    expected_head, and never force-pushes.
    """

    @abstractmethod
    def get_head(self) -> str:
        """Return the local HEAD revision id."""
        pass

    @abstractmethod
    def protected_paths(self) -> set[str]:
        """Return the platform-owned paths that must never be modified."""
        pass

    @abstractmethod
    def apply(self, changeset: ChangeSet) -> None:
        """Write and delete files in the working tree."""
        pass

    @abstractmethod
    def restore(self, paths: set[str]) -> None:
        """Restore paths to their last-committed state, removing untracked files under them."""
        pass

    @abstractmethod
    def stage_all(self) -> list[str]:
        """Stage every working tree change and return the staged paths relative to HEAD."""
        pass

    @abstractmethod
    def discard(self, paths: list[str]) -> None:
        """
        Put exactly these paths back to HEAD, in the index and working tree.

        Paths that do not exist at HEAD are unstaged and removed. Everything
        else in the workspace is left alone.
        """
        pass

    @abstractmethod
    def reset_to(self, revision_id: str) -> None:
        """Move the local branch, index and working tree back to revision_id."""
        pass

    @abstractmethod
    def commit(self, message: str) -> str:
        """Commit staged changes and return the new revision id."""
        pass

    @abstractmethod
    def fetch_remote_head(self) -> Optional[str]:
        """Return the remote default branch revision (None if the branch does not exist)."""
        pass

    @abstractmethod
    def push(self, revision_id: str, expected_head: Optional[str]) -> None:
        """
        Push revision_id to the remote default branch.

        Raises:
            PushRejectedError: If the remote moved away from expected_head
        """
        pass

    @abstractmethod
    def rebase_onto(self, remote_head: str) -> str:
        """
        Replay local commits on top of remote_head.

        Returns:
            The rebased revision id

        Raises:
            DivergedHistoryError: If the replay conflicts
        """
        pass


class BuildProvider(ABC):
    """Remote CI that reacts to pushes."""

    @abstractmethod
    def get_run_status(self, revision_id: str) -> BuildRun:
        """
        Return the current status of the build for a revision.

        Returns a PENDING BuildRun when CI has not picked the revision up yet.
        """
        pass


class WorkloadInspector(ABC):
    """Container scheduler view of a workload."""

    @abstractmethod
    def get_replica_status(self, selector: str) -> ReplicaStatus:
        """Return desired, ready and restart counts."""
        pass

    @abstractmethod
    def get_failure_events(self, selector: str) -> list[WorkloadEvent]:
        """Return failure signals (events, waiting reasons) for the workload."""
        pass


class Prober(ABC):
    """External HTTP reachability."""

    @abstractmethod
    def http_get(self, url: str, timeout: float) -> int:
        """
        GET url and return the HTTP status code.

        Raises:
            ProbeError: If no HTTP response was received
        """
        pass


class DomainRegistrar(ABC):
    """DNS records and certificates for custom domains."""

    @abstractmethod
    def check_record(self, name: str, record_type: str, expected: str) -> bool:
        """Return True if a record of record_type at name has the expected value."""
        pass

    @abstractmethod
    def get_certificate_state(self, domain: str) -> CertificateState:
        """Return the certificate issuance state for domain."""
        pass


class ChangeSetCorrector(ABC):
    """Produces a targeted corrective ChangeSet for a classified build failure."""

    @abstractmethod
    def propose_fix(self, build_run: BuildRun, session: LifecycleSession) -> Optional[ChangeSet]:
        """
        Return a corrective ChangeSet, or None when the failure is not fixable.
        """
        pass


class StatusListener(ABC):
    """Receives the orchestrator's outward signals."""

    def on_transition(self, narration: Narration) -> None:
        """Called for every narration event, in order."""
        pass

    def on_live(self, signal: LiveSignal) -> None:
        """Called exactly once per session, on entry into LIVE."""
        pass

    def on_failed(self, session: LifecycleSession) -> None:
        """Called once on entry into FAILED."""
        pass

    def on_domain_update(self, session_id: str, binding: DomainBinding) -> None:
        """Called when a later domain re-verification changes a Live session's binding."""
        pass
