"""
Error classes for deplorch.

These error types enable retry classification at phase boundaries:
- TransientError: Safe to retry within the phase's own bounded policy
  (timeouts, temporary unreachability, rejected pushes)
- PermanentError: Do not retry (invalid ChangeSet, protected path touched,
  exhausted retry budget)

Error handling contract:
- Classification travels with the error value as attributes
- Every error can be serialized with to_dict() for the session record
- Only the presentation layer decides how much of it to show
"""

from typing import Any, Optional


class DeplorchError(Exception):
    """Base exception for deplorch."""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for the session record."""
        return {"type": type(self).__name__, "message": str(self)}


class TransientError(DeplorchError):
    """
    Transient error - safe to retry.

    Examples:
    - Build still running when the phase timeout hit
    - Endpoint not answering yet
    - Remote branch moved under a push
    """
    pass


class PermanentError(DeplorchError):
    """
    Permanent error - do not retry.

    Examples:
    - ChangeSet deletes a file without replacing it
    - ChangeSet touches the protected subtree
    - Retry budget exhausted
    """
    pass


# =============================================================================
# Input errors
# =============================================================================


class InvalidChangeSetError(PermanentError):
    """ChangeSet is malformed or deletes files without a replacement."""
    pass


class EmptyChangeSetError(PermanentError):
    """Nothing is staged relative to HEAD."""
    pass


class ProtectedPathModifiedError(PermanentError):
    """A staged change touches the platform-owned subtree."""

    def __init__(self, paths: list[str]):
        self.paths = sorted(paths)
        super().__init__(f"Protected paths modified: {', '.join(self.paths)}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["paths"] = self.paths
        return result


class UnmodifiedRevisionError(PermanentError):
    """A build retry was requested for a revision that already failed."""

    def __init__(self, revision_id: str):
        self.revision_id = revision_id
        super().__init__(
            f"Revision {revision_id} already failed; a corrective ChangeSet is required"
        )


# =============================================================================
# Source control
# =============================================================================


class SourceControlError(PermanentError):
    """A source control command failed."""
    pass


class PushRejectedError(TransientError):
    """The remote default branch moved since the last known head."""

    def __init__(self, expected_head: Optional[str], message: str = ""):
        self.expected_head = expected_head
        super().__init__(message or f"Push rejected: remote no longer at {expected_head}")


class DivergedHistoryError(PermanentError):
    """The push was still rejected after rebasing onto the new remote head."""

    def __init__(self, remote_head: Optional[str], message: str = ""):
        self.remote_head = remote_head
        super().__init__(message or f"Local history diverged from remote head {remote_head}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["remote_head"] = self.remote_head
        return result


# =============================================================================
# Build
# =============================================================================


class BuildTimeoutError(TransientError):
    """The build did not reach a terminal status before the phase timeout."""

    def __init__(self, revision_id: str, timeout: float):
        self.revision_id = revision_id
        self.timeout = timeout
        super().__init__(f"Build for {revision_id} not finished after {timeout:g}s")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["revision_id"] = self.revision_id
        result["timeout"] = self.timeout
        return result


class BuildExhaustedError(PermanentError):
    """The build retry budget is used up."""

    def __init__(self, build_run: Any = None, attempts: int = 0, message: str = ""):
        self.build_run = build_run
        self.attempts = attempts
        self.reason = build_run.failure_reason if build_run is not None else None
        if not message:
            reason = self.reason.value if self.reason is not None else "unknown"
            message = f"Build failed after {attempts} attempts (last reason: {reason})"
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        result["reason"] = self.reason.value if self.reason is not None else None
        if self.build_run is not None:
            result["build_run"] = self.build_run.to_dict()
        return result


class BuildUnfixableError(PermanentError):
    """No corrective ChangeSet could be produced for a classified failure."""

    def __init__(self, build_run: Any):
        self.build_run = build_run
        self.reason = build_run.failure_reason
        super().__init__(
            f"Build failure classified as {self.reason.value} has no corrective change"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        result["build_run"] = self.build_run.to_dict()
        return result


# =============================================================================
# Deployment
# =============================================================================


class ProbeError(TransientError):
    """The reachability probe could not get an HTTP response."""
    pass


class UnreachableError(TransientError):
    """The endpoint never answered 2xx within the probe attempts."""

    def __init__(self, url: str, attempts: int, last_result: Optional[str] = None):
        self.url = url
        self.attempts = attempts
        self.last_result = last_result
        super().__init__(
            f"{url} unreachable after {attempts} attempts (last result: {last_result})"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result.update({"url": self.url, "attempts": self.attempts, "last_result": self.last_result})
        return result


class RolloutFailedError(TransientError):
    """Replicas never became Ready; carries the classified runtime cause."""

    def __init__(self, reason: Any, events: Optional[list] = None, message: str = ""):
        self.reason = reason
        self.events = list(events or [])
        super().__init__(message or f"Rollout did not become ready: {reason.value}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["reason"] = self.reason.value
        result["events"] = [e.to_dict() for e in self.events]
        return result


class DeployExhaustedError(PermanentError):
    """Deployment verification failed; the session gets no further attempts."""

    def __init__(self, attempts: int, last_error: Optional[DeplorchError] = None):
        self.attempts = attempts
        self.last_error = last_error
        self.reason = getattr(last_error, "reason", None)
        super().__init__(f"Deployment not verified ({attempts} probes): {last_error}")

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        result["reason"] = self.reason.value if self.reason is not None else None
        if self.last_error is not None:
            result["last_error"] = self.last_error.to_dict()
        return result


# =============================================================================
# Domain
# =============================================================================


class DomainPendingError(TransientError):
    """Domain checks did not all pass; the binding stays Pending."""

    def __init__(self, binding: Any, failed_checks: list[str]):
        self.binding = binding
        self.failed_checks = list(failed_checks)
        super().__init__(
            f"Domain {binding.hostname} pending: {', '.join(self.failed_checks)}"
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["hostname"] = self.binding.hostname
        result["failed_checks"] = self.failed_checks
        return result


# =============================================================================
# Session
# =============================================================================


class SessionCancelledError(DeplorchError):
    """The cancellation token fired; observation stopped, remote jobs untouched."""
    pass


class SessionNotFoundError(DeplorchError):
    """No session with the given id exists in the store."""
    pass
