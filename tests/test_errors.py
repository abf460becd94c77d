"""Tests for deplorch error classes.

Tests cover:
- TransientError / PermanentError hierarchy
- Classification attributes carried by concrete errors
- to_dict() serialization for the session record
"""

import pytest

from deplorch.errors import (
    BuildExhaustedError,
    BuildTimeoutError,
    BuildUnfixableError,
    DeplorchError,
    DeployExhaustedError,
    DivergedHistoryError,
    DomainPendingError,
    EmptyChangeSetError,
    InvalidChangeSetError,
    PermanentError,
    ProbeError,
    ProtectedPathModifiedError,
    PushRejectedError,
    RolloutFailedError,
    SessionCancelledError,
    TransientError,
    UnmodifiedRevisionError,
    UnreachableError,
)
from deplorch.schemas import (
    BuildRun,
    BuildStatus,
    FailureReason,
    RuntimeFailureReason,
    WorkloadEvent,
)

from fakes import make_binding


class TestHierarchy:
    """Tests for the transient/permanent split."""

    def test_base_is_exception(self):
        """DeplorchError should be an Exception."""
        assert issubclass(DeplorchError, Exception)

    @pytest.mark.parametrize("cls", [
        PushRejectedError, BuildTimeoutError, ProbeError, UnreachableError,
        RolloutFailedError, DomainPendingError,
    ])
    def test_transient(self, cls):
        """Retryable conditions are TransientErrors."""
        assert issubclass(cls, TransientError)
        assert not issubclass(cls, PermanentError)

    @pytest.mark.parametrize("cls", [
        InvalidChangeSetError, EmptyChangeSetError, ProtectedPathModifiedError,
        UnmodifiedRevisionError, DivergedHistoryError, BuildExhaustedError,
        BuildUnfixableError, DeployExhaustedError,
    ])
    def test_permanent(self, cls):
        """Input and exhaustion errors are PermanentErrors."""
        assert issubclass(cls, PermanentError)

    def test_cancelled_is_neither(self):
        """Cancellation is not a failure classification."""
        assert issubclass(SessionCancelledError, DeplorchError)
        assert not issubclass(SessionCancelledError, (TransientError, PermanentError))

    def test_can_be_caught_as_base(self):
        """Concrete errors can be caught as DeplorchError."""
        with pytest.raises(DeplorchError):
            raise EmptyChangeSetError("nothing staged")


class TestSerialization:
    """Tests for to_dict() on concrete errors."""

    def test_base_to_dict(self):
        """Base errors serialize type and message."""
        assert DeplorchError("boom").to_dict() == {"type": "DeplorchError", "message": "boom"}

    def test_protected_paths_sorted(self):
        """ProtectedPathModifiedError carries sorted paths."""
        error = ProtectedPathModifiedError([".platform/b", ".platform/a"])
        assert error.paths == [".platform/a", ".platform/b"]
        assert error.to_dict()["paths"] == [".platform/a", ".platform/b"]

    def test_build_exhausted_carries_reason(self):
        """BuildExhaustedError exposes the last run's classification."""
        run = BuildRun(
            revision_id="abc",
            status=BuildStatus.FAILED,
            attempt=3,
            failure_reason=FailureReason.TYPE_CHECK_FAILED,
        )
        error = BuildExhaustedError(run, attempts=3)
        assert error.reason == FailureReason.TYPE_CHECK_FAILED
        data = error.to_dict()
        assert data["reason"] == "type_check_failed"
        assert data["attempts"] == 3
        assert data["build_run"]["revision_id"] == "abc"

    def test_build_exhausted_without_run(self):
        """BuildExhaustedError without a run has no reason."""
        error = BuildExhaustedError(attempts=3)
        assert error.reason is None
        assert error.to_dict()["reason"] is None

    def test_deploy_exhausted_carries_runtime_reason(self):
        """DeployExhaustedError takes its reason from the last rollout failure."""
        last = RolloutFailedError(RuntimeFailureReason.CRASH_LOOP, [WorkloadEvent("CrashLoopBackOff")])
        error = DeployExhaustedError(3, last)
        assert error.reason == RuntimeFailureReason.CRASH_LOOP
        data = error.to_dict()
        assert data["reason"] == "crash_loop"
        assert data["last_error"]["events"][0]["reason"] == "CrashLoopBackOff"

    def test_deploy_exhausted_after_unreachable(self):
        """Unreachable endpoints carry no runtime reason."""
        error = DeployExhaustedError(3, UnreachableError("https://x.test", 3, "HTTP 503"))
        assert error.reason is None
        assert error.to_dict()["last_error"]["last_result"] == "HTTP 503"

    def test_domain_pending(self):
        """DomainPendingError names the failing checks."""
        error = DomainPendingError(make_binding(), ["ownership_record", "certificate"])
        assert "shop.example.com" in str(error)
        assert error.to_dict()["failed_checks"] == ["ownership_record", "certificate"]

    def test_unmodified_revision_message(self):
        """UnmodifiedRevisionError asks for a corrective change."""
        error = UnmodifiedRevisionError("abc")
        assert error.revision_id == "abc"
        assert "corrective" in str(error)
