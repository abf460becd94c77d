"""Tests for RepositoryGateway and WorkspaceLocks.

Tests cover:
- Atomic replacement: deletions without a replacement never reach staging
- Protected paths: rejected before apply, restored after out-of-band edits
- Conditional push: one rebase on rejection, then DivergedHistoryError
- Per-workspace locking
"""

import threading

import pytest

from deplorch.errors import (
    DivergedHistoryError,
    EmptyChangeSetError,
    InvalidChangeSetError,
    ProtectedPathModifiedError,
    SourceControlError,
)
from deplorch.gateway import RepositoryGateway, WorkspaceLocks

from fakes import make_changeset


class TestCommit:
    """Tests for the happy path."""

    def test_commit_and_push(self, source_control):
        gateway = RepositoryGateway(source_control)
        revision = gateway.commit(make_changeset(message="Add feature"))

        assert revision == "rev-1"
        assert source_control.pushed == ["rev-1"]
        assert source_control.push_attempts == [("rev-1", "rev-0")]
        assert source_control.messages == ["Add feature"]
        assert source_control.committed["src/app.py"] == "print('v2')\n"

    def test_second_commit_expects_previous_push(self, source_control):
        gateway = RepositoryGateway(source_control)
        gateway.commit(make_changeset({"src/app.py": "v2"}))
        gateway.commit(make_changeset({"src/app.py": "v3"}))
        assert source_control.push_attempts[-1] == ("rev-2", "rev-1")

    def test_rename_commits_delete_and_write_together(self, source_control):
        """A delete plus its replacement lands in one revision."""
        gateway = RepositoryGateway(source_control)
        gateway.commit(make_changeset({"src/main.py": "print('v2')\n"}, deletes=["src/app.py"]))

        assert "src/app.py" not in source_control.committed
        assert source_control.committed["src/main.py"] == "print('v2')\n"
        assert source_control.commits == ["rev-0", "rev-1"]

    def test_empty_changeset(self, source_control):
        """Writing identical content stages nothing."""
        gateway = RepositoryGateway(source_control)
        with pytest.raises(EmptyChangeSetError):
            gateway.commit(make_changeset({"src/app.py": "print('v1')\n"}))
        assert source_control.pushed == []


class TestAtomicReplacement:
    """Deletion-only ChangeSets are rejected before anything is staged."""

    def test_delete_only_rejected_before_apply(self, source_control):
        gateway = RepositoryGateway(source_control)
        with pytest.raises(InvalidChangeSetError):
            gateway.commit(make_changeset(files={}, deletes=["src/app.py"]))

        assert source_control.applied == []
        assert source_control.working["src/app.py"] == "print('v1')\n"
        assert source_control.pushed == []


class TestProtectedPaths:
    """Platform-owned paths are never modified by a commit."""

    def test_changeset_touching_protected_path_rejected(self, source_control):
        """Rejected with the offending path; nothing applied or pushed."""
        gateway = RepositoryGateway(source_control)
        changeset = make_changeset({
            "src/app.py": "print('v2')\n",
            ".platform/deploy.yaml": "replicas: 10\n",
        })
        with pytest.raises(ProtectedPathModifiedError) as excinfo:
            gateway.commit(changeset)

        assert excinfo.value.paths == [".platform/deploy.yaml"]
        assert source_control.applied == []
        assert source_control.pushed == []
        assert source_control.commits == ["rev-0"]

    def test_out_of_band_edit_restored(self, source_control):
        """A stray edit under the protected subtree is restored, not committed."""
        source_control.edit_out_of_band(".platform/deploy.yaml", "replicas: 99\n")
        source_control.edit_out_of_band(".platform/extra.yaml", "x: 1\n")
        gateway = RepositoryGateway(source_control)

        gateway.commit(make_changeset())

        assert source_control.committed[".platform/deploy.yaml"] == "replicas: 2\n"
        assert ".platform/extra.yaml" not in source_control.committed
        assert {".platform/"} in source_control.restored

    def test_changeset_protected_paths_added(self, source_control):
        gateway = RepositoryGateway(source_control, extra_protected={"infra/"})
        changeset = make_changeset({"config/app.env": "X=1"}, protected_paths={"config/"})
        assert gateway.protected_paths(changeset) == {".platform/", "infra/", "config/"}
        with pytest.raises(ProtectedPathModifiedError):
            gateway.commit(changeset)

    def test_staged_protected_path_unstaged(self, source_control):
        """If restore could not undo a protected change, nothing is committed."""
        source_control.restore = lambda paths: None
        source_control.edit_out_of_band(".platform/deploy.yaml", "replicas: 99\n")
        source_control.edit_out_of_band("notes.txt", "mine\n")
        gateway = RepositoryGateway(source_control)

        with pytest.raises(ProtectedPathModifiedError):
            gateway.commit(make_changeset())

        assert source_control.discarded == [[".platform/deploy.yaml", "src/app.py"]]
        assert source_control.working["src/app.py"] == "print('v1')\n"
        assert source_control.working[".platform/deploy.yaml"] == "replicas: 2\n"
        assert source_control.working["notes.txt"] == "mine\n"
        assert source_control.pushed == []


class TestCleanup:
    """A failed commit never leaves its changes in the workspace."""

    def test_failed_commit_discards_only_changeset_paths(self, source_control):
        def broken_commit(message):
            raise SourceControlError("git commit failed: hook rejected")

        source_control.commit = broken_commit
        source_control.edit_out_of_band("notes.txt", "mine\n")
        gateway = RepositoryGateway(source_control)

        with pytest.raises(SourceControlError):
            gateway.commit(make_changeset({"src/app.py": "v2", "src/new.py": "x"}))

        assert source_control.discarded == [["src/app.py", "src/new.py"]]
        assert source_control.working["src/app.py"] == "print('v1')\n"
        assert "src/new.py" not in source_control.working
        assert source_control.working["notes.txt"] == "mine\n"

    def test_diverged_push_resets_to_pre_commit_head(self, source_control):
        source_control.reject_pushes = 2
        gateway = RepositoryGateway(source_control)

        with pytest.raises(DivergedHistoryError):
            gateway.commit(make_changeset({"src/app.py": "v2"}))

        assert source_control.commits == ["rev-0"]
        assert source_control.committed["src/app.py"] == "print('v1')\n"
        assert source_control.working == source_control.committed

    def test_next_commit_after_divergence_carries_only_its_own_change(self, source_control):
        source_control.reject_pushes = 2
        gateway = RepositoryGateway(source_control)
        with pytest.raises(DivergedHistoryError):
            gateway.commit(make_changeset({"src/app.py": "v2"}))

        revision = gateway.commit(make_changeset({"docs/readme.md": "hello\n"}))

        assert source_control.pushed == [revision]
        assert source_control.push_attempts[-1] == (revision, "remote-2")
        assert source_control.committed["src/app.py"] == "print('v1')\n"
        assert source_control.committed["docs/readme.md"] == "hello\n"


class TestPush:
    """Tests for conditional push and the single rebase retry."""

    def test_rejected_push_rebased_once(self, source_control):
        source_control.reject_pushes = 1
        gateway = RepositoryGateway(source_control)

        revision = gateway.commit(make_changeset())

        assert revision == "rev-1-rebased"
        assert source_control.pushed == ["rev-1-rebased"]
        assert source_control.push_attempts == [("rev-1", "rev-0"), ("rev-1-rebased", "remote-1")]

    def test_remote_moved_externally(self, source_control):
        gateway = RepositoryGateway(source_control)
        gateway.commit(make_changeset({"src/app.py": "v2"}))
        source_control.remote_head = "someone-else"

        revision = gateway.commit(make_changeset({"src/app.py": "v3"}))
        assert revision == "rev-2-rebased"
        assert source_control.remote_head == "rev-2-rebased"

    def test_second_rejection_is_diverged(self, source_control):
        source_control.reject_pushes = 2
        gateway = RepositoryGateway(source_control)

        with pytest.raises(DivergedHistoryError) as excinfo:
            gateway.commit(make_changeset())
        assert excinfo.value.remote_head == "remote-1"
        assert len(source_control.push_attempts) == 2
        assert source_control.pushed == []

    def test_rebase_conflict_is_diverged(self, source_control):
        source_control.reject_pushes = 1
        source_control.rebase_conflict = True
        gateway = RepositoryGateway(source_control)

        with pytest.raises(DivergedHistoryError):
            gateway.commit(make_changeset())
        assert len(source_control.push_attempts) == 1

    def test_never_pushes_without_expected_head(self, source_control):
        """Every push names the head it expects to replace."""
        gateway = RepositoryGateway(source_control)
        gateway.commit(make_changeset())
        assert all(expected is not None for _, expected in source_control.push_attempts)


class TestWorkspaceLocks:
    """Tests for per-workspace mutual exclusion."""

    def test_acquire_release(self):
        locks = WorkspaceLocks()
        locks.acquire("/srv/a")
        assert locks.is_locked("/srv/a")
        assert not locks.is_locked("/srv/b")
        locks.release("/srv/a")
        assert not locks.is_locked("/srv/a")

    def test_hold_context_manager(self):
        locks = WorkspaceLocks()
        with locks.hold("/srv/a"):
            assert locks.is_locked("/srv/a")
        assert not locks.is_locked("/srv/a")

    def test_second_holder_waits(self):
        """A second acquirer blocks until the first releases."""
        locks = WorkspaceLocks()
        order = []
        locks.acquire("/srv/a")

        def second():
            with locks.hold("/srv/a"):
                order.append("second")

        worker = threading.Thread(target=second)
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        order.append("first-done")
        locks.release("/srv/a")
        worker.join(timeout=5)

        assert order == ["first-done", "second"]

    def test_different_workspaces_independent(self):
        locks = WorkspaceLocks()
        locks.acquire("/srv/a")
        with locks.hold("/srv/b"):
            assert locks.is_locked("/srv/b")
        locks.release("/srv/a")
