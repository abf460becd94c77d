"""
RepositoryGateway - safe commit and push against a workspace.

Commit flow:
1. Validate the ChangeSet (atomic replacement rule) before touching files
2. Reject ops that target the protected subtree
3. Apply ops, then restore the protected subtree to HEAD
4. Stage everything; refuse if a staged path is still protected
5. Refuse an empty stage (nothing to do is not a failure of the push)
6. Commit and push conditionally on the last-known remote head; on a
   rejected push, rebase onto the new remote head and push exactly once more

A failure before the commit puts back only the paths the ChangeSet touched;
a failure after it resets the local branch to the pre-commit head, so a
failed session never leaves its changes behind for the next one.

WorkspaceLocks serializes sessions per workspace. A second session for the
same workspace blocks until the first releases its lock.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from deplorch.errors import (
    DeplorchError,
    DivergedHistoryError,
    EmptyChangeSetError,
    ProtectedPathModifiedError,
    PushRejectedError,
)
from deplorch.interfaces import SourceControl
from deplorch.schemas import ChangeSet, is_protected

logger = logging.getLogger(__name__)


class WorkspaceLocks:
    """Per-workspace mutual exclusion for sessions in this process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, workspace: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(workspace)
            if lock is None:
                lock = threading.Lock()
                self._locks[workspace] = lock
            return lock

    def acquire(self, workspace: str) -> None:
        """Block until the workspace lock is held."""
        lock = self._lock_for(workspace)
        if not lock.acquire(blocking=False):
            logger.info(
                f"Workspace {workspace} busy; queued behind running session",
                extra={"stage": "lock", "event": "lock_queued", "metadata": {"workspace": workspace}},
            )
            lock.acquire()
        logger.debug(f"Acquired workspace lock {workspace}")

    def release(self, workspace: str) -> None:
        lock = self._lock_for(workspace)
        if lock.locked():
            lock.release()
            logger.debug(f"Released workspace lock {workspace}")

    def is_locked(self, workspace: str) -> bool:
        return self._lock_for(workspace).locked()

    @contextmanager
    def hold(self, workspace: str) -> Iterator[None]:
        self.acquire(workspace)
        try:
            yield
        finally:
            self.release(workspace)


class RepositoryGateway:
    """
    Commits ChangeSets to one workspace and pushes them to the remote
    default branch.
    """

    def __init__(self, source_control: SourceControl, extra_protected: Optional[set[str]] = None):
        self.source_control = source_control
        self.extra_protected = set(extra_protected or ())
        self._known_remote_head: Optional[str] = None

    def protected_paths(self, changeset: Optional[ChangeSet] = None) -> set[str]:
        paths = set(self.source_control.protected_paths()) | self.extra_protected
        if changeset is not None:
            paths |= set(changeset.protected_paths)
        return paths

    def commit(self, changeset: ChangeSet) -> str:
        """
        Apply, commit and push a ChangeSet.

        Args:
            changeset: The delivery unit to commit

        Returns:
            The revision id now at the head of the remote default branch

        Raises:
            InvalidChangeSetError: ChangeSet fails validation (nothing staged)
            ProtectedPathModifiedError: A change touches the protected subtree (no push)
            EmptyChangeSetError: Nothing differs from HEAD
            DivergedHistoryError: Push still rejected after one rebase
        """
        changeset.validate()
        protected = self.protected_paths(changeset)

        touched = changeset.touched_protected(protected)
        if touched:
            logger.error(
                f"ChangeSet touches protected paths: {touched}",
                extra={"stage": "commit", "event": "protected_path_rejected", "metadata": {"paths": touched}},
            )
            raise ProtectedPathModifiedError(touched)

        if self._known_remote_head is None:
            self._known_remote_head = self.source_control.fetch_remote_head()

        base_revision = self.source_control.get_head()
        cleanup = list(changeset.paths)
        try:
            self.source_control.apply(changeset)
            self.source_control.restore(protected)
            staged = self.source_control.stage_all()

            still_protected = [p for p in staged if is_protected(p, protected)]
            if still_protected:
                cleanup += still_protected
                logger.error(
                    f"Staged diff still touches protected paths after restore: {still_protected}",
                    extra={"stage": "commit", "event": "protected_path_rejected", "metadata": {"paths": still_protected}},
                )
                raise ProtectedPathModifiedError(still_protected)

            if not staged:
                raise EmptyChangeSetError("Nothing staged relative to HEAD")

            revision_id = self.source_control.commit(changeset.message)
        except DeplorchError:
            self.source_control.discard(sorted(set(cleanup)))
            raise

        logger.info(
            f"Committed {len(staged)} paths as {revision_id}",
            extra={"stage": "commit", "event": "committed", "metadata": {"revision_id": revision_id, "paths": staged}},
        )
        try:
            return self._push(revision_id)
        except DeplorchError:
            logger.warning(
                f"Push of {revision_id} failed; resetting workspace to {base_revision}",
                extra={"stage": "commit", "event": "commit_reverted", "metadata": {"revision_id": base_revision}},
            )
            self.source_control.reset_to(base_revision)
            self._known_remote_head = None
            raise

    def _push(self, revision_id: str) -> str:
        try:
            self.source_control.push(revision_id, self._known_remote_head)
        except PushRejectedError as e:
            logger.warning(
                f"Push of {revision_id} rejected ({e}); rebasing onto new remote head",
                extra={"stage": "commit", "event": "push_rejected", "metadata": {"revision_id": revision_id}},
            )
            remote_head = self.source_control.fetch_remote_head()
            if remote_head is None:
                raise DivergedHistoryError(None, "Remote default branch disappeared during push") from e
            revision_id = self.source_control.rebase_onto(remote_head)
            try:
                self.source_control.push(revision_id, remote_head)
            except PushRejectedError as retry_error:
                raise DivergedHistoryError(remote_head) from retry_error

        self._known_remote_head = revision_id
        logger.info(
            f"Pushed {revision_id}",
            extra={"stage": "commit", "event": "pushed", "metadata": {"revision_id": revision_id}},
        )
        return revision_id
