"""
Git-backed SourceControl.

Runs the git CLI in the workspace via subprocess. The remote default branch
is only ever advanced with a plain (fast-forward) push; a push whose remote
moved away from the expected head is reported as PushRejectedError so the
gateway can rebase once and retry.
"""

import logging
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from deplorch.errors import (
    DivergedHistoryError,
    PermanentError,
    PushRejectedError,
    SourceControlError,
)
from deplorch.interfaces import SourceControl
from deplorch.schemas import ChangeSet

logger = logging.getLogger(__name__)

# stderr fragments git prints when the remote is not a fast-forward of ours
_REJECTED_MARKERS = ("[rejected]", "non-fast-forward", "fetch first", "stale info")


class GitSourceControl(SourceControl):
    """SourceControl over a local git checkout with one remote."""

    def __init__(
        self,
        workspace: Path | str,
        remote: str = "origin",
        branch: str = "main",
        protected_paths: Optional[Iterable[str]] = None,
        author_name: str = "deplorch",
        author_email: str = "deplorch@localhost",
        git_binary: str = "git",
    ):
        self.workspace = Path(workspace)
        self.remote = remote
        self.branch = branch
        self._protected = set(protected_paths or [])
        self.author_name = author_name
        self.author_email = author_email
        self.git_binary = git_binary

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        command = [self.git_binary, *args]
        logger.debug(f"Executing: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                cwd=self.workspace,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"git executable not found: {self.git_binary}") from e

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.error(
                f"git {args[0]} failed with exit code {result.returncode}",
                extra={
                    "stage": "commit",
                    "event": "git_error",
                    "metadata": {"args": list(args), "exit_code": result.returncode, "stderr": stderr[:1000]},
                },
            )
            raise SourceControlError(f"git {' '.join(args)} failed: {stderr[:500]}")
        return result

    def _has_head(self) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", "HEAD", check=False).returncode == 0

    def get_head(self) -> str:
        return self._git("rev-parse", "HEAD").stdout.strip()

    def protected_paths(self) -> set[str]:
        return set(self._protected)

    def apply(self, changeset: ChangeSet) -> None:
        for op in changeset.ops:
            target = self.workspace / op.path
            if op.delete:
                if target.is_dir():
                    raise SourceControlError(f"Refusing to delete directory {op.path}")
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(op.content, encoding="utf-8")
        logger.debug(f"Applied {len(changeset.ops)} file operations to {self.workspace}")

    def restore(self, paths: set[str]) -> None:
        if not paths:
            return
        specs = sorted(p.rstrip("/") for p in paths)
        if self._has_head():
            tracked = self._git("ls-tree", "-r", "--name-only", "HEAD", "--", *specs).stdout.splitlines()
            if tracked:
                self._git("checkout", "HEAD", "--", *tracked)
        self._git("clean", "-fdq", "--", *specs)

    def stage_all(self) -> list[str]:
        self._git("add", "-A")
        output = self._git("diff", "--cached", "--name-only", "--no-renames").stdout
        return [line for line in output.splitlines() if line.strip()]

    def discard(self, paths: list[str]) -> None:
        if not paths:
            return
        tracked = set()
        if self._has_head():
            tracked = set(self._git("ls-tree", "-r", "--name-only", "HEAD", "--", *paths).stdout.splitlines())
        if tracked:
            self._git("checkout", "HEAD", "--", *sorted(tracked))
        untracked = sorted(p for p in paths if p not in tracked)
        if untracked:
            self._git("rm", "-q", "--cached", "--ignore-unmatch", "--", *untracked)
            for path in untracked:
                target = self.workspace / path
                if target.is_file() or target.is_symlink():
                    target.unlink()
        logger.debug(f"Discarded {len(paths)} paths in {self.workspace}")

    def reset_to(self, revision_id: str) -> None:
        self._git("reset", "-q", "--hard", revision_id)
        logger.info(
            f"Reset {self.branch} to {revision_id[:12]}",
            extra={"stage": "commit", "event": "git_reset", "metadata": {"revision_id": revision_id}},
        )

    def commit(self, message: str) -> str:
        self._git(
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "commit", "-q", "-m", message,
        )
        revision_id = self.get_head()
        logger.info(
            f"Committed {revision_id[:12]}",
            extra={"stage": "commit", "event": "git_commit", "metadata": {"revision_id": revision_id}},
        )
        return revision_id

    def fetch_remote_head(self) -> Optional[str]:
        output = self._git("ls-remote", self.remote, f"refs/heads/{self.branch}").stdout.strip()
        if not output:
            return None
        return output.split()[0]

    def push(self, revision_id: str, expected_head: Optional[str]) -> None:
        current = self.fetch_remote_head()
        if current != expected_head:
            raise PushRejectedError(
                expected_head,
                f"Remote {self.remote}/{self.branch} is at {current}, expected {expected_head}",
            )

        result = self._git("push", "--porcelain", self.remote, f"{revision_id}:refs/heads/{self.branch}", check=False)
        if result.returncode == 0:
            logger.info(
                f"Pushed {revision_id[:12]} to {self.remote}/{self.branch}",
                extra={"stage": "commit", "event": "git_push", "metadata": {"revision_id": revision_id}},
            )
            return

        output = f"{result.stdout}\n{result.stderr}"
        if any(marker in output for marker in _REJECTED_MARKERS):
            raise PushRejectedError(expected_head)
        raise SourceControlError(f"git push failed: {(result.stderr or '').strip()[:500]}")

    def rebase_onto(self, remote_head: str) -> str:
        self._git("fetch", "-q", self.remote, self.branch)
        result = self._git(
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "rebase", "-q", remote_head,
            check=False,
        )
        if result.returncode != 0:
            self._git("rebase", "--abort", check=False)
            raise DivergedHistoryError(
                remote_head,
                f"Rebase onto {remote_head} conflicted: {(result.stderr or result.stdout).strip()[:500]}",
            )
        return self.get_head()
