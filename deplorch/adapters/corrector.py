"""
ChangeSetCorrector implementations.

CommandCorrector hands the failed build to an external command (a code
assistant, a repair script) and reads back a corrective ChangeSet.
"""

import json
import logging
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from deplorch.changeset_io import parse_changeset
from deplorch.errors import PermanentError
from deplorch.interfaces import ChangeSetCorrector
from deplorch.schemas import BuildRun, ChangeSet, LifecycleSession

logger = logging.getLogger(__name__)


class NullCorrector(ChangeSetCorrector):
    """Never proposes a fix; every failed build is unfixable."""

    def propose_fix(self, build_run: BuildRun, session: LifecycleSession) -> Optional[ChangeSet]:
        return None


class CommandCorrector(ChangeSetCorrector):
    """
    Runs a command with the failure as JSON on stdin.

    The command prints a ChangeSet document (YAML or JSON) on stdout. Empty
    output or a non-zero exit means no fix is available.
    """

    def __init__(self, command: str, timeout: float = 300.0):
        self.command = command
        self.timeout = timeout

    def propose_fix(self, build_run: BuildRun, session: LifecycleSession) -> Optional[ChangeSet]:
        payload = {
            "session_id": session.session_id,
            "workspace": session.workspace,
            "revision_id": session.revision_id,
            "build_run": build_run.to_dict(),
            "changeset": session.changeset.to_dict(),
        }
        logger.info(
            f"Requesting corrective ChangeSet for {build_run.failure_reason.value if build_run.failure_reason else 'unknown'}",
            extra={"stage": "build", "event": "correction_requested", "metadata": {"command": self.command}},
        )
        try:
            result = subprocess.run(
                shlex.split(self.command),
                input=json.dumps(payload),
                cwd=session.workspace,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"Corrector command not found: {self.command}") from e
        except subprocess.TimeoutExpired:
            logger.warning(f"Corrector timed out after {self.timeout:g}s")
            return None

        if result.returncode != 0:
            logger.warning(
                f"Corrector exited with {result.returncode}",
                extra={
                    "stage": "build",
                    "event": "correction_failed",
                    "metadata": {"stderr": (result.stderr or "")[:1000]},
                },
            )
            return None
        if not result.stdout.strip():
            return None
        return parse_changeset(result.stdout, base_dir=Path(session.workspace))
