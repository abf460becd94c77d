"""
BuildMonitor - observe the remote CI run for a pushed revision.

Pushing a revision is what triggers CI, so the monitor only observes: it
polls BuildProvider at a fixed interval until the run is terminal or the
phase timeout passes. Failed runs are classified from their log excerpt.

The attempt count lives on the session's RetryBudget. A revision whose
build already failed is never observed again, so a deterministic failure
cannot loop: each retry needs a corrective ChangeSet and a new revision.
"""

import logging
import time
from typing import Optional

from deplorch.classify import classify_build_log
from deplorch.errors import (
    BuildExhaustedError,
    BuildTimeoutError,
    TransientError,
    UnmodifiedRevisionError,
)
from deplorch.interfaces import BuildProvider
from deplorch.polling import CancellationToken, Clock, Deadline, Sleeper, wait
from deplorch.schemas import BuildRun, BuildStatus, RetryBudget

logger = logging.getLogger(__name__)


class BuildMonitor:
    """Polls a BuildProvider and applies the bounded retry policy."""

    def __init__(
        self,
        provider: BuildProvider,
        poll_interval: float = 10.0,
        timeout: float = 900.0,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleeper] = None,
    ):
        self.provider = provider
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        revision_id: str,
        budget: RetryBudget,
        cancel: Optional[CancellationToken] = None,
    ) -> BuildRun:
        """
        Observe the build for revision_id until it is terminal.

        Re-observing the budget's current in-flight revision (e.g. after a
        resume or a timeout) does not consume another attempt.

        Args:
            revision_id: Pushed revision
            budget: The session's build RetryBudget (mutated)
            cancel: Checked at every poll boundary

        Returns:
            The terminal BuildRun. A FAILED run is returned with its
            classification while attempts remain.

        Raises:
            UnmodifiedRevisionError: revision_id already failed in this session
            BuildExhaustedError: This failure used the last attempt
            BuildTimeoutError: No terminal status before the timeout
            SessionCancelledError: Cancelled at a poll boundary
        """
        if revision_id in budget.failed_revisions:
            raise UnmodifiedRevisionError(revision_id)

        if budget.current_revision == revision_id:
            attempt = budget.used
        else:
            if budget.exhausted:
                raise BuildExhaustedError(attempts=budget.used)
            attempt = budget.consume(revision_id)

        logger.info(
            f"Observing build for {revision_id} (attempt {attempt}/{budget.limit})",
            extra={"stage": "build", "event": "build_observe", "metadata": {"revision_id": revision_id, "attempt": attempt}},
        )

        build_run = BuildRun(revision_id=revision_id, attempt=attempt)
        deadline = Deadline(self.timeout, self._clock)
        while True:
            if cancel is not None:
                cancel.check("build poll")
            try:
                observed = self.provider.get_run_status(revision_id)
            except TransientError as e:
                logger.warning(f"Build status for {revision_id} unavailable: {e}")
            else:
                build_run = build_run.advance(observed)
                if build_run.status.is_terminal:
                    break
            if deadline.expired:
                logger.warning(
                    f"Build for {revision_id} still {build_run.status.value} after {self.timeout:g}s",
                    extra={"stage": "build", "event": "build_timeout", "metadata": {"revision_id": revision_id}},
                )
                raise BuildTimeoutError(revision_id, self.timeout)
            wait(min(self.poll_interval, deadline.remaining), cancel, self._sleep, "build poll")

        if build_run.status == BuildStatus.SUCCEEDED:
            logger.info(
                f"Build for {revision_id} succeeded",
                extra={"stage": "build", "event": "build_succeeded", "metadata": {"revision_id": revision_id}},
            )
            return build_run

        reason = classify_build_log(build_run.log_excerpt)
        build_run = build_run.classified(reason)
        budget.record_failure(revision_id, reason.value)
        logger.warning(
            f"Build for {revision_id} failed: {reason.value} (attempt {attempt}/{budget.limit})",
            extra={"stage": "build", "event": "build_failed", "metadata": {"revision_id": revision_id, "reason": reason.value}},
        )
        if budget.exhausted:
            raise BuildExhaustedError(build_run, attempts=budget.used)
        return build_run
