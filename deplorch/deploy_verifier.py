"""
DeploymentVerifier - confirm a rollout is healthy and reachable.

Two independent checks, both required at the same time:
(a) scheduler state: every desired replica Ready, zero restarts
(b) reachability: GET on the public endpoint answers 2xx

Scheduler state is polled every poll_interval up to rollout_timeout. The
reachability probe only starts once (a) holds, and is retried probe_attempts
times (at most three) with a fixed backoff. Callers holding a per-session
probe budget pass max_probes so repeated calls never exceed it. A 2xx is
only accepted if a fresh scheduler read still shows (a); a flip in between
is "not yet verified".

Verification is read-only: calling verify() again on an unchanged healthy
workload succeeds again with no side effects.
"""

import logging
import time
from typing import Callable, Optional

from deplorch.classify import classify_workload_events
from deplorch.errors import ProbeError, RolloutFailedError, TransientError, UnreachableError
from deplorch.interfaces import Prober, WorkloadInspector
from deplorch.polling import CancellationToken, Clock, Deadline, Sleeper, wait
from deplorch.schemas import MAX_ATTEMPTS, DeploymentState, ProbeResult, RuntimeFailureReason, WorkloadEvent

logger = logging.getLogger(__name__)


class DeploymentVerifier:
    """Verifies scheduler health and public reachability of a workload."""

    def __init__(
        self,
        inspector: WorkloadInspector,
        prober: Prober,
        poll_interval: float = 5.0,
        rollout_timeout: float = 180.0,
        probe_timeout: float = 10.0,
        probe_attempts: int = 3,
        probe_backoff: float = 5.0,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleeper] = None,
    ):
        if not 1 <= probe_attempts <= MAX_ATTEMPTS:
            raise ValueError(f"probe_attempts must be between 1 and {MAX_ATTEMPTS}")
        self.inspector = inspector
        self.prober = prober
        self.poll_interval = poll_interval
        self.rollout_timeout = rollout_timeout
        self.probe_timeout = probe_timeout
        self.probe_attempts = probe_attempts
        self.probe_backoff = probe_backoff
        self._clock = clock
        self._sleep = sleep

    def observe(self, selector: str) -> DeploymentState:
        """Take a fresh scheduler snapshot (never cached)."""
        return DeploymentState(selector=selector, replicas=self.inspector.get_replica_status(selector))

    def probe(self, url: str) -> ProbeResult:
        """Run one reachability probe."""
        try:
            return ProbeResult(status_code=self.prober.http_get(url, self.probe_timeout))
        except ProbeError as e:
            return ProbeResult(error=str(e))

    def _failure_events(self, selector: str) -> list[WorkloadEvent]:
        try:
            return self.inspector.get_failure_events(selector)
        except TransientError as e:
            logger.warning(f"Failure events for {selector} unavailable: {e}")
            return []

    def wait_for_rollout(
        self,
        selector: str,
        cancel: Optional[CancellationToken] = None,
    ) -> DeploymentState:
        """
        Poll scheduler state until all desired replicas are healthy.

        Raises:
            RolloutFailedError: Not healthy by rollout_timeout; carries the
                classified failure signal
            SessionCancelledError: Cancelled at a poll boundary
        """
        deadline = Deadline(self.rollout_timeout, self._clock)
        while True:
            if cancel is not None:
                cancel.check("rollout poll")
            state: Optional[DeploymentState] = None
            try:
                state = self.observe(selector)
            except TransientError as e:
                logger.warning(f"Scheduler state for {selector} unavailable: {e}")
            if state is not None and state.replicas.healthy:
                return state
            if deadline.expired:
                events = self._failure_events(selector)
                reason = classify_workload_events(events) or RuntimeFailureReason.UNKNOWN
                logger.warning(
                    f"Workload {selector} not ready after {self.rollout_timeout:g}s: {reason.value}",
                    extra={
                        "stage": "deploy",
                        "event": "rollout_failed",
                        "metadata": {
                            "selector": selector,
                            "reason": reason.value,
                            "replicas": state.replicas.to_dict() if state is not None else None,
                        },
                    },
                )
                raise RolloutFailedError(reason, events)
            wait(min(self.poll_interval, deadline.remaining), cancel, self._sleep, "rollout poll")

    def verify(
        self,
        selector: str,
        endpoint_url: str,
        cancel: Optional[CancellationToken] = None,
        on_scheduler_ready: Optional[Callable[[DeploymentState], None]] = None,
        max_probes: Optional[int] = None,
        on_probe: Optional[Callable[[ProbeResult], None]] = None,
    ) -> DeploymentState:
        """
        Verify the workload is healthy and reachable at the same time.

        Args:
            selector: Workload selector
            endpoint_url: Public endpoint to probe
            cancel: Checked at every poll boundary
            on_scheduler_ready: Called with the healthy snapshot before the
                first reachability probe
            max_probes: Probes left in the caller's budget; caps probe_attempts
            on_probe: Called after every probe, before any backoff

        Returns:
            The verified DeploymentState (healthy replicas, 2xx probe)

        Raises:
            RolloutFailedError: Replicas never became ready
            UnreachableError: No 2xx within the allowed probes while healthy
            SessionCancelledError: Cancelled at a poll boundary
        """
        state = self.wait_for_rollout(selector, cancel)
        if on_scheduler_ready is not None:
            on_scheduler_ready(state)

        allowed = self.probe_attempts if max_probes is None else min(self.probe_attempts, max_probes)
        last: Optional[ProbeResult] = None
        for attempt in range(1, allowed + 1):
            if cancel is not None:
                cancel.check("reachability probe")
            last = self.probe(endpoint_url)
            if on_probe is not None:
                on_probe(last)
            if last.ok:
                try:
                    confirmed: Optional[DeploymentState] = self.observe(selector)
                except TransientError as e:
                    logger.warning(f"Scheduler state for {selector} unavailable: {e}")
                    confirmed = None
                if confirmed is not None and confirmed.replicas.healthy:
                    logger.info(
                        f"{endpoint_url} verified ({last.describe()}, "
                        f"{confirmed.replicas.ready}/{confirmed.replicas.desired} ready)",
                        extra={"stage": "deploy", "event": "verified", "metadata": {"selector": selector, "url": endpoint_url}},
                    )
                    return DeploymentState(selector=selector, replicas=confirmed.replicas, last_probe=last)
                logger.warning(
                    f"Workload {selector} flipped unhealthy during probe; not yet verified",
                    extra={
                        "stage": "deploy",
                        "event": "health_flip",
                        "metadata": {"replicas": confirmed.replicas.to_dict() if confirmed is not None else None},
                    },
                )
                last = ProbeResult(error=f"{last.describe()} but scheduler state changed during probe")
            else:
                logger.info(
                    f"Probe {attempt}/{allowed} of {endpoint_url}: {last.describe()}",
                    extra={"stage": "deploy", "event": "probe_failed", "metadata": {"url": endpoint_url, "attempt": attempt}},
                )
            if attempt < allowed:
                wait(self.probe_backoff, cancel, self._sleep, "reachability backoff")

        raise UnreachableError(endpoint_url, allowed, last.describe() if last else None)
