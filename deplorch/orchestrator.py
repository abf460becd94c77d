"""
LifecycleOrchestrator - drive one ChangeSet from commit to verified live.

Phases run strictly in sequence, each returning a typed outcome:

    COMMITTING        RepositoryGateway.commit
    BUILDING          BuildMonitor.run (+ corrective ChangeSet on a fixable failure)
    DEPLOYING         DeploymentVerifier.verify, scheduler half
    VERIFYING         DeploymentVerifier.verify, reachability half
    VERIFYING_DOMAIN  DomainVerifier.verify (optional, never fatal)
    LIVE / FAILED     terminal

The orchestrator is the only component that emits outward status. The
Live signal (StatusListener.on_live) fires once, on entry into LIVE, and
only when the most recent verification in this session passed.

The per-workspace lock is taken on entry to COMMITTING (or on resume into
any locked phase) and released only on entry into LIVE or FAILED, so a
queued session never pushes while another is still verifying.

Deployment is verified once per session: the DeploymentVerifier's probes
are drawn from the session's deploy budget, and a rollout or reachability
failure moves the session straight to FAILED.

Sessions are saved after every transition; resume() re-enters the recorded
phase without repeating side effects that already happened.
"""

import logging
from typing import Any, Callable, Optional

from deplorch.build_monitor import BuildMonitor
from deplorch.deploy_verifier import DeploymentVerifier
from deplorch.domain_verifier import DomainVerifier
from deplorch.errors import (
    BuildExhaustedError,
    BuildTimeoutError,
    BuildUnfixableError,
    DeplorchError,
    DeployExhaustedError,
    DomainPendingError,
    EmptyChangeSetError,
    RolloutFailedError,
    SessionCancelledError,
    TransientError,
    UnreachableError,
)
from deplorch.gateway import RepositoryGateway, WorkspaceLocks
from deplorch.interfaces import ChangeSetCorrector, StatusListener
from deplorch.polling import CancellationToken
from deplorch.schemas import (
    ChangeSet,
    DeploymentState,
    DomainBinding,
    InvalidTransitionError,
    LifecycleSession,
    LiveSignal,
    MAX_ATTEMPTS,
    Narration,
    Phase,
    ProbeResult,
    RetryBudget,
    TRANSITIONS,
)
from deplorch.session_store import InMemorySessionStore, SessionStore, generate_ulid

logger = logging.getLogger(__name__)

# Shared by every orchestrator in the process so two sessions for one
# workspace serialize even when built from separate orchestrators.
DEFAULT_LOCKS = WorkspaceLocks()

LOCKED_PHASES = frozenset({
    Phase.COMMITTING,
    Phase.BUILDING,
    Phase.DEPLOYING,
    Phase.VERIFYING,
    Phase.VERIFYING_DOMAIN,
})


class LifecycleOrchestrator:
    """
    State machine composing the gateway, monitors and verifiers into one
    end-to-end delivery for a workspace.
    """

    def __init__(
        self,
        workspace: str,
        gateway: RepositoryGateway,
        build_monitor: BuildMonitor,
        deploy_verifier: DeploymentVerifier,
        domain_verifier: Optional[DomainVerifier] = None,
        corrector: Optional[ChangeSetCorrector] = None,
        store: Optional[SessionStore] = None,
        listener: Optional[StatusListener] = None,
        locks: Optional[WorkspaceLocks] = None,
        build_max_attempts: int = MAX_ATTEMPTS,
    ):
        self.workspace = workspace
        self.gateway = gateway
        self.build_monitor = build_monitor
        self.deploy_verifier = deploy_verifier
        self.domain_verifier = domain_verifier
        self.corrector = corrector
        self.store = store or InMemorySessionStore()
        self.listener = listener or StatusListener()
        self.locks = locks or DEFAULT_LOCKS
        self.build_max_attempts = build_max_attempts
        self._holding: set[str] = set()

        self._handlers: dict[Phase, Callable[[LifecycleSession, Optional[CancellationToken]], None]] = {
            Phase.COMMITTING: self._run_committing,
            Phase.BUILDING: self._run_building,
            Phase.DEPLOYING: self._run_deploying,
            Phase.VERIFYING: self._run_deploying,
            Phase.VERIFYING_DOMAIN: self._run_verifying_domain,
        }

    @classmethod
    def from_config(
        cls,
        config: Any,
        workspace: str,
        store: Optional[SessionStore] = None,
        listener: Optional[StatusListener] = None,
    ) -> "LifecycleOrchestrator":
        """
        Build an orchestrator wired to the concrete adapters.

        Args:
            config: DeplorchConfig
            workspace: Path to the git checkout to deliver from
            store: Session store (defaults to a FileSessionStore in sessions_dir)
            listener: Status listener

        Raises:
            ConfigError: If github_repository is not configured
        """
        from deplorch.adapters import (
            CommandCorrector,
            DohDomainRegistrar,
            GitHubActionsBuildProvider,
            GitSourceControl,
            HttpxProber,
            KubectlWorkloadInspector,
            NullCorrector,
        )
        from deplorch.config import ConfigError
        from deplorch.session_store import FileSessionStore

        if not config.github_repository:
            raise ConfigError("github_repository must be set to observe builds")

        source_control = GitSourceControl(
            workspace,
            remote=config.remote,
            branch=config.default_branch,
            protected_paths=config.protected_paths,
        )
        build_monitor = BuildMonitor(
            GitHubActionsBuildProvider(
                config.github_repository,
                token=config.github_token(),
                api_url=config.github_api_url,
            ),
            poll_interval=config.build_poll_interval,
            timeout=config.build_timeout,
        )
        deploy_verifier = DeploymentVerifier(
            KubectlWorkloadInspector(namespace=config.kube_namespace, context=config.kube_context),
            HttpxProber(),
            poll_interval=config.rollout_poll_interval,
            rollout_timeout=config.rollout_timeout,
            probe_timeout=config.probe_timeout,
            probe_attempts=config.probe_attempts,
            probe_backoff=config.probe_backoff,
        )
        domain_verifier = DomainVerifier(
            DohDomainRegistrar(config.doh_url),
            attempts=config.domain_attempts,
            backoff=config.domain_backoff,
            verification_prefix=config.domain_verification_prefix,
        )
        corrector = CommandCorrector(config.corrector_command) if config.corrector_command else NullCorrector()

        return cls(
            workspace=workspace,
            gateway=RepositoryGateway(source_control),
            build_monitor=build_monitor,
            deploy_verifier=deploy_verifier,
            domain_verifier=domain_verifier,
            corrector=corrector,
            store=store or FileSessionStore(config.get_sessions_dir()),
            listener=listener,
            build_max_attempts=config.build_max_attempts,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def start(
        self,
        changeset: ChangeSet,
        selector: str,
        endpoint_url: str,
        domain: Optional[DomainBinding] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> LifecycleSession:
        """
        Open a session for a ChangeSet and drive it to LIVE or FAILED.

        Returns:
            The terminal session

        Raises:
            SessionCancelledError: Cancelled; the session is saved in its
                current phase and can be resumed
        """
        if domain is not None and self.domain_verifier is None:
            raise ValueError("A custom domain was requested but no DomainVerifier is configured")

        session = LifecycleSession(
            session_id=generate_ulid(),
            workspace=self.workspace,
            changeset=changeset,
            selector=selector,
            endpoint_url=endpoint_url,
            domain=domain,
            build_budget=RetryBudget(limit=self.build_max_attempts),
            deploy_budget=RetryBudget(),
        )
        self.store.save(session)
        logger.info(
            f"Session {session.session_id} opened for {self.workspace}",
            extra={"stage": "session", "event": "session_opened", "metadata": {"session_id": session.session_id}},
        )
        return self._drive(session, cancel)

    def resume(self, session_id: str, cancel: Optional[CancellationToken] = None) -> LifecycleSession:
        """
        Re-enter a saved session at its recorded phase.

        Terminal sessions are returned unchanged with no signals re-emitted.
        """
        session = self.store.load(session_id)
        if session.is_terminal:
            logger.info(f"Session {session_id} already {session.phase.value}; nothing to resume")
            return session
        self._narrate(session, session.phase, "resumed", f"Resuming at {session.phase.value}")
        return self._drive(session, cancel)

    def verify_domain(self, session_id: str, cancel: Optional[CancellationToken] = None) -> LifecycleSession:
        """
        Re-run domain verification for a Live session whose binding is Pending.

        This is the explicit "check again later" request. It never changes
        the session's phase and never re-emits the Live signal.
        """
        session = self.store.load(session_id)
        if session.phase != Phase.LIVE:
            if session.phase == Phase.VERIFYING_DOMAIN:
                return self.resume(session_id, cancel)
            raise InvalidTransitionError(
                f"Session {session_id} is {session.phase.value}; domain verification needs a Live session"
            )
        if session.domain is None:
            raise ValueError(f"Session {session_id} has no custom domain")
        if self.domain_verifier is None:
            raise ValueError("No DomainVerifier is configured")
        if session.domain.active:
            return session

        binding = self._check_domain(session, cancel)
        session.domain = binding
        self._narrate(
            session,
            Phase.LIVE,
            "domain_active" if binding.active else "domain_pending",
            f"Domain {binding.hostname} {binding.status.value}",
            failed_checks=binding.failed_checks(),
        )
        self.store.save(session)
        self.listener.on_domain_update(session.session_id, binding)
        return session

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    def _drive(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> LifecycleSession:
        if session.phase in LOCKED_PHASES:
            self.locks.acquire(session.workspace)
            self._holding.add(session.session_id)
        try:
            while not session.is_terminal:
                if cancel is not None:
                    cancel.check(f"{session.phase.value} entry")
                self._handlers[session.phase](session, cancel)
        except SessionCancelledError as e:
            self._narrate(session, session.phase, "cancelled", str(e))
            self.store.save(session)
            raise
        except DeplorchError as e:
            if Phase.FAILED not in TRANSITIONS[session.phase]:
                self._abort(session, e)
                raise
            self._fail(session, e)
        except Exception as e:
            self._abort(session, e)
            raise
        finally:
            self._release(session)
        return session

    def _release(self, session: LifecycleSession) -> None:
        if session.session_id in self._holding:
            self._holding.discard(session.session_id)
            self.locks.release(session.workspace)

    def _narrate(
        self,
        session: LifecycleSession,
        phase: Phase,
        event: str,
        message: str = "",
        attempt: Optional[int] = None,
        **detail: Any,
    ) -> Narration:
        narration = Narration(
            session_id=session.session_id,
            phase=phase,
            attempt=attempt if attempt is not None else session.attempt_for(phase),
            event=event,
            message=message,
            detail=detail,
        )
        session.narration.append(narration)
        logger.info(
            f"[{session.session_id}] {phase.value}#{narration.attempt} {event}: {message}",
            extra={"stage": phase.value, "event": event, "metadata": narration.to_dict()},
        )
        self.listener.on_transition(narration)
        return narration

    def _transition(
        self,
        session: LifecycleSession,
        to: Phase,
        event: str,
        message: str = "",
        attempt: Optional[int] = None,
        **detail: Any,
    ) -> None:
        session.transition(to)
        self._narrate(session, to, event, message, attempt, **detail)
        if to not in LOCKED_PHASES:
            self._release(session)
        self.store.save(session)

    def _abort(self, session: LifecycleSession, error: Exception) -> None:
        """Record an unexpected error and save the session in its current phase."""
        logger.exception(
            f"Session {session.session_id} stopped in {session.phase.value}: {error}",
            extra={"stage": session.phase.value, "event": "session_errored", "metadata": {"error": str(error)}},
        )
        self._narrate(
            session,
            session.phase,
            "errored",
            str(error),
            error={"type": type(error).__name__, "message": str(error)},
        )
        self.store.save(session)

    def _fail(self, session: LifecycleSession, error: DeplorchError) -> None:
        session.error = error.to_dict()
        failed_in = session.phase
        logger.error(
            f"Session {session.session_id} failed in {failed_in.value}: {error}",
            extra={"stage": failed_in.value, "event": "session_failed", "metadata": session.error},
        )
        self._transition(
            session,
            Phase.FAILED,
            "failed",
            str(error),
            attempt=session.attempt_for(failed_in),
            failed_in=failed_in.value,
            error=session.error,
        )
        self.listener.on_failed(session)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _commit_changeset(self, session: LifecycleSession, changeset: ChangeSet, previous_head: Optional[str]) -> str:
        """
        Commit a ChangeSet, adopting an already-pushed revision on resume.

        A crash between push and save leaves the ChangeSet on the remote
        while the session has no revision recorded; committing it again
        stages nothing, and HEAD having moved past previous_head shows the
        push already happened.
        """
        try:
            return self.gateway.commit(changeset)
        except EmptyChangeSetError:
            head = self.gateway.source_control.get_head()
            if previous_head is not None and head != previous_head:
                logger.info(f"ChangeSet already committed as {head}; adopting it")
                return head
            raise

    def _run_committing(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> None:
        if session.revision_id is None:
            resuming = session.base_revision is not None
            if not resuming:
                session.base_revision = self.gateway.source_control.get_head()
                self._narrate(session, Phase.COMMITTING, "commit_started", session.changeset.message)
                self.store.save(session)
            session.revision_id = self._commit_changeset(
                session, session.changeset, session.base_revision if resuming else None
            )
        self._transition(
            session,
            Phase.BUILDING,
            "committed",
            f"Pushed {session.revision_id}",
            attempt=1,
            revision_id=session.revision_id,
        )

    def _run_building(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> None:
        budget = session.build_budget

        if session.pending_changeset is not None:
            session.revision_id = self._commit_changeset(session, session.pending_changeset, session.revision_id)
            session.pending_changeset = None
            self._narrate(
                session,
                Phase.BUILDING,
                "corrective_committed",
                f"Pushed {session.revision_id}",
                attempt=budget.used + 1,
                revision_id=session.revision_id,
            )
            self.store.save(session)

        build_run = session.build_run
        if build_run is not None and build_run.revision_id == session.revision_id and build_run.succeeded:
            self._transition(session, Phase.DEPLOYING, "build_succeeded", attempt=build_run.attempt)
            return

        try:
            build_run = self.build_monitor.run(session.revision_id, budget, cancel)
        except BuildTimeoutError as e:
            self.store.save(session)
            if budget.exhausted:
                raise BuildExhaustedError(session.build_run, attempts=budget.used, message=f"Build timed out on final attempt: {e}") from e
            budget.consume(session.revision_id)
            self._transition(
                session,
                Phase.BUILDING,
                "build_timeout",
                str(e),
                attempt=budget.used,
                revision_id=session.revision_id,
            )
            return
        except BuildExhaustedError as e:
            if e.build_run is not None:
                session.build_run = e.build_run
            raise

        session.build_run = build_run
        if build_run.succeeded:
            self._transition(
                session,
                Phase.DEPLOYING,
                "build_succeeded",
                f"Build for {build_run.revision_id} succeeded",
                attempt=build_run.attempt,
                revision_id=build_run.revision_id,
            )
            return

        self.store.save(session)
        fix = self.corrector.propose_fix(build_run, session) if self.corrector is not None else None
        if fix is None:
            raise BuildUnfixableError(build_run)

        session.pending_changeset = fix
        self._transition(
            session,
            Phase.BUILDING,
            "build_retry",
            f"Build failed ({build_run.failure_reason.value}); retrying with a corrective change",
            attempt=budget.used + 1,
            reason=build_run.failure_reason.value,
            failed_revision=build_run.revision_id,
        )

    def _enter_verifying(self, session: LifecycleSession, state: DeploymentState) -> None:
        session.deployment_state = state
        if session.phase == Phase.DEPLOYING:
            self._transition(
                session,
                Phase.VERIFYING,
                "scheduler_ready",
                f"{state.replicas.ready}/{state.replicas.desired} replicas ready",
                replicas=state.replicas.to_dict(),
            )

    def _run_deploying(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> None:
        budget = session.deploy_budget
        if budget.exhausted:
            raise DeployExhaustedError(budget.used)

        session.deployment_state = None
        self._narrate(session, session.phase, "verify_started", session.endpoint_url, attempt=budget.used + 1)
        self.store.save(session)

        def count_probe(result: ProbeResult) -> None:
            budget.consume(session.revision_id)
            self.store.save(session)

        try:
            state = self.deploy_verifier.verify(
                session.selector,
                session.endpoint_url,
                cancel,
                on_scheduler_ready=lambda s: self._enter_verifying(session, s),
                max_probes=budget.remaining,
                on_probe=count_probe,
            )
        except (RolloutFailedError, UnreachableError) as e:
            reason = getattr(e, "reason", None)
            budget.record_failure(session.revision_id, reason.value if reason is not None else type(e).__name__)
            session.deployment_state = None
            raise DeployExhaustedError(budget.used, e) from e

        session.deployment_state = state
        if session.domain_requested:
            self._transition(session, Phase.VERIFYING_DOMAIN, "deployment_verified", session.endpoint_url)
        else:
            self._go_live(session)

    def _check_domain(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> DomainBinding:
        try:
            return self.domain_verifier.verify(session.domain, cancel)
        except DomainPendingError as e:
            return e.binding
        except TransientError as e:
            logger.warning(f"Domain check for {session.domain.hostname} errored: {e}")
            return session.domain

    def _run_verifying_domain(self, session: LifecycleSession, cancel: Optional[CancellationToken]) -> None:
        session.domain = self._check_domain(session, cancel)
        self._narrate(
            session,
            Phase.VERIFYING_DOMAIN,
            "domain_active" if session.domain.active else "domain_pending",
            f"Domain {session.domain.hostname} {session.domain.status.value}",
            failed_checks=session.domain.failed_checks(),
        )
        self._go_live(session)

    def _go_live(self, session: LifecycleSession) -> None:
        state = session.deployment_state
        if state is None or not state.verified:
            raise InvalidTransitionError(
                f"Session {session.session_id}: refusing LIVE without a passing verification"
            )
        session.live_url = session.endpoint_url
        signal = LiveSignal(
            session_id=session.session_id,
            url=session.endpoint_url,
            revision_id=session.revision_id,
            domain=session.domain.hostname if session.domain else None,
            domain_status=session.domain.status if session.domain else None,
        )
        self._transition(session, Phase.LIVE, "live", session.endpoint_url, attempt=1, **signal.to_dict())
        self.listener.on_live(signal)
