"""
CLI interface for deplorch.

Delivers a ChangeSet from a workspace to a verified, reachable deployment
and manages the saved sessions:
- deliver / resume run the lifecycle and exit 0 only when the session is Live
- domain verify re-checks a Pending custom domain of a Live session
- sessions list / show inspect saved sessions
- classify runs the build failure classifier over a log file
"""

import json
import secrets
import threading
from pathlib import Path
from typing import Callable, Optional

import click
from rich.table import Table

from deplorch import __version__
from deplorch.utils import console


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'deplorch init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _setup_logging(config, verbose: bool) -> None:
    from deplorch.utils import setup_logging

    setup_logging(
        log_file=config.get_log_file_path(),
        log_level="DEBUG" if verbose else config.log_level,
        log_format="structured" if config.log_format == "structured" else "pretty",
        console_output=verbose,
    )


def _get_store(config):
    from deplorch.session_store import FileSessionStore

    return FileSessionStore(config.get_sessions_dir())


def _build_orchestrator(config, workspace: str, store, listener):
    from deplorch.orchestrator import LifecycleOrchestrator

    return LifecycleOrchestrator.from_config(config, workspace, store=store, listener=listener)


def _run_cancellable(fn: Callable):
    """
    Run fn(cancel) on a worker thread so Ctrl-C cancels the session at the
    next poll boundary instead of killing it mid-write.
    """
    from deplorch.polling import CancellationToken

    cancel = CancellationToken()
    outcome: dict = {}

    def target():
        try:
            outcome["session"] = fn(cancel)
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name="deplorch-session", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        click.echo("\nCancelling; waiting for the current step to finish...", err=True)
        cancel.cancel("interrupted by user")
        worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome["session"]


def _finish(session) -> None:
    """Print the outcome and exit with 0 on Live, 1 otherwise."""
    from deplorch.schemas import Phase

    click.echo(f"Session: {session.session_id}")
    if session.phase == Phase.LIVE:
        click.echo(f"✓ Live at {session.live_url}")
        raise SystemExit(0)
    if session.phase == Phase.FAILED:
        message = (session.error or {}).get("message", "unknown error")
        click.echo(f"✗ Failed: {message}", err=True)
    else:
        click.echo(f"✗ Stopped in {session.phase.value}", err=True)
    raise SystemExit(1)


def _drive(config, workspace: str, fn: Callable) -> None:
    from deplorch.adapters import ConsoleListener
    from deplorch.config import ConfigError
    from deplorch.errors import DeplorchError, SessionCancelledError

    listener = ConsoleListener(console)
    store = _get_store(config)
    try:
        orchestrator = _build_orchestrator(config, workspace, store, listener)
        session = _run_cancellable(lambda cancel: fn(orchestrator, cancel))
    except SessionCancelledError as e:
        click.echo(f"✗ {e}", err=True)
        if listener.session_id:
            click.echo(f"Resume with: deplorch resume {listener.session_id}", err=True)
        raise SystemExit(1)
    except (ConfigError, DeplorchError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    _finish(session)


@click.group()
@click.version_option(version=__version__, prog_name="deplorch")
@click.pass_context
def main(ctx):
    """
    deplorch - Deployment lifecycle orchestrator.

    Commit, build, deploy and verify a ChangeSet until it is live.
    """
    from deplorch.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # init and classify work without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize deplorch configuration."""
    from deplorch.config import DeplorchConfig, get_deplorch_home
    import yaml

    home = get_deplorch_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = DeplorchConfig(
        sessions_dir=str(home / "sessions"),
        env_file=str(home / ".env"),
    ).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# GITHUB_TOKEN=...\n")

    click.echo(f"Initialized deplorch config at {cfg_path}")
    click.echo("Set github_repository before running 'deplorch deliver'.")


@main.command("deliver")
@click.argument("changeset_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--workspace", "-w", type=click.Path(exists=True, file_okay=False, path_type=Path), default=".",
              help="Git checkout to deliver from")
@click.option("--selector", "-l", required=True, help="Workload label selector (e.g. app=web)")
@click.option("--url", "endpoint_url", required=True, help="Public endpoint to probe")
@click.option("--domain", help="Custom hostname to bind")
@click.option("--domain-target", help="Expected CNAME target (or A address with --apex)")
@click.option("--domain-token", help="Ownership token (generated if omitted)")
@click.option("--apex", is_flag=True, help="Domain is an apex host (A record instead of CNAME)")
@click.option("--verbose", "-v", is_flag=True, help="Also log to the console")
@click.pass_context
def deliver(
    ctx,
    changeset_file: Path,
    workspace: Path,
    selector: str,
    endpoint_url: str,
    domain: Optional[str],
    domain_target: Optional[str],
    domain_token: Optional[str],
    apex: bool,
    verbose: bool,
):
    """Deliver CHANGESET_FILE and wait until it is live."""
    from deplorch.changeset_io import load_changeset
    from deplorch.domain_verifier import ownership_record_name
    from deplorch.errors import InvalidChangeSetError
    from deplorch.schemas import DomainBinding

    config = _require_config(ctx)
    _setup_logging(config, verbose)

    try:
        changeset = load_changeset(changeset_file)
    except InvalidChangeSetError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    binding = None
    if domain:
        if not domain_target:
            raise click.UsageError("--domain requires --domain-target")
        binding = DomainBinding(
            hostname=domain,
            verification_token=domain_token or secrets.token_hex(16),
            connection_target=domain_target,
            connection_record_type="A" if apex else "CNAME",
        )
        click.echo("Domain records required:")
        click.echo(
            f"  TXT   {ownership_record_name(binding.hostname, config.domain_verification_prefix)}"
            f"  {binding.verification_token}"
        )
        click.echo(f"  {binding.connection_record_type:<5} {binding.hostname}  {binding.connection_target}")

    workspace_path = str(workspace.resolve())
    _drive(
        config,
        workspace_path,
        lambda orchestrator, cancel: orchestrator.start(
            changeset, selector, endpoint_url, domain=binding, cancel=cancel
        ),
    )


@main.command("resume")
@click.argument("session_id")
@click.option("--verbose", "-v", is_flag=True, help="Also log to the console")
@click.pass_context
def resume(ctx, session_id: str, verbose: bool):
    """Resume a saved session at its recorded phase."""
    from deplorch.errors import SessionNotFoundError

    config = _require_config(ctx)
    _setup_logging(config, verbose)

    try:
        saved = _get_store(config).load(session_id)
    except SessionNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    _drive(config, saved.workspace, lambda orchestrator, cancel: orchestrator.resume(session_id, cancel))


@main.group("domain")
def domain_group():
    """Custom domain verification."""
    pass


@domain_group.command("verify")
@click.argument("session_id")
@click.option("--verbose", "-v", is_flag=True, help="Also log to the console")
@click.pass_context
def domain_verify(ctx, session_id: str, verbose: bool):
    """Re-check the custom domain of a Live session."""
    from deplorch.adapters import ConsoleListener
    from deplorch.errors import DeplorchError
    from deplorch.schemas import InvalidTransitionError

    config = _require_config(ctx)
    _setup_logging(config, verbose)

    store = _get_store(config)
    try:
        saved = store.load(session_id)
        orchestrator = _build_orchestrator(config, saved.workspace, store, ConsoleListener(console))
        session = _run_cancellable(lambda cancel: orchestrator.verify_domain(session_id, cancel))
    except (DeplorchError, InvalidTransitionError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if session.domain is not None and session.domain.active:
        click.echo(f"✓ {session.domain.hostname} active")
        raise SystemExit(0)
    pending = ", ".join(session.domain.failed_checks()) if session.domain else "no domain"
    click.echo(f"✗ Domain pending: {pending}", err=True)
    raise SystemExit(1)


# =============================================================================
# Sessions
# =============================================================================

@main.group("sessions")
def sessions_group():
    """Inspect saved sessions."""
    pass


@sessions_group.command("list")
@click.option("--workspace", "-w", help="Only sessions for this workspace")
@click.pass_context
def list_sessions(ctx, workspace: Optional[str]):
    """List saved sessions."""
    config = _require_config(ctx)
    sessions = _get_store(config).list_sessions()
    if workspace:
        target = str(Path(workspace).resolve())
        sessions = [s for s in sessions if s.workspace == target]

    if not sessions:
        click.echo("No sessions found.")
        return

    table = Table(title="Sessions")
    table.add_column("Session")
    table.add_column("Phase")
    table.add_column("Workspace")
    table.add_column("Revision")
    table.add_column("Updated")
    for s in sessions:
        table.add_row(
            s.session_id,
            s.phase.value,
            s.workspace,
            (s.revision_id or "-")[:12],
            s.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


@sessions_group.command("show")
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw session record")
@click.pass_context
def show_session(ctx, session_id: str, as_json: bool):
    """Show a session and its narration."""
    from deplorch.errors import SessionNotFoundError

    config = _require_config(ctx)
    try:
        session = _get_store(config).load(session_id)
    except SessionNotFoundError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if as_json:
        click.echo(json.dumps(session.to_dict(), indent=2))
        return

    click.echo(f"Session: {session.session_id}")
    click.echo(f"Phase: {session.phase.value}")
    click.echo(f"Workspace: {session.workspace}")
    click.echo(f"Revision: {session.revision_id or '-'}")
    click.echo(f"Build attempts: {session.build_budget.used}/{session.build_budget.limit}")
    click.echo(f"Deploy attempts: {session.deploy_budget.used}/{session.deploy_budget.limit}")
    if session.live_url:
        click.echo(f"Live URL: {session.live_url}")
    if session.domain is not None:
        click.echo(f"Domain: {session.domain.hostname} ({session.domain.status.value})")
    if session.error:
        click.echo(f"Error: {session.error.get('message')}")

    table = Table(title="Narration")
    table.add_column("At")
    table.add_column("Phase")
    table.add_column("#")
    table.add_column("Event")
    table.add_column("Message")
    for n in session.narration:
        table.add_row(n.at.strftime("%H:%M:%S"), n.phase.value, str(n.attempt), n.event, n.message)
    console.print(table)


@main.command("classify")
@click.argument("log_file", type=click.File("r"))
def classify(log_file):
    """Classify a build log (use - for stdin)."""
    from deplorch.classify import classify_build_log

    reason = classify_build_log(log_file.read())
    click.echo(reason.value)


if __name__ == "__main__":
    main()
