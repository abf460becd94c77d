"""
StatusListener implementations.

- LoggingListener: outward signals as structured log records (for JSON logs)
- ConsoleListener: live narration on a rich console (used by the CLI)
"""

import logging
from typing import Optional

from rich.console import Console

from deplorch.interfaces import StatusListener
from deplorch.schemas import DomainBinding, LifecycleSession, LiveSignal, Narration, Phase

logger = logging.getLogger("deplorch.status")

PHASE_STYLES = {
    Phase.COMMITTING: "cyan",
    Phase.BUILDING: "blue",
    Phase.DEPLOYING: "magenta",
    Phase.VERIFYING: "magenta",
    Phase.VERIFYING_DOMAIN: "yellow",
    Phase.LIVE: "bold green",
    Phase.FAILED: "bold red",
}


class LoggingListener(StatusListener):
    """Logs narration and the Live/Failed signals under deplorch.status."""

    def on_transition(self, narration: Narration) -> None:
        logger.debug(
            f"{narration.phase.value}#{narration.attempt} {narration.event}",
            extra={"stage": narration.phase.value, "event": narration.event, "metadata": narration.to_dict()},
        )

    def on_live(self, signal: LiveSignal) -> None:
        logger.info(
            f"Live at {signal.url}",
            extra={"stage": "live", "event": "live", "metadata": signal.to_dict()},
        )

    def on_failed(self, session: LifecycleSession) -> None:
        logger.error(
            f"Session {session.session_id} failed",
            extra={"stage": "failed", "event": "failed", "metadata": {"error": session.error}},
        )

    def on_domain_update(self, session_id: str, binding: DomainBinding) -> None:
        logger.info(
            f"Domain {binding.hostname} is {binding.status.value}",
            extra={"stage": "verifying_domain", "event": "domain_update", "metadata": binding.to_dict()},
        )


class ConsoleListener(StatusListener):
    """Prints one line per narration event."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.session_id: Optional[str] = None

    def on_transition(self, narration: Narration) -> None:
        self.session_id = narration.session_id
        style = PHASE_STYLES.get(narration.phase, "white")
        line = f"[{style}]{narration.phase.value:<16}[/{style}] #{narration.attempt} {narration.event}"
        if narration.message:
            line += f"  [dim]{narration.message}[/dim]"
        self.console.print(line)

    def on_live(self, signal: LiveSignal) -> None:
        self.console.print(f"[bold green]✓ Live[/bold green] {signal.url} ({signal.revision_id})")
        if signal.domain_pending:
            self.console.print(
                f"[yellow]  Domain {signal.domain} pending; run 'deplorch domain verify {signal.session_id}' later[/yellow]"
            )

    def on_failed(self, session: LifecycleSession) -> None:
        message = (session.error or {}).get("message", "unknown error")
        self.console.print(f"[bold red]✗ Failed[/bold red] {message}")

    def on_domain_update(self, session_id: str, binding: DomainBinding) -> None:
        mark = "[green]✓[/green]" if binding.active else "[yellow]…[/yellow]"
        self.console.print(f"{mark} {binding.hostname}: {binding.status.value}")
        for check in binding.failed_checks():
            self.console.print(f"  [dim]- {check}[/dim]")
