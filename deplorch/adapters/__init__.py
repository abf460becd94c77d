"""
Concrete collaborators for the delivery lifecycle.

Each adapter implements one capability interface from deplorch.interfaces:
- GitSourceControl: git CLI against the workspace checkout
- GitHubActionsBuildProvider: Actions REST API (httpx)
- KubectlWorkloadInspector: kubectl JSON output
- HttpxProber / DohDomainRegistrar: HTTP probe and DNS-over-HTTPS
- CommandCorrector / NullCorrector: corrective ChangeSets
- LoggingListener / ConsoleListener: outward status

Usage:
    from deplorch.adapters import GitSourceControl, HttpxProber

    source_control = GitSourceControl("/srv/app", protected_paths=[".platform/"])
"""

from deplorch.adapters.git import GitSourceControl
from deplorch.adapters.github_actions import GitHubActionsBuildProvider
from deplorch.adapters.kubectl import KubectlWorkloadInspector
from deplorch.adapters.http import DohDomainRegistrar, HttpxProber
from deplorch.adapters.corrector import CommandCorrector, NullCorrector
from deplorch.adapters.listeners import ConsoleListener, LoggingListener

__all__ = [
    "GitSourceControl",
    "GitHubActionsBuildProvider",
    "KubectlWorkloadInspector",
    "HttpxProber",
    "DohDomainRegistrar",
    "CommandCorrector",
    "NullCorrector",
    "LoggingListener",
    "ConsoleListener",
]
