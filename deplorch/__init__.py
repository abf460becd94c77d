"""
deplorch - Deployment lifecycle orchestrator

Takes a ChangeSet from a workspace to a verified, reachable deployment:
commit and push, watch the remote build, verify the rollout and endpoint,
and optionally bind a custom domain. Sessions are persisted so an
interrupted delivery can be resumed.
"""

__version__ = "0.1.0"
__author__ = "Local Pipeline Team"


__all__ = ["DeplorchConfig", "load_config", "get_deplorch_home", "LifecycleOrchestrator"]

from .config import DeplorchConfig, load_config, get_deplorch_home
from .orchestrator import LifecycleOrchestrator
