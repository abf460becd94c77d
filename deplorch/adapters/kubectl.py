"""
Kubernetes WorkloadInspector via kubectl.

Reads the deployments and pods matching a label selector as JSON:
- desired/ready come from the deployments' spec.replicas and status.readyReplicas
- restarts are summed over containers of pods that are not terminating
- failure signals are container waiting/terminated reasons, unscheduled
  pod conditions, and Warning events for those pods
"""

import json
import logging
import subprocess
from typing import Any, Optional

from deplorch.errors import PermanentError, TransientError
from deplorch.interfaces import WorkloadInspector
from deplorch.schemas import ReplicaStatus, WorkloadEvent

logger = logging.getLogger(__name__)


class KubectlWorkloadInspector(WorkloadInspector):
    """WorkloadInspector that shells out to kubectl."""

    def __init__(
        self,
        namespace: str = "default",
        context: Optional[str] = None,
        kubectl_binary: str = "kubectl",
        timeout: float = 30.0,
    ):
        self.namespace = namespace
        self.context = context
        self.kubectl_binary = kubectl_binary
        self.timeout = timeout

    def _kubectl_json(self, *args: str) -> dict[str, Any]:
        command = [self.kubectl_binary, *args, "-n", self.namespace, "-o", "json"]
        if self.context:
            command += ["--context", self.context]
        logger.debug(f"Executing: {' '.join(command)}")
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise PermanentError(f"kubectl executable not found: {self.kubectl_binary}") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"kubectl {args[0]} timed out after {self.timeout:g}s") from e

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            logger.warning(
                f"kubectl {' '.join(args[:2])} failed with exit code {result.returncode}",
                extra={
                    "stage": "deploy",
                    "event": "kubectl_error",
                    "metadata": {"exit_code": result.returncode, "stderr": stderr[:1000]},
                },
            )
            raise TransientError(f"kubectl {' '.join(args[:2])} failed: {stderr[:500]}")

        try:
            return json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise TransientError(f"kubectl returned invalid JSON: {e}") from e

    def _pods(self, selector: str) -> list[dict[str, Any]]:
        pods = self._kubectl_json("get", "pods", "-l", selector).get("items", [])
        return [p for p in pods if not p.get("metadata", {}).get("deletionTimestamp")]

    def get_replica_status(self, selector: str) -> ReplicaStatus:
        deployments = self._kubectl_json("get", "deployments", "-l", selector).get("items", [])
        desired = sum(d.get("spec", {}).get("replicas", 1) for d in deployments)
        ready = sum(d.get("status", {}).get("readyReplicas", 0) or 0 for d in deployments)

        restarts = 0
        for pod in self._pods(selector):
            for container in pod.get("status", {}).get("containerStatuses", []) or []:
                restarts += container.get("restartCount", 0)
        return ReplicaStatus(desired=desired, ready=ready, restarts=restarts)

    def get_failure_events(self, selector: str) -> list[WorkloadEvent]:
        events: list[WorkloadEvent] = []
        pod_names = set()
        for pod in self._pods(selector):
            name = pod.get("metadata", {}).get("name", "")
            pod_names.add(name)
            status = pod.get("status", {})

            for condition in status.get("conditions", []) or []:
                if condition.get("type") == "PodScheduled" and condition.get("status") == "False":
                    events.append(WorkloadEvent(
                        reason=condition.get("reason") or "Unschedulable",
                        message=condition.get("message", ""),
                        object_name=name,
                    ))

            for container in status.get("containerStatuses", []) or []:
                waiting = container.get("state", {}).get("waiting")
                if waiting and waiting.get("reason"):
                    events.append(WorkloadEvent(
                        reason=waiting["reason"],
                        message=waiting.get("message", ""),
                        object_name=name,
                    ))
                terminated = container.get("lastState", {}).get("terminated")
                if terminated and terminated.get("reason"):
                    events.append(WorkloadEvent(
                        reason=terminated["reason"],
                        message=terminated.get("message", "") or f"exit code {terminated.get('exitCode')}",
                        object_name=name,
                    ))

        if pod_names:
            warnings = self._kubectl_json("get", "events", "--field-selector", "type=Warning").get("items", [])
            for event in warnings:
                involved = event.get("involvedObject", {}).get("name")
                if involved in pod_names and event.get("reason"):
                    events.append(WorkloadEvent(
                        reason=event["reason"],
                        message=event.get("message", ""),
                        object_name=involved,
                    ))
        return events
