"""
GitHub Actions BuildProvider.

Looks up the workflow runs triggered by a pushed commit and folds them into
one BuildRun:
- no runs yet, or all queued          -> PENDING
- any run in progress                 -> RUNNING
- any completed run not successful    -> FAILED (with the failed job log tail)
- every run completed successfully    -> SUCCEEDED
"""

import logging
from typing import Any, Optional

import httpx

from deplorch.errors import PermanentError, TransientError
from deplorch.interfaces import BuildProvider
from deplorch.schemas import BuildRun, BuildStatus

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"

_PENDING_STATUSES = {"queued", "requested", "waiting", "pending"}
_SUCCESS_CONCLUSIONS = {"success", "neutral", "skipped"}


class GitHubActionsBuildProvider(BuildProvider):
    """Polls the Actions REST API for runs of a commit."""

    def __init__(
        self,
        repository: str,
        token: Optional[str] = None,
        api_url: Optional[str] = None,
        log_tail_lines: int = 200,
        client: Optional[httpx.Client] = None,
    ):
        if "/" not in repository:
            raise ValueError(f"repository must be owner/name, got {repository!r}")
        self.repository = repository
        self.log_tail_lines = log_tail_lines
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(
            base_url=api_url or DEFAULT_API_URL,
            headers=headers,
            timeout=30.0,
            follow_redirects=True,
        )

    def _get(self, path: str, **params: Any) -> httpx.Response:
        try:
            response = self._client.get(path, params=params or None)
        except httpx.HTTPError as e:
            raise TransientError(f"GitHub API request failed: {e}") from e
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientError(f"GitHub API returned {response.status_code} for {path}")
        if response.status_code >= 400:
            raise PermanentError(
                f"GitHub API returned {response.status_code} for {path}: {response.text[:200]}"
            )
        return response

    def get_run_status(self, revision_id: str) -> BuildRun:
        data = self._get(f"/repos/{self.repository}/actions/runs", head_sha=revision_id).json()
        runs = data.get("workflow_runs", [])
        if not runs:
            return BuildRun(revision_id=revision_id, status=BuildStatus.PENDING)

        failed = [
            r for r in runs
            if r.get("status") == "completed" and r.get("conclusion") not in _SUCCESS_CONCLUSIONS
        ]
        if failed:
            run = failed[0]
            return BuildRun(
                revision_id=revision_id,
                status=BuildStatus.FAILED,
                log_excerpt=self._failed_log_excerpt(run["id"]),
                provider_run_id=str(run["id"]),
                url=run.get("html_url"),
            )

        run = runs[0]
        if all(r.get("status") == "completed" for r in runs):
            status = BuildStatus.SUCCEEDED
        elif any(r.get("status") not in _PENDING_STATUSES for r in runs):
            status = BuildStatus.RUNNING
        else:
            status = BuildStatus.PENDING
        return BuildRun(
            revision_id=revision_id,
            status=status,
            provider_run_id=str(run["id"]),
            url=run.get("html_url"),
        )

    def _failed_log_excerpt(self, run_id: int) -> str:
        """Tail of the logs of every failed job in the run ("" if unavailable)."""
        try:
            jobs = self._get(f"/repos/{self.repository}/actions/runs/{run_id}/jobs").json().get("jobs", [])
            chunks = []
            for job in jobs:
                if job.get("conclusion") != "failure":
                    continue
                text = self._get(f"/repos/{self.repository}/actions/jobs/{job['id']}/logs").text
                chunks.append("\n".join(text.splitlines()[-self.log_tail_lines:]))
            return "\n".join(chunks)
        except (TransientError, PermanentError) as e:
            logger.warning(
                f"Could not fetch logs for run {run_id}: {e}",
                extra={"stage": "build", "event": "log_fetch_failed", "metadata": {"run_id": run_id}},
            )
            return ""
