# github.py
"""Thin GitHub REST client for pull request checks and deployment records."""
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Optional

from .tracker import DeploymentState

GITHUB_API = "https://api.github.com"
API_VERSION = "2022-11-28"


class APIError(Exception):
    """A GitHub call failed (HTTP status, network, or unreadable body)."""


def _error_message(body: bytes) -> str:
    # GitHub error bodies look like {"message": "...", "documentation_url": "..."}
    try:
        return json.loads(body).get("message", "")
    except (ValueError, AttributeError):
        return body.decode("utf-8", "replace").strip()


class APIClient:
    """GitHub REST client; `base_url` is https://host/api/v3 on Enterprise."""

    def __init__(self, token: str, base_url: str = GITHUB_API):
        self.base_url = base_url.rstrip("/")
        self.token = token

    def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": API_VERSION}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        payload = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            payload = json.dumps(body).encode("utf-8")

        request = urllib.request.Request(f"{self.base_url}/{path.lstrip('/')}", payload, headers, method=method)
        try:
            with urllib.request.urlopen(request) as response:
                raw = response.read()
        except urllib.error.HTTPError as e:
            reason = _error_message(e.read()) or e.reason
            raise APIError(f"GitHub {method} {path} returned {e.code}: {reason}") from e
        except urllib.error.URLError as e:
            raise APIError(f"GitHub unreachable: {e.reason}") from e

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError as e:
            raise APIError(f"GitHub {method} {path} returned invalid JSON") from e

    def get_pull_request(self, repository: str, number: int) -> dict:
        return self._request("GET", f"/repos/{repository}/pulls/{number}")

    def create_deployment(self, repository: str, ref: str, environment: str, payload: dict) -> dict:
        return self._request(
            "POST",
            f"/repos/{repository}/deployments",
            body={
                "ref": ref,
                "environment": environment,
                "payload": payload,
                "auto_merge": False,
                "required_contexts": [],
            },
        )

    def create_deployment_status(self, repository: str, deployment_id: str, state: str, **fields: str) -> dict:
        body = {"state": state}
        body.update({k: v for k, v in fields.items() if v})
        return self._request("POST", f"/repos/{repository}/deployments/{deployment_id}/statuses", body=body)


# GitHub has no "cancelled" deployment state; "inactive" is the closest
_GITHUB_STATES = {
    DeploymentState.PENDING: "pending",
    DeploymentState.IN_PROGRESS: "in_progress",
    DeploymentState.SUCCESS: "success",
    DeploymentState.FAILURE: "failure",
    DeploymentState.CANCELLED: "inactive",
}


class GitHubDeploymentBackend:
    """Mirrors tracker transitions onto GitHub deployments."""

    def __init__(self, client: APIClient, repository: str, ref: str = "main"):
        self.client = client
        self.repository = repository
        self.ref = ref

    def create(self, environment: str, app: str, version: str) -> str:
        deployment = self.client.create_deployment(
            self.repository,
            self.ref,
            environment,
            payload={"app": app, "version": version},
        )
        return str(deployment["id"])

    def update(self, deployment_id: str, state: DeploymentState, *, url: str = "", description: str = "") -> None:
        self.client.create_deployment_status(
            self.repository,
            deployment_id,
            _GITHUB_STATES[state],
            environment_url=url,
            description=description[:140],
        )
