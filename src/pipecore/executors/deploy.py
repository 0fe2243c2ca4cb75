# executors/deploy.py
"""
Deploy jobs.

The deployment lifecycle is recorded on the Deployment Tracker around the
external call, so it stays observable even when the call fails partway:
begin (pending -> in_progress), then success, failure or cancelled.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from ..tracker import DeploymentTracker, get_tracker
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool, tool_env

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeployOutcome:
    url: str = ""
    deployment_id: str = ""


class Deployer(Protocol):
    def deploy(
        self,
        environment: str,
        version: str,
        app: str,
        *,
        token: str,
        credentials: str,
        dry_run: bool,
        command: str = "",
    ) -> DeployOutcome: ...


class CommandDeployer:
    """
    Runs a deploy command with the deployment described in environment
    variables (DEPLOY_ENVIRONMENT, DEPLOY_VERSION, DEPLOY_APP, DEPLOY_TOKEN,
    CLOUD_CREDENTIALS, DEPLOY_DRY_RUN).

    The command may print a JSON object {"url": ..., "id": ...} as its last
    line; otherwise the last line starting with http is taken as the URL.
    """

    def __init__(self, command: str = ""):
        self.command = command

    def deploy(
        self,
        environment: str,
        version: str,
        app: str,
        *,
        token: str,
        credentials: str,
        dry_run: bool,
        command: str = "",
    ) -> DeployOutcome:
        cmd = command or self.command
        if not cmd:
            raise ToolFailure(tool="deploy", cmd="", exit_code=None, hint="set the deploy job's 'command' input")

        env = tool_env({
            "DEPLOY_ENVIRONMENT": environment,
            "DEPLOY_VERSION": version,
            "DEPLOY_APP": app,
            "DEPLOY_TOKEN": token,
            "CLOUD_CREDENTIALS": credentials,
            "DEPLOY_DRY_RUN": "true" if dry_run else "false",
        })
        proc = run_tool(cmd, env=env)
        return parse_deploy_output(proc.stdout or "")


def parse_deploy_output(stdout: str) -> DeployOutcome:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if lines and lines[-1].startswith("{"):
        try:
            data = json.loads(lines[-1])
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            return DeployOutcome(url=str(data.get("url", "")), deployment_id=str(data.get("id", "")))
    for line in reversed(lines):
        if line.startswith(("http://", "https://")):
            return DeployOutcome(url=line)
    return DeployOutcome()


class DeployExecutor(JobExecutor):
    kind = JobKind.DEPLOY

    def __init__(self, deployer: Optional[Deployer] = None, tracker: Optional[DeploymentTracker] = None):
        self.deployer = deployer or CommandDeployer()
        self._tracker = tracker

    @property
    def tracker(self) -> DeploymentTracker:
        return self._tracker or get_tracker()

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        environment = str(inputs["environment"])
        app = str(inputs["app-name"])
        version = str(inputs["version"])
        dry_run = bool(inputs.get("dry-run"))

        if not version:
            return JobResult.failure("InputError", "deploy needs a non-empty version", started_at=started)

        # DeploymentInFlight is an engine fault and propagates to the scheduler
        record = self.tracker.begin(environment, app, version)

        try:
            if ctx.cancelled:
                self.tracker.cancel(record, description="run cancelled before deploy")
                return JobResult.cancelled("run cancelled before the deploy call")

            if dry_run:
                logger.info("dry run: skipping deploy of %s %s to %s", app, version, environment)
                outcome = DeployOutcome()
            else:
                outcome = self.deployer.deploy(
                    environment,
                    version,
                    app,
                    token=secrets.get("deploy-token", ""),
                    credentials=secrets.get("cloud-credentials", ""),
                    dry_run=dry_run,
                    command=str(inputs.get("command") or ""),
                )
        except ToolFailure as e:
            self.tracker.complete(record, False, description=str(e))
            return self.tool_failure(e, started_at=started)
        except BaseException:
            self.tracker.complete(record, False, description="deploy raised")
            raise

        if ctx.cancelled:
            self.tracker.cancel(record, description="run cancelled during deploy")
            return JobResult.cancelled("run cancelled during the deploy call", details={"url": outcome.url})

        record = self.tracker.complete(record, True, url=outcome.url)
        return JobResult.success(
            {"url": outcome.url, "deployment-id": record.deployment_id or outcome.deployment_id},
            started_at=started,
        )
