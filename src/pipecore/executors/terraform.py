# executors/terraform.py
from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool, tool_env

COMMANDS = ("plan", "apply", "destroy")
GATED_COMMANDS = ("apply", "destroy")


class InfraTool(Protocol):
    def run(
        self,
        working_directory: str,
        command: str,
        environment: str,
        *,
        version: str,
        credentials: str,
    ) -> str: ...


class TerraformCLI:
    """terraform init + plan/apply/destroy, non-interactive."""

    def run(
        self,
        working_directory: str,
        command: str,
        environment: str,
        *,
        version: str,
        credentials: str,
    ) -> str:
        env = tool_env({
            "TF_IN_AUTOMATION": "1",
            "TF_INPUT": "0",
            "TF_VAR_environment": environment,
            "TF_VAR_cloud_credentials": credentials,
            "CLOUD_CREDENTIALS": credentials,
            # honoured by tfenv when it manages the terraform binary
            "TFENV_TERRAFORM_VERSION": version or None,
        })

        run_tool(["terraform", "init", "-input=false", "-no-color"], cwd=working_directory, env=env)

        if command == "plan":
            cmd = ["terraform", "plan", "-input=false", "-no-color"]
        else:
            # the executor has already enforced the approval policy
            cmd = ["terraform", command, "-input=false", "-no-color", "-auto-approve"]
        proc = run_tool(cmd, cwd=working_directory, env=env)
        return proc.stdout or ""


class TerraformExecutor(JobExecutor):
    kind = JobKind.TERRAFORM

    def __init__(self, tool: Optional[InfraTool] = None):
        self.tool = tool or TerraformCLI()

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        command = str(inputs.get("command") or "").strip().lower()
        if command not in COMMANDS:
            return JobResult.failure(
                "InvalidCommand",
                f"terraform command must be one of {', '.join(COMMANDS)}, got {command!r}",
                started_at=started,
            )

        if command in GATED_COMMANDS and not inputs.get("auto-approve") and not ctx.approved:
            return JobResult.failure(
                "ApprovalRequired",
                f"terraform {command} needs auto-approve or an approval for job '{ctx.job.name}'",
                details={"command": command, "environment": inputs.get("environment")},
                started_at=started,
            )

        try:
            output = self.tool.run(
                str(inputs.get("working-directory") or "."),
                command,
                str(inputs["environment"]),
                version=str(inputs.get("terraform-version") or ""),
                credentials=secrets.get("cloud-credentials", ""),
            )
        except ToolFailure as e:
            return self.tool_failure(e, started_at=started)

        return JobResult.success({"output": output}, started_at=started)
