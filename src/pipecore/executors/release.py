# executors/release.py
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool, tool_env

BUMPS = ("major", "minor", "patch")


@dataclass(frozen=True)
class ReleaseOutcome:
    new_version: str
    release_url: str = ""
    changelog: str = ""


class ReleaseTool(Protocol):
    def release(
        self,
        bump: str,
        *,
        prerelease: bool,
        changelog: bool,
        working_directory: str,
        token: str,
    ) -> ReleaseOutcome: ...


class NpmReleaseTool:
    """npm version + npm publish, with a changelog from git log since the last tag."""

    def release(
        self,
        bump: str,
        *,
        prerelease: bool,
        changelog: bool,
        working_directory: str,
        token: str,
    ) -> ReleaseOutcome:
        env = tool_env({"NODE_AUTH_TOKEN": token, "NPM_TOKEN": token})

        notes = ""
        if changelog:
            last_tag = run_tool(
                ["git", "describe", "--tags", "--abbrev=0"], cwd=working_directory, check=False
            ).stdout.strip()
            rev_range = f"{last_tag}..HEAD" if last_tag else "HEAD"
            notes = run_tool(
                ["git", "log", "--pretty=format:- %s", rev_range], cwd=working_directory
            ).stdout.strip()

        cmd = ["npm", "version", f"pre{bump}" if prerelease else bump, "--no-git-tag-version"]
        if prerelease:
            cmd.extend(["--preid", "rc"])
        new_version = run_tool(cmd, cwd=working_directory, env=env).stdout.strip().lstrip("v")

        publish = ["npm", "publish"]
        if prerelease:
            publish.extend(["--tag", "next"])
        run_tool(publish, cwd=working_directory, env=env)

        name = ""
        package_json = Path(working_directory) / "package.json"
        if package_json.exists():
            name = json.loads(package_json.read_text(encoding="utf-8")).get("name", "")
        url = f"https://www.npmjs.com/package/{name}/v/{new_version}" if name else ""
        return ReleaseOutcome(new_version=new_version, release_url=url, changelog=notes)


class ReleaseExecutor(JobExecutor):
    kind = JobKind.RELEASE

    def __init__(self, tool: Optional[ReleaseTool] = None):
        self.tool = tool or NpmReleaseTool()

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        bump = str(inputs.get("bump") or "patch").lower()
        if bump not in BUMPS:
            return JobResult.failure(
                "InvalidBump",
                f"bump must be one of {', '.join(BUMPS)}, got {bump!r}",
                started_at=started,
            )

        try:
            outcome = self.tool.release(
                bump,
                prerelease=bool(inputs.get("prerelease")),
                changelog=bool(inputs.get("changelog", True)),
                working_directory=str(inputs.get("working-directory") or "."),
                token=secrets.get("npm-token", ""),
            )
        except ToolFailure as e:
            return self.tool_failure(e, started_at=started)

        if not outcome.new_version:
            return JobResult.failure("ReleaseError", "release tool did not report a version", started_at=started)

        return JobResult.success(
            {
                "new-version": outcome.new_version,
                "release-url": outcome.release_url,
                "changelog": outcome.changelog,
            },
            started_at=started,
        )
