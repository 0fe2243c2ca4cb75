# executors/ci.py
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool, tool_env


@dataclass(frozen=True)
class CIOutcome:
    test_result: str  # passed | failed | skipped
    coverage: Optional[float] = None
    output: str = ""


class CIRunner(Protocol):
    def run(
        self,
        working_directory: str,
        version: str,
        *,
        install: str,
        lint: str,
        test: str,
        env: Mapping[str, str],
    ) -> CIOutcome: ...


_COVERAGE_PATTERNS = [
    re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%", re.MULTILINE),      # coverage.py
    re.compile(r"^All files\s*\|\s*(\d+(?:\.\d+)?)", re.MULTILINE),  # istanbul / jest
]


def parse_coverage(output: str) -> Optional[float]:
    for pattern in _COVERAGE_PATTERNS:
        matches = pattern.findall(output)
        if matches:
            return float(matches[-1])
    return None


def detect_commands(working_directory: str | Path) -> dict[str, str]:
    """Default install/lint/test commands for the project found in the directory."""
    root = Path(working_directory)
    if (root / "package.json").exists():
        return {
            "install": "npm ci",
            "lint": "npm run lint --if-present",
            "test": "npm test",
        }
    if (root / "pyproject.toml").exists() or (root / "requirements.txt").exists():
        install = (
            "python -m pip install -r requirements.txt"
            if (root / "requirements.txt").exists()
            else "python -m pip install -e ."
        )
        return {"install": install, "lint": "ruff check .", "test": "pytest -q"}
    return {"install": "", "lint": "", "test": ""}


class ShellCIRunner:
    """Runs install, lint and test commands through the shell."""

    def run(
        self,
        working_directory: str,
        version: str,
        *,
        install: str,
        lint: str,
        test: str,
        env: Mapping[str, str],
    ) -> CIOutcome:
        run_env = tool_env({**env, "PIPECORE_TOOL_VERSION": version})

        if install:
            run_tool(install, cwd=working_directory, env=run_env)
        if lint:
            run_tool(lint, cwd=working_directory, env=run_env)
        if not test:
            return CIOutcome(test_result="skipped")

        proc = run_tool(test, cwd=working_directory, env=run_env, check=False)
        output = (proc.stdout or "") + (proc.stderr or "")
        return CIOutcome(
            test_result="passed" if proc.returncode == 0 else "failed",
            coverage=parse_coverage(output),
            output=output[-4000:],
        )


class CIExecutor(JobExecutor):
    kind = JobKind.CI

    def __init__(self, runner: Optional[CIRunner] = None):
        self.runner = runner or ShellCIRunner()

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        workdir = str(inputs.get("working-directory") or ".")
        detected = detect_commands(workdir)

        install = inputs.get("install-command") or detected["install"]
        lint = (inputs.get("lint-command") or detected["lint"]) if inputs.get("run-lint", True) else ""
        test = (inputs.get("test-command") or detected["test"]) if inputs.get("run-tests", True) else ""

        env = {}
        if secrets.get("npm-token"):
            env["NODE_AUTH_TOKEN"] = secrets["npm-token"]

        try:
            outcome = self.runner.run(
                workdir,
                str(inputs.get("version") or ""),
                install=install,
                lint=lint,
                test=test,
                env=env,
            )
        except ToolFailure as e:
            return self.tool_failure(e, started_at=started)

        if outcome.test_result == "failed":
            return JobResult.failure(
                "TestsFailed",
                "test command reported failures",
                details={"output": outcome.output},
                started_at=started,
            )

        threshold = float(inputs.get("coverage-threshold") or 0)
        if threshold and (outcome.coverage is None or outcome.coverage < threshold):
            return JobResult.failure(
                "CoverageBelowThreshold",
                f"coverage {outcome.coverage} is below the required {threshold}",
                details={"coverage": outcome.coverage, "threshold": threshold},
                started_at=started,
            )

        outputs = {"test-result": outcome.test_result}
        if outcome.coverage is not None:
            outputs["coverage"] = f"{outcome.coverage:g}"
        return JobResult.success(outputs, started_at=started)
