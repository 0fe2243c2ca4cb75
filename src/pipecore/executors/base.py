# executors/base.py
from __future__ import annotations

import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence

from ..model import JobKind, JobResult, JobSpec, PipelineContext

logger = logging.getLogger(__name__)


TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "terraform": "Install Terraform (or tfenv) and fix PATH.",
    "trivy": "Install Trivy (https://aquasecurity.github.io/trivy/).",
    "git": "Install Git or fix PATH.",
}


@dataclass(eq=False)
class ToolFailure(Exception):
    """An external tool exited non-zero or could not be started."""
    tool: str
    cmd: str
    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""
    hint: str = ""

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"{self.tool} is not available: {self.hint}"
        return f"{self.tool} failed (exit={self.exit_code}): {self.cmd}"

    def details(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "cmd": self.cmd,
            "exit_code": self.exit_code,
            "stdout": self.stdout[-4000:],
            "stderr": self.stderr[-4000:],
            "hint": self.hint,
        }


@dataclass
class ExecutionContext:
    """What an executor may know about the job it runs."""
    job: JobSpec
    pipeline: PipelineContext = field(default_factory=PipelineContext)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    approvals: FrozenSet[str] = frozenset()
    upstream: Mapping[str, JobResult] = field(default_factory=dict)
    pipeline_name: str = "pipeline"

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def approved(self) -> bool:
        return self.job.name in self.approvals


class JobExecutor(ABC):
    """
    Runs one job of a given kind by calling exactly one external tool.

    Ordinary tool failure is reported as a Failure JobResult; only engine
    faults (e.g. DeploymentInFlight) may escape as exceptions.
    """
    kind: JobKind

    @abstractmethod
    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        ...

    def tool_failure(self, exc: ToolFailure, *, started_at=None) -> JobResult:
        kind = "ToolUnavailable" if exc.exit_code is None else "ToolFailure"
        return JobResult.failure(kind, str(exc), details=exc.details(), started_at=started_at)


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def tool_env(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    env = os.environ.copy()
    env.update({k: v for k, v in (extra or {}).items() if v is not None})
    return env


def run_tool(
    cmd: Sequence[str] | str,
    *,
    cwd: str | Path | None = None,
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external tool and capture its output.

    A string command runs through the shell; a list runs directly. Raises
    ToolFailure on non-zero exit (when `check`) or when the tool is missing.
    """
    shell = isinstance(cmd, str)
    display = cmd if shell else " ".join(cmd)
    tool = (cmd.split()[0] if shell and cmd.split() else (cmd[0] if cmd else "")) or "sh"

    if cwd is not None and not Path(cwd).exists():
        raise ToolFailure(tool=tool, cmd=display, exit_code=None, hint=f"working directory not found: {cwd}")

    logger.debug("running %s (cwd=%s)", display, cwd)
    try:
        proc = subprocess.run(
            cmd,
            shell=shell,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
            input=input,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ToolFailure(
            tool=tool,
            cmd=display,
            exit_code=None,
            hint=TOOL_HINTS.get(tool, f"Install {tool} or fix PATH."),
        ) from None

    if check and proc.returncode != 0:
        raise ToolFailure(
            tool=tool,
            cmd=display,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
    return proc


def split_list(value: str) -> List[str]:
    return [v.strip() for v in str(value or "").split(",") if v.strip()]
