from __future__ import annotations

from typing import Dict, Optional

from ..model import JobKind
from ..notify import NotificationDispatcher
from ..tracker import DeploymentTracker
from .base import ExecutionContext, JobExecutor, ToolFailure, run_tool
from .ci import CIExecutor
from .deploy import DeployExecutor
from .docker import DockerBuildExecutor
from .notify import NotifyExecutor
from .pr_check import PRCheckExecutor
from .release import ReleaseExecutor
from .scan import SecurityScanExecutor
from .terraform import TerraformExecutor


def default_executors(
    *,
    tracker: Optional[DeploymentTracker] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    repository: str = "",
    github_api: str = "https://api.github.com",
) -> Dict[JobKind, JobExecutor]:
    """One executor per built-in kind, backed by the real external tools."""
    executors = [
        CIExecutor(),
        DockerBuildExecutor(),
        DeployExecutor(tracker=tracker),
        TerraformExecutor(),
        ReleaseExecutor(),
        SecurityScanExecutor(),
        NotifyExecutor(dispatcher),
        PRCheckExecutor(repository=repository, base_url=github_api),
    ]
    return {e.kind: e for e in executors}


__all__ = [
    "CIExecutor",
    "DeployExecutor",
    "DockerBuildExecutor",
    "ExecutionContext",
    "JobExecutor",
    "NotifyExecutor",
    "PRCheckExecutor",
    "ReleaseExecutor",
    "SecurityScanExecutor",
    "TerraformExecutor",
    "ToolFailure",
    "default_executors",
    "run_tool",
]
