# executors/pr_check.py
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Protocol

from ..github import APIClient, APIError
from ..model import JobKind, JobResult, utcnow
from .base import ExecutionContext, JobExecutor

CONVENTIONAL_TITLE = re.compile(
    r"^(feat|fix|docs|style|refactor|perf|test|build|ci|chore|revert)(\([\w\-./ ]+\))?!?: \S.*"
)


@dataclass(frozen=True)
class PullRequestInfo:
    title: str
    labels: List[str] = field(default_factory=list)
    changed_files: int = 0


class PullRequestSource(Protocol):
    def fetch(self, number: int, *, token: str) -> PullRequestInfo: ...


class GitHubPullRequests:
    def __init__(self, repository: str, base_url: str = "https://api.github.com"):
        self.repository = repository
        self.base_url = base_url

    def fetch(self, number: int, *, token: str) -> PullRequestInfo:
        data = APIClient(token, self.base_url).get_pull_request(self.repository, number)
        return PullRequestInfo(
            title=str(data.get("title", "")),
            labels=[str(label.get("name", "")) for label in data.get("labels") or []],
            changed_files=int(data.get("changed_files") or 0),
        )


def check_pull_request(
    pr: PullRequestInfo,
    *,
    require_labels: bool,
    title_format: str,
    max_file_changes: int,
) -> List[str]:
    """Return the reasons the pull request fails the policy (empty when it passes)."""
    reasons: List[str] = []
    if require_labels and not pr.labels:
        reasons.append("pull request has no labels")

    fmt = title_format.strip()
    if fmt and fmt.lower() != "none":
        pattern = CONVENTIONAL_TITLE if fmt.lower() == "conventional" else re.compile(fmt)
        if not pattern.match(pr.title):
            reasons.append(f"title {pr.title!r} does not match the {fmt!r} format")

    if max_file_changes and pr.changed_files > max_file_changes:
        reasons.append(f"{pr.changed_files} files changed, more than the allowed {max_file_changes}")
    return reasons


class PRCheckExecutor(JobExecutor):
    kind = JobKind.PR_CHECK

    def __init__(
        self,
        source: Optional[PullRequestSource] = None,
        repository: str = "",
        base_url: str = "https://api.github.com",
    ):
        self._source = source
        self.repository = repository
        self.base_url = base_url

    def source_for(self, ctx: ExecutionContext) -> PullRequestSource:
        return self._source or GitHubPullRequests(self.repository or ctx.pipeline.repository, self.base_url)

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        number = int(inputs.get("pr-number") or ctx.pipeline.extra.get("pr-number") or 0)
        if number <= 0:
            return JobResult.failure("InputError", "no pull request number (pr-number input or context)", started_at=started)

        try:
            pr = self.source_for(ctx).fetch(number, token=secrets.get("github-token", ""))
            reasons = check_pull_request(
                pr,
                require_labels=bool(inputs.get("require-labels")),
                title_format=str(inputs.get("title-format") or ""),
                max_file_changes=int(inputs.get("max-file-changes") or 0),
            )
        except APIError as e:
            return JobResult.failure("SourceControlError", str(e), started_at=started)
        except re.error as e:
            return JobResult.failure("InputError", f"invalid title-format pattern: {e}", started_at=started)

        if reasons:
            return JobResult.failure(
                "PRCheckFailed",
                "; ".join(reasons),
                details={"reasons": reasons, "number": number},
                started_at=started,
            )
        return JobResult.success({"passed": "true", "reasons": ""}, started_at=started)
