# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    CI = "ci"
    DOCKER_BUILD = "docker-build"
    DEPLOY = "deploy"
    TERRAFORM = "terraform"
    RELEASE = "release"
    SECURITY_SCAN = "security-scan"
    NOTIFY = "notify"
    PR_CHECK = "pr-check"

    @classmethod
    def parse(cls, value: "JobKind | str") -> "JobKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown job kind {value!r}. Known kinds: {known}") from None


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class JobSpec:
    """
    One job of a pipeline declaration.

    `inputs` and `secrets` values are literals or `${{ ... }}` templates,
    `needs` names other jobs of the same pipeline and `if_` is an optional
    guard expression.
    """
    name: str
    kind: JobKind
    inputs: Dict[str, Any] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    needs: List[str] = field(default_factory=list)
    if_: Optional[str] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        self.kind = JobKind.parse(self.kind)


@dataclass(frozen=True)
class ErrorDetail:
    """Why a job did not succeed (tool failure, timeout, policy refusal...)."""
    kind: str
    message: str
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class JobResult:
    status: JobStatus
    outputs: Mapping[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[ErrorDetail] = None

    def __post_init__(self) -> None:
        # only successful jobs carry outputs
        outputs = dict(self.outputs) if self.status == JobStatus.SUCCESS else {}
        object.__setattr__(self, "outputs", MappingProxyType({k: str(v) for k, v in outputs.items()}))

    @classmethod
    def success(cls, outputs: Mapping[str, Any] | None = None, *, started_at: datetime | None = None) -> "JobResult":
        return cls(JobStatus.SUCCESS, dict(outputs or {}), started_at=started_at, finished_at=utcnow())

    @classmethod
    def failure(
        cls,
        kind: str,
        message: str,
        *,
        details: Mapping[str, Any] | None = None,
        started_at: datetime | None = None,
    ) -> "JobResult":
        return cls(
            JobStatus.FAILURE,
            started_at=started_at,
            finished_at=utcnow(),
            error=ErrorDetail(kind=kind, message=message, details=dict(details or {})),
        )

    @classmethod
    def skipped(cls, reason: str) -> "JobResult":
        now = utcnow()
        return cls(JobStatus.SKIPPED, started_at=now, finished_at=now, error=ErrorDetail("Skipped", reason))

    @classmethod
    def cancelled(cls, reason: str, *, details: Mapping[str, Any] | None = None) -> "JobResult":
        now = utcnow()
        return cls(
            JobStatus.CANCELLED,
            started_at=now,
            finished_at=now,
            error=ErrorDetail("Cancelled", reason, dict(details or {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "outputs": dict(self.outputs),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class PipelineContext:
    """Trigger facts available to expressions as `context.<field>`."""
    event: str = "push"
    branch: str = "main"
    ref: str = ""
    sha: str = ""
    actor: str = ""
    repository: str = ""
    environment: str = ""
    run_id: str = ""
    extra: Dict[str, str] = field(default_factory=dict)

    def lookup(self, name: str) -> Optional[str]:
        key = name.replace("-", "_")
        if key in ("event", "branch", "ref", "sha", "actor", "repository", "environment", "run_id"):
            return getattr(self, key)
        return self.extra.get(name)


@dataclass
class PipelineRun:
    """
    One execution of a PipelineGraph.

    The scheduler is the only writer: it records each job's terminal
    JobResult exactly once and finalizes the run at the end.
    """
    run_id: str
    pipeline: str = "pipeline"
    results: Dict[str, JobResult] = field(default_factory=dict)
    cancelled: bool = False
    faults: List[Exception] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def record(self, name: str, result: JobResult) -> None:
        if name in self.results:
            raise RuntimeError(f"Result for job '{name}' already recorded")
        self.results[name] = result

    @property
    def status(self) -> PipelineStatus:
        for result in self.results.values():
            if result.status in (JobStatus.SKIPPED, JobStatus.CANCELLED):
                continue
            if result.status != JobStatus.SUCCESS:
                return PipelineStatus.FAILURE
        return PipelineStatus.SUCCESS

    @property
    def finished(self) -> bool:
        return self.finished_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "status": self.status.value,
            "cancelled": self.cancelled,
            "jobs": {name: r.to_dict() for name, r in self.results.items()},
            "faults": [str(f) for f in self.faults],
        }
