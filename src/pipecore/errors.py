# errors.py
"""
Structured errors for pipecore.

Two families exist:
  - declaration problems (schema violations, graph errors, bad expressions),
    which are collected and raised together as one DeclarationError before
    anything runs;
  - engine faults (DuplicateKind, DeploymentInFlight, InvalidTransition),
    which are policy violations surfaced to the caller, never turned into a
    skipped job.

Ordinary tool failures are not exceptions at all: executors report them as
Failure JobResults.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence


class PipecoreError(Exception):
    """Base class for all pipecore errors."""


# ----------------------------------------------------------------------
# Declaration problems
# ----------------------------------------------------------------------

class DeclarationProblem(PipecoreError):
    kind = "declaration"


@dataclass(eq=False)
class SchemaViolation(DeclarationProblem):
    job: str
    field: str
    reason: str  # missing-required | unknown-field | type-mismatch
    message: str = ""

    kind = "schema-violation"

    def __str__(self) -> str:
        text = f"{self.kind}: job '{self.job}' field '{self.field}': {self.reason}"
        return f"{text} ({self.message})" if self.message else text


@dataclass(eq=False)
class DuplicateJob(DeclarationProblem):
    job: str

    kind = "duplicate-job"

    def __str__(self) -> str:
        return f"{self.kind}: job name '{self.job}' is declared more than once"


@dataclass(eq=False)
class UnknownDependency(DeclarationProblem):
    job: str
    name: str

    kind = "unknown-dependency"

    def __str__(self) -> str:
        return f"{self.kind}: job '{self.job}' needs missing job '{self.name}'"


@dataclass(eq=False)
class SelfDependency(DeclarationProblem):
    job: str

    kind = "self-dependency"

    def __str__(self) -> str:
        return f"{self.kind}: job '{self.job}' depends on itself"


@dataclass(eq=False)
class UnknownOutputReference(DeclarationProblem):
    job: str
    upstream: str
    output: str

    kind = "unknown-output-reference"

    def __str__(self) -> str:
        return (
            f"{self.kind}: job '{self.job}' references output '{self.output}' "
            f"of job '{self.upstream}', which does not declare it"
        )


@dataclass(eq=False)
class CycleDetected(DeclarationProblem):
    path: List[str]

    kind = "cycle-detected"

    def __str__(self) -> str:
        return f"{self.kind}: {' -> '.join(self.path)}"


@dataclass(eq=False)
class ExpressionSyntaxError(DeclarationProblem):
    expression: str
    message: str
    position: int = 0
    job: str | None = None

    kind = "expression-syntax"

    def __str__(self) -> str:
        where = f"job '{self.job}': " if self.job else ""
        return f"{self.kind}: {where}{self.message} at {self.position} in {self.expression!r}"


@dataclass(eq=False)
class DeclarationError(PipecoreError):
    """Every problem found in a pipeline declaration, reported in one pass."""
    problems: Sequence[DeclarationProblem] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"pipeline declaration has {len(self.problems)} problem(s)"]
        lines.extend(f"  - {p}" for p in self.problems)
        return "\n".join(lines)


@dataclass(eq=False)
class PipelineLoadError(PipecoreError):
    """The pipeline file could not be read or does not have the expected shape."""
    path: str
    message: str
    details: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"{self.path}: {self.message}"]
        lines.extend(f"  {d}" for d in self.details)
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

@dataclass(eq=False)
class UnresolvedReferenceError(PipecoreError):
    reference: str
    message: str

    def __str__(self) -> str:
        return f"unresolved reference '{self.reference}': {self.message}"


# ----------------------------------------------------------------------
# Engine faults
# ----------------------------------------------------------------------

@dataclass(eq=False)
class EngineFault(PipecoreError):
    """
    Policy violation raised by the engine itself, with enough context for
    clean CLI output and API responses.
    """
    kind: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class DuplicateKind(EngineFault):
    def __init__(self, kind: str):
        super().__init__(
            kind="DuplicateKind",
            message=f"job kind '{kind}' is already registered with a different schema",
            details={"job_kind": kind},
        )


class DeploymentInFlight(EngineFault):
    def __init__(self, environment: str, app: str, deployment_id: str | None = None):
        super().__init__(
            kind="DeploymentInFlight",
            message=f"a deployment of '{app}' to '{environment}' is already in progress",
            details={"environment": environment, "app": app, "deployment_id": deployment_id},
        )


class InvalidTransition(EngineFault):
    def __init__(self, deployment_id: str | None, current: str, target: str):
        super().__init__(
            kind="InvalidTransition",
            message=f"deployment cannot move from '{current}' to '{target}'",
            details={"deployment_id": deployment_id, "from": current, "to": target},
        )
