# contracts.py
"""
Contract registry: the typed schema (inputs, outputs, secrets) of every job kind.

A schema is pure data. Validation reports every violation of a JobSpec at
once so a pipeline author can fix a declaration in a single pass.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import DuplicateKind, SchemaViolation
from .model import JobKind, JobSpec


class FieldType(str, Enum):
    STRING = "string"
    BOOL = "bool"
    NUMBER = "number"

    def accepts(self, value: Any) -> bool:
        if self is FieldType.BOOL:
            return isinstance(value, bool)
        if self is FieldType.NUMBER:
            return isinstance(value, (int, float)) and not isinstance(value, bool)
        return isinstance(value, str)

    def coerce(self, value: Any) -> Any:
        """Convert a resolved (string) value to this type. Raises ValueError."""
        if self.accepts(value):
            return value
        text = str(value).strip()
        if self is FieldType.BOOL:
            lowered = text.lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no", ""):
                return False
            raise ValueError(f"expected a boolean, got {value!r}")
        if self is FieldType.NUMBER:
            try:
                number = float(text)
            except ValueError:
                raise ValueError(f"expected a number, got {value!r}") from None
            return int(number) if number.is_integer() else number
        return text


@dataclass(frozen=True)
class InputSpec:
    type: FieldType = FieldType.STRING
    required: bool = False
    default: Any = None
    description: str = ""


@dataclass(frozen=True)
class OutputSpec:
    type: FieldType = FieldType.STRING
    description: str = ""


@dataclass(frozen=True)
class SecretSpec:
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class ContractSchema:
    inputs: Mapping[str, InputSpec] = field(default_factory=dict)
    outputs: Mapping[str, OutputSpec] = field(default_factory=dict)
    secrets: Mapping[str, SecretSpec] = field(default_factory=dict)

    def defaults(self) -> Dict[str, Any]:
        return {name: spec.default for name, spec in self.inputs.items() if spec.default is not None}


def _is_expression(value: Any) -> bool:
    return isinstance(value, str) and "${{" in value


class ContractRegistry:
    """Thread-safe registry of ContractSchema by JobKind."""

    def __init__(self) -> None:
        self._schemas: Dict[JobKind, ContractSchema] = {}
        self._lock = threading.Lock()

    def register(self, kind: JobKind | str, schema: ContractSchema) -> None:
        kind = JobKind.parse(kind)
        with self._lock:
            existing = self._schemas.get(kind)
            if existing is not None and existing != schema:
                raise DuplicateKind(kind.value)
            self._schemas[kind] = schema

    def schema(self, kind: JobKind | str) -> ContractSchema:
        kind = JobKind.parse(kind)
        try:
            return self._schemas[kind]
        except KeyError:
            raise KeyError(f"No contract registered for job kind '{kind.value}'") from None

    def has(self, kind: JobKind | str) -> bool:
        return JobKind.parse(kind) in self._schemas

    def kinds(self) -> List[JobKind]:
        return sorted(self._schemas, key=lambda k: k.value)

    def validate(self, job: JobSpec) -> List[SchemaViolation]:
        """Return every schema violation of `job` (empty list means valid)."""
        if job.kind not in self._schemas:
            return [SchemaViolation(job.name, "kind", "unknown-field", f"no contract for kind '{job.kind.value}'")]

        schema = self._schemas[job.kind]
        violations: List[SchemaViolation] = []

        for name, value in job.inputs.items():
            spec = schema.inputs.get(name)
            if spec is None:
                violations.append(SchemaViolation(job.name, name, "unknown-field", "not an input of this kind"))
                continue
            if value is None or _is_expression(value):
                # expressions are type-checked when they resolve at dispatch time
                continue
            if not spec.type.accepts(value):
                violations.append(
                    SchemaViolation(
                        job.name,
                        name,
                        "type-mismatch",
                        f"expected {spec.type.value}, got {type(value).__name__}",
                    )
                )

        for name, spec in schema.inputs.items():
            if spec.required and spec.default is None and job.inputs.get(name) is None:
                violations.append(SchemaViolation(job.name, name, "missing-required", "required input"))

        for name in job.secrets:
            if name not in schema.secrets:
                violations.append(SchemaViolation(job.name, name, "unknown-field", "not a secret of this kind"))

        for name, spec in schema.secrets.items():
            if spec.required and name not in job.secrets:
                violations.append(SchemaViolation(job.name, name, "missing-required", "required secret"))

        return violations


# ----------------------------------------------------------------------
# Built-in job kinds
# ----------------------------------------------------------------------

def _inputs(**specs: InputSpec) -> Dict[str, InputSpec]:
    # keyword names use "_" where the declared names use "-"
    return {k.replace("_", "-"): v for k, v in specs.items()}


def _outputs(*names: str, types: Optional[Dict[str, FieldType]] = None) -> Dict[str, OutputSpec]:
    types = types or {}
    return {n: OutputSpec(types.get(n, FieldType.STRING)) for n in names}


def _secrets(*names: str, required: Iterable[str] = ()) -> Dict[str, SecretSpec]:
    required = set(required)
    return {n: SecretSpec(required=n in required) for n in names}


S, B, N = FieldType.STRING, FieldType.BOOL, FieldType.NUMBER

BUILTIN_CONTRACTS: Dict[JobKind, ContractSchema] = {
    JobKind.CI: ContractSchema(
        inputs=_inputs(
            working_directory=InputSpec(S, default="."),
            version=InputSpec(S, default=""),
            install_command=InputSpec(S, default=""),
            lint_command=InputSpec(S, default=""),
            test_command=InputSpec(S, default=""),
            run_lint=InputSpec(B, default=True),
            run_tests=InputSpec(B, default=True),
            coverage_threshold=InputSpec(N, default=0),
        ),
        outputs=_outputs("test-result", "coverage", types={"coverage": N}),
        secrets=_secrets("npm-token"),
    ),
    JobKind.DOCKER_BUILD: ContractSchema(
        inputs=_inputs(
            image_name=InputSpec(S, required=True),
            dockerfile=InputSpec(S, default="Dockerfile"),
            context=InputSpec(S, default="."),
            platforms=InputSpec(S, default="linux/amd64"),
            push=InputSpec(B, default=False),
            registry=InputSpec(S, default="ghcr.io"),
            tag=InputSpec(S, default="latest"),
        ),
        outputs=_outputs("digest", "tags"),
        secrets=_secrets("registry-username", "registry-password"),
    ),
    JobKind.DEPLOY: ContractSchema(
        inputs=_inputs(
            environment=InputSpec(S, required=True),
            version=InputSpec(S, required=True),
            app_name=InputSpec(S, required=True),
            dry_run=InputSpec(B, default=False),
            command=InputSpec(S, default=""),
        ),
        outputs=_outputs("url", "deployment-id"),
        secrets=_secrets("deploy-token", "cloud-credentials", required=["deploy-token"]),
    ),
    JobKind.TERRAFORM: ContractSchema(
        inputs=_inputs(
            working_directory=InputSpec(S, default="."),
            terraform_version=InputSpec(S, default=""),
            command=InputSpec(S, required=True),
            environment=InputSpec(S, required=True),
            auto_approve=InputSpec(B, default=False),
        ),
        outputs=_outputs("output"),
        secrets=_secrets("cloud-credentials", required=["cloud-credentials"]),
    ),
    JobKind.RELEASE: ContractSchema(
        inputs=_inputs(
            bump=InputSpec(S, default="patch"),
            prerelease=InputSpec(B, default=False),
            changelog=InputSpec(B, default=True),
            working_directory=InputSpec(S, default="."),
        ),
        outputs=_outputs("new-version", "release-url", "changelog"),
        secrets=_secrets("npm-token"),
    ),
    JobKind.SECURITY_SCAN: ContractSchema(
        inputs=_inputs(
            scan_type=InputSpec(S, default="fs"),
            severity_threshold=InputSpec(S, default="high"),
            target=InputSpec(S, default="."),
        ),
        outputs=_outputs("vulnerabilities", "report-url", types={"vulnerabilities": N}),
    ),
    JobKind.NOTIFY: ContractSchema(
        inputs=_inputs(
            status=InputSpec(S, required=True),
            environment=InputSpec(S, default=""),
            message=InputSpec(S, default=""),
            channels=InputSpec(S, default="slack"),
        ),
        outputs=_outputs("delivered", "failed"),
        secrets=_secrets("slack-webhook", "discord-webhook", "teams-webhook"),
    ),
    JobKind.PR_CHECK: ContractSchema(
        inputs=_inputs(
            require_labels=InputSpec(B, default=False),
            title_format=InputSpec(S, default="conventional"),
            max_file_changes=InputSpec(N, default=50),
            pr_number=InputSpec(N, default=0),
        ),
        outputs=_outputs("passed", "reasons", types={"passed": B}),
        secrets=_secrets("github-token", required=["github-token"]),
    ),
}


def default_registry() -> ContractRegistry:
    registry = ContractRegistry()
    for kind, schema in BUILTIN_CONTRACTS.items():
        registry.register(kind, schema)
    return registry
