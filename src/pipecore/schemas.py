# schemas.py
"""pydantic models for YAML/JSON pipeline declarations and the run status API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .dsl import secret_ref
from .model import JobSpec, PipelineContext


class JobDeclaration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    kind: str
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    secrets: Dict[str, str] = Field(default_factory=dict)
    needs: List[str] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    timeout: Optional[float] = Field(default=None, gt=0)

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("secrets", mode="before")
    @classmethod
    def _secrets_mapping(cls, v: Any) -> Any:
        # `secrets: [deploy-token]` is shorthand for `deploy-token: ${{ secrets.deploy-token }}`
        if v is None:
            return {}
        if isinstance(v, (list, tuple)):
            return {str(name): secret_ref(str(name)) for name in v}
        if isinstance(v, dict):
            return {str(k): (str(val) if val else secret_ref(str(k))) for k, val in v.items()}
        return v

    @field_validator("with_", mode="before")
    @classmethod
    def _with_mapping(cls, v: Any) -> Any:
        return {} if v is None else v

    def to_spec(self, name: str) -> JobSpec:
        return JobSpec(
            name=name,
            kind=self.kind,
            inputs=dict(self.with_),
            secrets=dict(self.secrets),
            needs=list(self.needs),
            if_=self.if_,
            timeout=self.timeout,
        )


class PipelineDeclaration(BaseModel):
    name: str = "pipeline"
    jobs: Dict[str, JobDeclaration]

    def to_specs(self) -> List[JobSpec]:
        return [decl.to_spec(name) for name, decl in self.jobs.items()]


# -------------------- API schemas --------------------

class ContextIn(BaseModel):
    event: str = "push"
    branch: str = "main"
    ref: str = ""
    sha: str = ""
    actor: str = ""
    repository: str = ""
    environment: str = ""
    extra: Dict[str, str] = Field(default_factory=dict)

    def to_context(self, run_id: str = "") -> PipelineContext:
        return PipelineContext(run_id=run_id, **self.model_dump())


class CreateRunRequest(BaseModel):
    pipeline: PipelineDeclaration
    context: ContextIn = Field(default_factory=ContextIn)
    secrets: Dict[str, str] = Field(default_factory=dict)
    approvals: List[str] = Field(default_factory=list)


class CreateRunResponse(BaseModel):
    run_id: str
    status: str


class ErrorOut(BaseModel):
    kind: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class JobResultOut(BaseModel):
    job_name: str
    status: str
    outputs: Dict[str, str] = Field(default_factory=dict)
    error: Optional[ErrorOut] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class RunResponse(BaseModel):
    id: str
    pipeline: str
    status: str
    cancelled: bool
    jobs: List[JobResultOut]
    faults: List[str] = Field(default_factory=list)
    created_at: datetime
    finished_at: Optional[datetime] = None


class DeploymentOut(BaseModel):
    environment: str
    app: str
    version: str
    deployment_id: Optional[str]
    state: str
    url: str = ""
    history: List[Dict[str, Any]] = Field(default_factory=list)

