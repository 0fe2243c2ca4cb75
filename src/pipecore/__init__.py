from .dag import PipelineGraph, build_graph
from .errors import DeclarationError, EngineFault, UnresolvedReferenceError
from .model import JobKind, JobResult, JobSpec, JobStatus, PipelineContext, PipelineRun, PipelineStatus
from .runner import Orchestrator, run_file, run_pipeline
from .scheduler import RunHandle, Scheduler
# Imported last: the `notify` submodule must not shadow the DSL helper.
from .dsl import (
    JobBuilder,
    build,
    ci,
    deploy,
    docker_build,
    job,
    notify,
    output,
    pr_check,
    release,
    secret_ref,
    security_scan,
    terraform,
    wf,
)

__all__ = [
    "DeclarationError",
    "EngineFault",
    "JobBuilder",
    "JobKind",
    "JobResult",
    "JobSpec",
    "JobStatus",
    "Orchestrator",
    "PipelineContext",
    "PipelineGraph",
    "PipelineRun",
    "PipelineStatus",
    "RunHandle",
    "Scheduler",
    "UnresolvedReferenceError",
    "build",
    "build_graph",
    "ci",
    "deploy",
    "docker_build",
    "job",
    "notify",
    "output",
    "pr_check",
    "release",
    "run_file",
    "run_pipeline",
    "secret_ref",
    "security_scan",
    "terraform",
    "wf",
]
