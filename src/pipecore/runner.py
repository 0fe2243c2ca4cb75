# runner.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from .config import Settings
from .contracts import ContractRegistry, default_registry
from .dag import GraphBuilder, PipelineGraph
from .executors import JobExecutor, default_executors
from .github import APIClient, GitHubDeploymentBackend
from .loader import load_pipeline
from .model import JobKind, JobSpec, PipelineContext, PipelineRun
from .notify import NotificationDispatcher
from .scheduler import EventListener, RunHandle, Scheduler
from .tracker import DeploymentTracker, get_tracker, set_tracker

logger = logging.getLogger(__name__)


def configure_tracker(settings: Settings) -> DeploymentTracker:
    """
    Install the process-wide deployment tracker.

    With a GitHub token and repository configured, deployments are mirrored
    to GitHub Deployments; otherwise ids are issued locally.
    """
    if settings.github_token and settings.github_repository:
        backend = GitHubDeploymentBackend(
            APIClient(settings.github_token, settings.github_api),
            settings.github_repository,
        )
        tracker = DeploymentTracker(backend)
        set_tracker(tracker)
        return tracker
    return get_tracker()


class Orchestrator:
    """
    Wires the contract registry, graph builder, scheduler and executors.

    local declaration ---> validated graph ---> scheduled run
    """

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        registry: Optional[ContractRegistry] = None,
        executors: Optional[Mapping[JobKind, JobExecutor]] = None,
        tracker: Optional[DeploymentTracker] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.registry = registry or default_registry()
        self.tracker = tracker or get_tracker()
        if executors is None:
            executors = default_executors(
                tracker=self.tracker,
                dispatcher=dispatcher or NotificationDispatcher.from_webhooks(self.settings.webhooks),
                repository=self.settings.github_repository,
                github_api=self.settings.github_api,
            )
        self.executors: Dict[JobKind, JobExecutor] = dict(executors)

    def build(self, jobs: Iterable[JobSpec], *, name: str = "pipeline") -> PipelineGraph:
        """Validate a declaration. Raises DeclarationError listing every problem."""
        return GraphBuilder(self.registry).build(jobs, name=name)

    def run(
        self,
        pipeline: Union[PipelineGraph, Iterable[JobSpec]],
        context: Optional[PipelineContext] = None,
        secrets: Optional[Mapping[str, str]] = None,
        *,
        name: str = "pipeline",
        approvals: Iterable[str] = (),
        handle: Optional[RunHandle] = None,
        max_workers: Optional[int] = None,
        timeout: Optional[float] = None,
        on_event: Optional[EventListener] = None,
    ) -> PipelineRun:
        graph = pipeline if isinstance(pipeline, PipelineGraph) else self.build(pipeline, name=name)
        scheduler = Scheduler(
            self.executors,
            max_workers=max_workers or self.settings.workers(),
            default_timeout=timeout if timeout is not None else self.settings.job_timeout,
            registry=self.registry,
            on_event=on_event,
        )
        return scheduler.run(graph, context, secrets, approvals=approvals, handle=handle)


def run_pipeline(
    jobs: Union[PipelineGraph, List[JobSpec]],
    context: Optional[PipelineContext] = None,
    secrets: Optional[Mapping[str, str]] = None,
    *,
    executors: Optional[Mapping[JobKind, JobExecutor]] = None,
    **kwargs,
) -> PipelineRun:
    """One-shot helper: build and run with default wiring."""
    return Orchestrator(executors=executors).run(jobs, context, secrets, **kwargs)


def run_file(
    path: Union[str, Path],
    context: Optional[PipelineContext] = None,
    secrets: Optional[Mapping[str, str]] = None,
    *,
    orchestrator: Optional[Orchestrator] = None,
    **kwargs,
) -> PipelineRun:
    name, jobs = load_pipeline(path)
    orch = orchestrator or Orchestrator()
    return orch.run(jobs, context, secrets, name=name, **kwargs)
