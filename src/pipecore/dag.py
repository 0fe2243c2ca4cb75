# dag.py
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .contracts import ContractRegistry, default_registry
from .errors import (
    CycleDetected,
    DeclarationError,
    DeclarationProblem,
    DuplicateJob,
    ExpressionSyntaxError,
    SelfDependency,
    UnknownDependency,
    UnknownOutputReference,
)
from .expressions import Ref, guard_references, is_template, template_references
from .model import JobSpec

logger = logging.getLogger(__name__)


@dataclass
class PipelineGraph:
    """
    Validated DAG of jobs.

    `deps[name]` holds every job that must be terminal before `name` may run:
    explicit `needs` plus the upstream jobs its expressions reference.
    """
    jobs: Dict[str, JobSpec]
    deps: Dict[str, Set[str]]
    order: List[str]
    declared_outputs: Dict[str, Set[str]] = field(default_factory=dict)
    name: str = "pipeline"

    def dependencies(self, name: str) -> List[str]:
        """Direct dependencies of `name`, in declaration order."""
        return [n for n in self.order if n in self.deps[name]]

    def dependents(self, name: str) -> List[str]:
        return [n for n in self.order if name in self.deps[n]]

    def roots(self) -> List[str]:
        return [n for n in self.order if not self.deps[n]]

    def levels(self) -> List[List[str]]:
        """
        Convert the DAG into topological "levels" (stages).
        Jobs of one stage can run in parallel; ties keep declaration order.
        """
        indeg = {n: len(self.deps[n]) for n in self.order}
        q = deque(n for n in self.order if indeg[n] == 0)
        levels: List[List[str]] = []

        while q:
            level = list(q)
            q.clear()
            levels.append(level)
            for node in level:
                for child in self.dependents(node):
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
        return levels


class GraphBuilder:
    """Turns a list of JobSpecs into a PipelineGraph, reporting every problem at once."""

    def __init__(self, registry: Optional[ContractRegistry] = None):
        self.registry = registry or default_registry()

    def build(self, jobs: Iterable[JobSpec], *, name: str = "pipeline") -> PipelineGraph:
        jobs = list(jobs)
        problems: List[DeclarationProblem] = []

        by_name: Dict[str, JobSpec] = {}
        order: List[str] = []
        for job in jobs:
            if job.name in by_name:
                problems.append(DuplicateJob(job.name))
                continue
            by_name[job.name] = job
            order.append(job.name)

        declared_outputs: Dict[str, Set[str]] = {}
        for job_name in order:
            job = by_name[job_name]
            problems.extend(self.registry.validate(job))
            if self.registry.has(job.kind):
                declared_outputs[job_name] = set(self.registry.schema(job.kind).outputs)
            else:
                declared_outputs[job_name] = set()

        deps: Dict[str, Set[str]] = {n: set() for n in order}
        for job_name in order:
            job = by_name[job_name]

            for needed in job.needs:
                if needed == job_name:
                    problems.append(SelfDependency(job_name))
                elif needed not in by_name:
                    problems.append(UnknownDependency(job_name, needed))
                else:
                    deps[job_name].add(needed)

            for ref in self._references(job, problems):
                upstream = ref.job
                if upstream is None:
                    continue
                if upstream == job_name:
                    problems.append(SelfDependency(job_name))
                    continue
                if upstream not in by_name:
                    problems.append(UnknownDependency(job_name, upstream))
                    continue
                if ref.output is not None and ref.output not in declared_outputs[upstream]:
                    problems.append(UnknownOutputReference(job_name, upstream, ref.output))
                    continue
                if upstream not in deps[job_name]:
                    logger.debug("job '%s' references '%s' without needs; adding edge", job_name, upstream)
                    deps[job_name].add(upstream)

        problems.extend(find_cycles(order, deps))

        if problems:
            raise DeclarationError(problems=problems)

        return PipelineGraph(
            jobs=by_name,
            deps=deps,
            order=order,
            declared_outputs=declared_outputs,
            name=name,
        )

    def _references(self, job: JobSpec, problems: List[DeclarationProblem]) -> List[Ref]:
        refs: List[Ref] = []
        sources = [v for v in job.inputs.values() if is_template(v)]
        sources += [v for v in job.secrets.values() if is_template(v)]

        for text in sources:
            try:
                refs.extend(template_references(text))
            except ExpressionSyntaxError as e:
                e.job = job.name
                problems.append(e)

        if job.if_ and job.if_.strip():
            try:
                refs.extend(guard_references(job.if_))
            except ExpressionSyntaxError as e:
                e.job = job.name
                problems.append(e)
        return refs


def find_cycles(order: List[str], deps: Dict[str, Set[str]]) -> List[CycleDetected]:
    """
    DFS with recursion-stack marking over the "runs before" edges.

    Each reported path is a full cycle in execution direction, e.g.
    ['a', 'b', 'c', 'a'] means a runs before b, b before c and c before a.
    """
    dependents: Dict[str, List[str]] = {n: [] for n in order}
    for node in order:
        for dep in sorted(deps[node], key=order.index):
            dependents[dep].append(node)

    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in order}
    stack: List[str] = []
    cycles: List[CycleDetected] = []
    seen: Set[frozenset] = set()

    def visit(node: str) -> None:
        color[node] = GREY
        stack.append(node)
        for child in dependents[node]:
            if color[child] == GREY:
                path = stack[stack.index(child):] + [child]
                key = frozenset(path)
                if key not in seen:
                    seen.add(key)
                    cycles.append(CycleDetected(path=path))
            elif color[child] == WHITE:
                visit(child)
        stack.pop()
        color[node] = BLACK

    for node in order:
        if color[node] == WHITE:
            visit(node)
    return cycles


def build_graph(
    jobs: Iterable[JobSpec],
    registry: Optional[ContractRegistry] = None,
    *,
    name: str = "pipeline",
) -> PipelineGraph:
    return GraphBuilder(registry).build(jobs, name=name)
