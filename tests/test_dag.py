import itertools
import random

import pytest

from pipecore.dag import build_graph, find_cycles
from pipecore.dsl import ci, deploy, job, notify, output, release
from pipecore.errors import (
    CycleDetected,
    DeclarationError,
    DuplicateJob,
    ExpressionSyntaxError,
    SchemaViolation,
    SelfDependency,
    UnknownDependency,
    UnknownOutputReference,
)


def _problems(jobs):
    with pytest.raises(DeclarationError) as exc:
        build_graph(jobs)
    return exc.value.problems


def _deploy(name="ship", **kwargs):
    kwargs.setdefault("environment", "prod")
    kwargs.setdefault("version", "1.0.0")
    kwargs.setdefault("app_name", "api")
    kwargs.setdefault("secrets", ["deploy-token"])
    return deploy(name, **kwargs)


def test_builds_levels_in_declaration_order():
    graph = build_graph([
        ci("lint"),
        ci("test"),
        _deploy(needs=["lint", "test"]),
        notify("tell", status="auto", needs=["ship"], if_="always()"),
    ])
    assert graph.levels() == [["lint", "test"], ["ship"], ["tell"]]
    assert graph.roots() == ["lint", "test"]
    assert graph.dependencies("ship") == ["lint", "test"]
    assert graph.dependents("lint") == ["ship"]


def test_output_reference_adds_edge_without_needs():
    graph = build_graph([
        release("cut"),
        _deploy(version=output("cut", "new-version")),
    ])
    assert graph.deps["ship"] == {"cut"}
    assert graph.levels() == [["cut"], ["ship"]]


def test_guard_reference_adds_edge():
    graph = build_graph([ci("test"), ci("report", if_="always() && jobs.test.result == 'failure'")])
    assert graph.dependencies("report") == ["test"]


def test_all_problems_reported_together():
    problems = _problems([
        ci("a", needs=["ghost"]),
        ci("a"),
        ci("b", needs=["b"]),
        job("c", "deploy", environment="prod"),
        _deploy("d", version=output("a", "new-version")),
        ci("e", if_="success( && x"),
    ])
    kinds = {type(p) for p in problems}
    assert kinds == {
        UnknownDependency,
        DuplicateJob,
        SelfDependency,
        SchemaViolation,
        UnknownOutputReference,
        ExpressionSyntaxError,
    }
    syntax = next(p for p in problems if isinstance(p, ExpressionSyntaxError))
    assert syntax.job == "e"


def test_guard_with_two_wrappers_is_a_syntax_problem():
    problems = _problems([ci("test"), ci("report", needs=["test"], if_="${{ always() }} && ${{ true }}")])

    assert len(problems) == 1
    assert isinstance(problems[0], ExpressionSyntaxError)
    assert problems[0].job == "report"
    assert "single '${{ }}'" in problems[0].message


def test_reference_to_unknown_job():
    problems = _problems([_deploy(version=output("nobody", "new-version"))])
    assert [(p.job, p.name) for p in problems] == [("ship", "nobody")]


def test_cycle_reported_with_full_path():
    problems = _problems([
        ci("a", needs=["c"]),
        ci("b", needs=["a"]),
        ci("c", needs=["b"]),
        ci("free"),
    ])
    cycles = [p for p in problems if isinstance(p, CycleDetected)]
    assert len(cycles) == 1
    path = cycles[0].path
    assert path[0] == path[-1]
    assert set(path) == {"a", "b", "c"}
    # execution direction: each node runs before the next one
    deps = {"a": {"c"}, "b": {"a"}, "c": {"b"}}
    for before, after in zip(path, path[1:]):
        assert before in deps[after]


def test_cycle_through_output_reference():
    problems = _problems([
        release("cut", needs=["ship"]),
        _deploy(version=output("cut", "new-version")),
    ])
    assert any(isinstance(p, CycleDetected) for p in problems)


def _has_cycle_bruteforce(nodes, deps):
    # a graph is acyclic iff some ordering puts every dependency first
    for perm in itertools.permutations(nodes):
        pos = {n: i for i, n in enumerate(perm)}
        if all(pos[d] < pos[n] for n in nodes for d in deps[n]):
            return False
    return True


def test_cycle_detection_matches_bruteforce_on_random_graphs():
    rng = random.Random(7)
    for _ in range(200):
        nodes = [f"j{i}" for i in range(rng.randint(1, 6))]
        deps = {n: {m for m in nodes if m != n and rng.random() < 0.25} for n in nodes}
        cycles = find_cycles(nodes, deps)
        assert bool(cycles) == _has_cycle_bruteforce(nodes, deps)
        for cycle in cycles:
            for before, after in zip(cycle.path, cycle.path[1:]):
                assert before in deps[after]
