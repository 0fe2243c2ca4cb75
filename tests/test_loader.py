import json
import textwrap
from pathlib import Path

import pytest

from pipecore.dag import build_graph
from pipecore.errors import PipelineLoadError
from pipecore.loader import declaration_to_specs, find_pipeline_files, load_pipeline
from pipecore.model import JobKind

PY_PIPELINE = textwrap.dedent(
    """
    from pipecore import ci, deploy, output, release, wf

    NAME = "shop"

    def pipeline():
        return wf(
            ci("test"),
            release("cut", needs=["test"]),
            deploy("ship", environment="prod", app_name="shop",
                   version=output("cut", "new-version"), secrets=["deploy-token"]),
        )
    """
)

YAML_PIPELINE = textwrap.dedent(
    """
    jobs:
      test:
        kind: ci
        with:
          coverage-threshold: 80
      ship:
        kind: deploy
        needs: test
        if: context.branch == 'main'
        timeout: 600
        with:
          environment: prod
          app-name: api
          version: "${{ context.version }}"
        secrets: [deploy-token]
      tell:
        kind: notify
        needs: [ship]
        if: always()
        with:
          status: auto
    """
)


def test_python_pipeline_with_name(tmp_path):
    path = tmp_path / "release_pipeline.py"
    path.write_text(PY_PIPELINE)

    name, jobs = load_pipeline(path)

    assert name == "shop"
    assert [j.name for j in jobs] == ["test", "cut", "ship"]
    assert jobs[2].inputs["version"] == "${{ jobs.cut.outputs.new-version }}"


def test_python_pipeline_jobs_constant_and_stem_name(tmp_path):
    path = tmp_path / "nightly_pipeline.py"
    path.write_text("from pipecore import ci\nJOBS = [ci('lint')]\n")
    name, jobs = load_pipeline(path)
    assert name == "nightly"
    assert jobs[0].kind == JobKind.CI


def test_python_pipeline_must_produce_job_specs(tmp_path):
    path = tmp_path / "bad_pipeline.py"
    path.write_text("JOBS = ['not a job']\n")
    with pytest.raises(PipelineLoadError) as exc:
        load_pipeline(path)
    assert "List[JobSpec]" in str(exc.value)


def test_yaml_pipeline(tmp_path):
    path = tmp_path / "deploy.pipeline.yml"
    path.write_text(YAML_PIPELINE)

    name, jobs = load_pipeline(path)
    by_name = {j.name: j for j in jobs}

    assert name == "deploy"
    assert by_name["test"].inputs == {"coverage-threshold": 80}
    ship = by_name["ship"]
    assert ship.needs == ["test"]
    assert ship.if_ == "context.branch == 'main'"
    assert ship.timeout == 600
    assert ship.secrets == {"deploy-token": "${{ secrets.deploy-token }}"}
    assert by_name["tell"].kind == JobKind.NOTIFY


def test_json_pipeline_with_explicit_name(tmp_path):
    path = tmp_path / "pipe.json"
    path.write_text(json.dumps({"name": "from-json", "jobs": {"scan": {"kind": "security-scan"}}}))
    name, jobs = load_pipeline(path)
    assert name == "from-json"
    assert jobs[0].kind == JobKind.SECURITY_SCAN


def test_invalid_declaration_lists_every_field(tmp_path):
    path = tmp_path / "broken.pipeline.yml"
    path.write_text("jobs:\n  a:\n    kind: ci\n    colour: blue\n  b:\n    timeout: -1\n")

    with pytest.raises(PipelineLoadError) as exc:
        load_pipeline(path)

    details = "\n".join(exc.value.details)
    assert "jobs.a.colour" in details
    assert "jobs.b.kind" in details
    assert "jobs.b.timeout" in details


def test_unknown_kind_is_a_load_error():
    with pytest.raises(PipelineLoadError) as exc:
        declaration_to_specs({"jobs": {"x": {"kind": "fax"}}})
    assert "Unknown job kind" in exc.value.message


@pytest.mark.parametrize(
    "filename, content, fragment",
    [
        ("bad.pipeline.yml", "jobs: [unclosed", "could not parse"),
        ("list.pipeline.yml", "- a\n- b\n", "top-level 'jobs'"),
        ("notes.txt", "hello", "unsupported pipeline file type"),
    ],
)
def test_malformed_files(tmp_path, filename, content, fragment):
    path = tmp_path / filename
    path.write_text(content)
    with pytest.raises(PipelineLoadError) as exc:
        load_pipeline(path)
    assert fragment in str(exc.value)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_pipeline(tmp_path / "nope.pipeline.yml")


def test_find_pipeline_files_prefers_default(tmp_path):
    for name in ("b_pipeline.py", "pipecore_pipeline.py", "a.pipeline.yml", "readme.md"):
        (tmp_path / name).write_text("")
    assert [p.name for p in find_pipeline_files(tmp_path)] == [
        "pipecore_pipeline.py",
        "a.pipeline.yml",
        "b_pipeline.py",
    ]


@pytest.mark.parametrize("relative", ["pipecore_pipeline.py", "pipelines/deploy.pipeline.yml"])
def test_shipped_pipelines_are_valid(relative):
    name, jobs = load_pipeline(Path(__file__).resolve().parents[1] / relative)
    graph = build_graph(jobs, name=name)
    assert graph.order
