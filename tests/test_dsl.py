import pytest

from pipecore.dsl import build, ci, deploy, job, output, secret_ref, wf
from pipecore.model import JobKind


def test_job_helper_normalizes_names_and_secrets():
    spec = deploy(
        "ship",
        environment="prod",
        app_name="api",
        dry_run=True,
        with_={"version": "1.0.0"},
        secrets={"deploy-token": "", "cloud-credentials": "${{ secrets.gcp }}"},
        needs="test",
    )
    assert spec.kind == JobKind.DEPLOY
    assert spec.inputs == {"version": "1.0.0", "environment": "prod", "app-name": "api", "dry-run": True}
    assert spec.secrets == {
        "deploy-token": "${{ secrets.deploy-token }}",
        "cloud-credentials": "${{ secrets.gcp }}",
    }
    assert spec.needs == ["test"]


def test_references():
    assert output("release", "new-version") == "${{ jobs.release.outputs.new-version }}"
    assert secret_ref("npm-token") == "${{ secrets.npm-token }}"


def test_builder_matches_functional_helper():
    built = (
        build("ship", "deploy")
        .with_inputs(environment="prod", app_name="api", version="1.0.0")
        .with_secrets("deploy-token")
        .depends_on("test")
        .when("context.branch == 'main'")
        .timeout(300)
        .build()
    )
    functional = job(
        "ship",
        "deploy",
        environment="prod",
        app_name="api",
        version="1.0.0",
        secrets=["deploy-token"],
        needs=["test"],
        if_="context.branch == 'main'",
        timeout=300,
    )
    assert built == functional


def test_wf_flattens_generated_jobs():
    matrix = [ci(f"test-{v}", version=v) for v in ("3.11", "3.12")]
    jobs = wf(ci("lint"), matrix)
    assert [j.name for j in jobs] == ["lint", "test-3.11", "test-3.12"]
    assert jobs[2].inputs["version"] == "3.12"


def test_unknown_kind_is_rejected():
    with pytest.raises(ValueError, match="Unknown job kind"):
        job("x", "fax")
