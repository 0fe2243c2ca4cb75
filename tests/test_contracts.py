import pytest

from pipecore.contracts import (
    BUILTIN_CONTRACTS,
    ContractRegistry,
    ContractSchema,
    FieldType,
    InputSpec,
    default_registry,
)
from pipecore.dsl import deploy, docker_build, job, output
from pipecore.errors import DuplicateKind
from pipecore.model import JobKind


def _reasons(violations):
    return {(v.field, v.reason) for v in violations}


def test_every_builtin_kind_has_a_contract():
    registry = default_registry()
    assert set(registry.kinds()) == set(JobKind)
    assert set(BUILTIN_CONTRACTS) == set(JobKind)


def test_valid_job_has_no_violations():
    registry = default_registry()
    spec = deploy(
        "ship",
        environment="prod",
        version=output("release", "new-version"),
        app_name="api",
        dry_run=True,
        secrets=["deploy-token", "cloud-credentials"],
    )
    assert registry.validate(spec) == []


def test_unknown_inputs_and_secrets_are_rejected():
    registry = default_registry()
    spec = docker_build("img", image_name="api", colour="blue", secrets=["ssh-key"])
    assert _reasons(registry.validate(spec)) == {("colour", "unknown-field"), ("ssh-key", "unknown-field")}


def test_missing_required_input_and_secret():
    registry = default_registry()
    spec = job("ship", "deploy", environment="prod")
    assert _reasons(registry.validate(spec)) == {
        ("version", "missing-required"),
        ("app-name", "missing-required"),
        ("deploy-token", "missing-required"),
    }


def test_literal_type_mismatch_but_templates_are_deferred():
    registry = default_registry()
    bad = docker_build("img", image_name="api", push="yes")
    assert _reasons(registry.validate(bad)) == {("push", "type-mismatch")}

    deferred = docker_build("img", image_name="api", push="${{ context.publish }}")
    assert registry.validate(deferred) == []


def test_register_is_idempotent_for_equal_schema():
    registry = ContractRegistry()
    schema = ContractSchema(inputs={"x": InputSpec(FieldType.STRING)})
    registry.register("ci", schema)
    registry.register(JobKind.CI, ContractSchema(inputs={"x": InputSpec(FieldType.STRING)}))
    assert registry.schema("ci") == schema


def test_register_conflicting_schema_raises_duplicate_kind():
    registry = default_registry()
    with pytest.raises(DuplicateKind) as exc:
        registry.register("ci", ContractSchema())
    assert exc.value.kind == "DuplicateKind"
    assert exc.value.details["job_kind"] == "ci"


def test_schema_for_unregistered_kind():
    with pytest.raises(KeyError):
        ContractRegistry().schema("ci")


@pytest.mark.parametrize(
    "field_type, raw, expected",
    [
        (FieldType.BOOL, "true", True),
        (FieldType.BOOL, "No", False),
        (FieldType.BOOL, "", False),
        (FieldType.NUMBER, "80", 80),
        (FieldType.NUMBER, "12.5", 12.5),
        (FieldType.STRING, 3, "3"),
    ],
)
def test_field_coercion(field_type, raw, expected):
    assert field_type.coerce(raw) == expected


def test_field_coercion_errors():
    with pytest.raises(ValueError):
        FieldType.BOOL.coerce("maybe")
    with pytest.raises(ValueError):
        FieldType.NUMBER.coerce("eighty")


def test_defaults_skip_inputs_without_default():
    defaults = default_registry().schema("docker-build").defaults()
    assert defaults["dockerfile"] == "Dockerfile"
    assert defaults["push"] is False
    assert "image-name" not in defaults
