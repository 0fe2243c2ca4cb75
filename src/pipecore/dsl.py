# src/pipecore/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .model import JobKind, JobSpec

Secrets = Union[Iterable[str], Mapping[str, str], None]


def secret_ref(name: str) -> str:
    return f"${{{{ secrets.{name} }}}}"


def output(job_name: str, name: str) -> str:
    """output("release", "new-version") -> "${{ jobs.release.outputs.new-version }}" """
    return f"${{{{ jobs.{job_name}.outputs.{name} }}}}"


def _secrets(secrets: Secrets) -> Dict[str, str]:
    # a bare name maps to the run secret of the same name
    if secrets is None:
        return {}
    if isinstance(secrets, Mapping):
        return {k: (v or secret_ref(k)) for k, v in secrets.items()}
    return {name: secret_ref(name) for name in secrets}


def _inputs(with_: Optional[Mapping[str, Any]], kwargs: Mapping[str, Any]) -> Dict[str, Any]:
    inputs = dict(with_ or {})
    # keyword arguments use "_" where declared input names use "-"
    inputs.update({k.replace("_", "-"): v for k, v in kwargs.items()})
    return inputs


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    kind: Union[JobKind, str],
    *,
    with_: Optional[Mapping[str, Any]] = None,
    secrets: Secrets = None,
    needs: Optional[Iterable[str]] = None,
    if_: Optional[str] = None,
    timeout: Optional[float] = None,
    **inputs: Any,
) -> JobSpec:
    """
    job("deploy", "deploy", environment="prod", app_name="api",
        version=output("release", "new-version"),
        secrets=["deploy-token"], needs=["release"])
    """
    if isinstance(needs, str):
        needs = [needs]
    return JobSpec(
        name=name,
        kind=JobKind.parse(kind),
        inputs=_inputs(with_, inputs),
        secrets=_secrets(secrets),
        needs=list(needs or []),
        if_=if_,
        timeout=timeout,
    )


def _kind_helper(kind: JobKind):
    def helper(name: str, **kwargs: Any) -> JobSpec:
        return job(name, kind, **kwargs)

    helper.__name__ = kind.value.replace("-", "_")
    helper.__doc__ = f"job(name, '{kind.value}', ...)"
    return helper


ci = _kind_helper(JobKind.CI)
docker_build = _kind_helper(JobKind.DOCKER_BUILD)
deploy = _kind_helper(JobKind.DEPLOY)
terraform = _kind_helper(JobKind.TERRAFORM)
release = _kind_helper(JobKind.RELEASE)
security_scan = _kind_helper(JobKind.SECURITY_SCAN)
notify = _kind_helper(JobKind.NOTIFY)
pr_check = _kind_helper(JobKind.PR_CHECK)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str, kind: Union[JobKind, str]):
        self.name = name
        self.kind = JobKind.parse(kind)
        self._needs: list[str] = []
        self._inputs: dict[str, Any] = {}
        self._secrets: dict[str, str] = {}
        self._if: Optional[str] = None
        self._timeout: Optional[float] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def with_inputs(self, **inputs: Any):
        self._inputs.update(_inputs(None, inputs))
        return self

    def with_secrets(self, *names: str, **mapping: str):
        self._secrets.update(_secrets(names))
        self._secrets.update(_secrets({k.replace("_", "-"): v for k, v in mapping.items()}))
        return self

    def when(self, expr: str):
        self._if = expr
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> JobSpec:
        return JobSpec(
            name=self.name,
            kind=self.kind,
            inputs=dict(self._inputs),
            secrets=dict(self._secrets),
            needs=list(self._needs),
            if_=self._if,
            timeout=self._timeout,
        )


def build(name: str, kind: Union[JobKind, str]) -> JobBuilder:
    """Convenience: build('deploy', 'deploy').with_inputs(...).depends_on('ci').build()"""
    return JobBuilder(name, kind)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def wf(*jobs: Union[JobSpec, Iterable[JobSpec]]) -> List[JobSpec]:
    """
    Pipeline definition helper. Named so it does not collide with your own
    `def pipeline(): ...`.

    Users can write:
        from pipecore import wf, ci, deploy

        def pipeline():
            return wf(
                ci("test"),
                deploy("ship", needs=["test"], ...),
            )

    Or use JOBS directly:
        JOBS = wf(ci("test"), ...)

    Lists of jobs (e.g. built in a loop) are flattened.
    """
    out: List[JobSpec] = []
    for item in jobs:
        if isinstance(item, JobSpec):
            out.append(item)
        else:
            out.extend(item)
    return out
