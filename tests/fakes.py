"""Test doubles for executors, channels and external tools."""
import threading

from pipecore.executors.base import JobExecutor
from pipecore.model import JobKind, JobResult


class FakeExecutor(JobExecutor):
    """
    Scripted executor. Per job name, `script` holds a JobResult, an outputs
    dict, or a callable(inputs, secrets, ctx) -> JobResult. Unscripted jobs
    succeed with no outputs.
    """

    def __init__(self, kind):
        self.kind = JobKind.parse(kind)
        self.script = {}
        self.calls = {}
        self.order = []
        self._lock = threading.Lock()

    def on(self, job_name, step):
        self.script[job_name] = step
        return self

    def execute(self, inputs, secrets, ctx):
        name = ctx.job.name
        with self._lock:
            self.calls[name] = {"inputs": dict(inputs), "secrets": dict(secrets), "ctx": ctx}
            self.order.append(name)
        step = self.script.get(name)
        if callable(step):
            return step(inputs, secrets, ctx)
        if isinstance(step, JobResult):
            return step
        return JobResult.success(step or {})


class FakeChannel:
    def __init__(self, fail_with=None):
        self.sent = []
        self.fail_with = fail_with

    def send(self, notification):
        self.sent.append(notification)
        if self.fail_with is not None:
            raise self.fail_with
