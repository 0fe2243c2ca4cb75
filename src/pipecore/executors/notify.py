# executors/notify.py
from __future__ import annotations

from typing import Any, Mapping, Optional

from ..model import JobKind, JobResult, JobStatus, utcnow
from ..notify import NotificationDispatcher, WebhookChannel, FORMATTERS, generic_payload, parse_channels
from .base import ExecutionContext, JobExecutor


def aggregate_status(results: Mapping[str, JobResult]) -> str:
    """failure > cancelled > success over everything that has finished so far."""
    statuses = {r.status for r in results.values()}
    if JobStatus.FAILURE in statuses:
        return JobStatus.FAILURE.value
    if JobStatus.CANCELLED in statuses:
        return JobStatus.CANCELLED.value
    return JobStatus.SUCCESS.value


class NotifyExecutor(JobExecutor):
    """
    Sends the pipeline status to every requested channel.

    Channels come from the dispatcher handed in (configured webhooks) and
    from the job's own `<channel>-webhook` secrets, which take precedence.
    A `status` of "auto" reports the aggregate status of the run so far.
    """
    kind = JobKind.NOTIFY

    def __init__(self, dispatcher: Optional[NotificationDispatcher] = None):
        self.dispatcher = dispatcher or NotificationDispatcher()

    def _dispatcher_for(self, secrets: Mapping[str, str]) -> NotificationDispatcher:
        channels = dict(self.dispatcher.channels)
        for name, value in secrets.items():
            if name.endswith("-webhook") and value:
                channel = name[: -len("-webhook")]
                channels[channel] = WebhookChannel(value, FORMATTERS.get(channel, generic_payload))
        return NotificationDispatcher(channels)

    def execute(self, inputs: Mapping[str, Any], secrets: Mapping[str, str], ctx: ExecutionContext) -> JobResult:
        started = utcnow()
        status = str(inputs.get("status") or "auto").lower()
        if status == "auto":
            status = aggregate_status(ctx.upstream)

        channels = parse_channels(str(inputs.get("channels") or ""))
        if not channels:
            return JobResult.failure("InputError", "notify needs at least one channel", started_at=started)

        message = str(inputs.get("message") or f"{ctx.pipeline_name} finished with status {status}")
        outcomes = self._dispatcher_for(secrets).dispatch(
            status,
            channels,
            message,
            environment=str(inputs.get("environment") or ""),
            pipeline=ctx.pipeline_name,
        )

        delivered = [name for name, o in outcomes.items() if o.delivered]
        failed = [name for name, o in outcomes.items() if not o.delivered]
        if failed:
            return JobResult.failure(
                "DeliveryFailed",
                f"could not notify {', '.join(failed)}",
                details={name: {"state": o.state.value, "reason": o.reason} for name, o in outcomes.items()},
                started_at=started,
            )
        return JobResult.success({"delivered": ",".join(delivered), "failed": ""}, started_at=started)
