# notify.py
"""
Notification fan-out.

Every channel is attempted independently: a failure delivering to one
channel never prevents attempts on the others, and the result reports an
outcome per channel.
"""
from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Iterable, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)


class DeliveryState(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    UNKNOWN_CHANNEL = "unknown-channel"


@dataclass(frozen=True)
class DeliveryOutcome:
    state: DeliveryState
    reason: str = ""

    @property
    def delivered(self) -> bool:
        return self.state == DeliveryState.DELIVERED


@dataclass(frozen=True)
class Notification:
    status: str
    message: str
    environment: str = ""
    pipeline: str = ""


class DeliveryError(Exception):
    """Raised by a channel when a message could not be delivered."""


class Channel(Protocol):
    def send(self, notification: Notification) -> None: ...


# ---------------------------------------------------------------------
# Payload formatters
# ---------------------------------------------------------------------

_COLORS = {"success": "#2eb886", "failure": "#d00000", "cancelled": "#808080"}


def _headline(n: Notification) -> str:
    parts = [n.pipeline or "pipeline", n.status.upper()]
    if n.environment:
        parts.append(f"({n.environment})")
    return " ".join(parts)


def slack_payload(n: Notification) -> dict:
    return {
        "text": _headline(n),
        "attachments": [{"color": _COLORS.get(n.status, "#439fe0"), "text": n.message}],
    }


def discord_payload(n: Notification) -> dict:
    color = int(_COLORS.get(n.status, "#439fe0").lstrip("#"), 16)
    return {"content": _headline(n), "embeds": [{"description": n.message, "color": color}]}


def teams_payload(n: Notification) -> dict:
    return {
        "@type": "MessageCard",
        "@context": "https://schema.org/extensions",
        "themeColor": _COLORS.get(n.status, "#439fe0").lstrip("#"),
        "summary": _headline(n),
        "title": _headline(n),
        "text": n.message,
    }


def generic_payload(n: Notification) -> dict:
    return {"status": n.status, "environment": n.environment, "pipeline": n.pipeline, "message": n.message}


FORMATTERS: Dict[str, Callable[[Notification], dict]] = {
    "slack": slack_payload,
    "discord": discord_payload,
    "teams": teams_payload,
}


class WebhookChannel:
    """POSTs a JSON payload to an incoming-webhook URL."""

    def __init__(self, url: str, formatter: Callable[[Notification], dict] = generic_payload, timeout: float = 10.0):
        self.url = url
        self.formatter = formatter
        self.timeout = timeout

    def send(self, notification: Notification) -> None:
        data = json.dumps(self.formatter(notification)).encode("utf-8")
        req = urllib.request.Request(
            self.url,
            data=data,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if response.status >= 300:
                    raise DeliveryError(f"webhook returned HTTP {response.status}")
        except urllib.error.HTTPError as e:
            raise DeliveryError(f"webhook returned HTTP {e.code} {e.reason}") from e
        except urllib.error.URLError as e:
            raise DeliveryError(f"network error: {e.reason}") from e


class NotificationDispatcher:
    def __init__(self, channels: Optional[Mapping[str, Channel]] = None):
        self.channels: Dict[str, Channel] = dict(channels or {})

    @classmethod
    def from_webhooks(cls, urls: Mapping[str, str]) -> "NotificationDispatcher":
        """Build webhook channels, picking the payload format from the channel name."""
        return cls({
            name: WebhookChannel(url, FORMATTERS.get(name, generic_payload))
            for name, url in urls.items()
            if url
        })

    def register(self, name: str, channel: Channel) -> None:
        self.channels[name] = channel

    def dispatch(
        self,
        status: str,
        channels: Iterable[str],
        message: str,
        *,
        environment: str = "",
        pipeline: str = "",
    ) -> Dict[str, DeliveryOutcome]:
        notification = Notification(status=status, message=message, environment=environment, pipeline=pipeline)
        outcomes: Dict[str, DeliveryOutcome] = {}

        for name in channels:
            if name in outcomes:
                continue
            channel = self.channels.get(name)
            if channel is None:
                outcomes[name] = DeliveryOutcome(DeliveryState.UNKNOWN_CHANNEL, f"no channel named '{name}'")
                continue
            try:
                channel.send(notification)
            except Exception as e:
                logger.warning("delivery to channel '%s' failed: %s", name, e)
                outcomes[name] = DeliveryOutcome(DeliveryState.FAILED, str(e) or e.__class__.__name__)
            else:
                outcomes[name] = DeliveryOutcome(DeliveryState.DELIVERED)
        return outcomes


def parse_channels(value: str | Iterable[str]) -> list[str]:
    """'slack, teams' -> ['slack', 'teams']"""
    if isinstance(value, str):
        items = value.replace("\n", ",").split(",")
    else:
        items = list(value)
    return [c.strip() for c in items if c and c.strip()]
