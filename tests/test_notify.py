import json
import sys

from fakes import FakeChannel

from pipecore.notify import (
    DeliveryError,
    DeliveryState,
    NotificationDispatcher,
    Notification,
    WebhookChannel,
    discord_payload,
    parse_channels,
    slack_payload,
    teams_payload,
)


def test_unknown_channel_does_not_block_known_ones():
    slack = FakeChannel()
    dispatcher = NotificationDispatcher({"slack": slack})

    outcomes = dispatcher.dispatch("failure", ["slack", "unknown-channel"], "deploy failed", environment="prod")

    assert outcomes["slack"].state == DeliveryState.DELIVERED
    assert outcomes["unknown-channel"].state == DeliveryState.UNKNOWN_CHANNEL
    assert len(slack.sent) == 1
    assert slack.sent[0].status == "failure"
    assert slack.sent[0].environment == "prod"


def test_failing_channel_is_reported_and_others_still_attempted():
    broken = FakeChannel(fail_with=DeliveryError("HTTP 500"))
    teams = FakeChannel()
    dispatcher = NotificationDispatcher({"discord": broken, "teams": teams})

    outcomes = dispatcher.dispatch("success", ["discord", "teams"], "ok")

    assert outcomes["discord"].state == DeliveryState.FAILED
    assert outcomes["discord"].reason == "HTTP 500"
    assert outcomes["teams"].delivered
    assert len(teams.sent) == 1


def test_duplicate_channel_names_are_sent_once():
    slack = FakeChannel()
    NotificationDispatcher({"slack": slack}).dispatch("success", ["slack", "slack"], "hi")
    assert len(slack.sent) == 1


def test_from_webhooks_picks_formatter_by_name():
    dispatcher = NotificationDispatcher.from_webhooks({
        "slack": "https://hooks.slack.example/x",
        "custom": "https://example.com/hook",
        "teams": "",
    })
    assert set(dispatcher.channels) == {"slack", "custom"}
    assert dispatcher.channels["slack"].formatter is slack_payload


def test_payload_formats():
    n = Notification(status="failure", message="boom", environment="prod", pipeline="release")
    assert slack_payload(n)["text"] == "release FAILURE (prod)"
    assert discord_payload(n)["embeds"][0]["color"] == 0xD00000
    assert teams_payload(n)["text"] == "boom"


def test_webhook_channel_posts_json(monkeypatch):
    captured = {}

    class Response:
        status = 200

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    def fake_urlopen(req, timeout=None):
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["method"] = req.get_method()
        return Response()

    # `pipecore.notify` on the package is the DSL helper; patch via the module itself.
    monkeypatch.setattr(sys.modules["pipecore.notify"].urllib.request, "urlopen", fake_urlopen)
    WebhookChannel("https://example.com/hook").send(Notification(status="success", message="done"))

    assert captured["method"] == "POST"
    assert captured["body"]["status"] == "success"
    assert captured["body"]["message"] == "done"


def test_parse_channels():
    assert parse_channels("slack, teams,,discord ") == ["slack", "teams", "discord"]
    assert parse_channels(["slack", " "]) == ["slack"]
