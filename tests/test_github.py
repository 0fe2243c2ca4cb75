from pipecore.github import GitHubDeploymentBackend, _error_message
from pipecore.tracker import DeploymentState


class RecordingClient:
    def __init__(self):
        self.calls = []

    def create_deployment(self, repository, ref, environment, payload):
        self.calls.append(("create", repository, ref, environment, payload))
        return {"id": 42}

    def create_deployment_status(self, repository, deployment_id, state, **fields):
        self.calls.append(("status", repository, deployment_id, state, {k: v for k, v in fields.items() if v}))
        return {}


def test_backend_creates_deployment_with_app_and_version():
    client = RecordingClient()
    backend = GitHubDeploymentBackend(client, "acme/api", ref="release")

    assert backend.create("production", "api", "1.4.0") == "42"
    assert client.calls == [("create", "acme/api", "release", "production", {"app": "api", "version": "1.4.0"})]


def test_backend_maps_cancelled_to_inactive_and_truncates_description():
    client = RecordingClient()
    backend = GitHubDeploymentBackend(client, "acme/api")

    backend.update("42", DeploymentState.CANCELLED, description="x" * 200)
    backend.update("42", DeploymentState.SUCCESS, url="https://api.example.com")

    cancelled, succeeded = client.calls
    assert cancelled[3] == "inactive"
    assert len(cancelled[4]["description"]) == 140
    assert succeeded[3] == "success"
    assert succeeded[4] == {"environment_url": "https://api.example.com"}


def test_error_message_prefers_github_json_message():
    assert _error_message(b'{"message": "Not Found", "documentation_url": "x"}') == "Not Found"
    assert _error_message(b"<html>bad gateway</html>\n") == "<html>bad gateway</html>"
    assert _error_message(b"") == ""
