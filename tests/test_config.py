import pytest

from pipecore.config import DEFAULT_DATABASE_URL, DEFAULT_JOB_TIMEOUT, Settings, secrets_from_env


def test_defaults_from_empty_environment():
    settings = Settings.from_env({})
    assert settings.max_workers is None
    assert settings.job_timeout == DEFAULT_JOB_TIMEOUT
    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.webhooks == {}
    assert 1 <= settings.workers() <= 8


def test_values_from_environment():
    settings = Settings.from_env({
        "PIPECORE_MAX_WORKERS": "3",
        "PIPECORE_JOB_TIMEOUT": "90",
        "PIPECORE_WEBHOOK_SLACK": "https://hooks.slack.example/x",
        "PIPECORE_WEBHOOK_OPS_TEAMS": "https://teams.example/y",
        "PIPECORE_WEBHOOK_DISCORD": "",
        "PIPECORE_GITHUB_TOKEN": "ghp_x",
        "PIPECORE_GITHUB_REPOSITORY": "acme/api",
    })
    assert settings.workers() == 3
    assert settings.job_timeout == 90.0
    assert settings.webhooks == {
        "slack": "https://hooks.slack.example/x",
        "ops-teams": "https://teams.example/y",
    }
    assert settings.github_repository == "acme/api"


@pytest.mark.parametrize("name, value", [("PIPECORE_MAX_WORKERS", "many"), ("PIPECORE_JOB_TIMEOUT", "soon")])
def test_bad_numbers_name_the_variable(name, value):
    with pytest.raises(ValueError) as exc:
        Settings.from_env({name: value})
    assert name in str(exc.value)


def test_secrets_from_env():
    env = {"PIPECORE_SECRET_DEPLOY_TOKEN": "t", "PIPECORE_SECRET_NPM_TOKEN": "n", "HOME": "/root"}
    assert secrets_from_env(env) == {"deploy-token": "t", "npm-token": "n"}
