# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

ENV_PREFIX = "PIPECORE_"
WEBHOOK_PREFIX = ENV_PREFIX + "WEBHOOK_"
SECRET_PREFIX = ENV_PREFIX + "SECRET_"

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./.pipecore/runs.db"
DEFAULT_JOB_TIMEOUT = 3600.0


def _env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    raw = env.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


@dataclass
class Settings:
    """Process configuration, read from PIPECORE_* environment variables."""
    max_workers: Optional[int] = None
    job_timeout: float = DEFAULT_JOB_TIMEOUT
    webhooks: Dict[str, str] = field(default_factory=dict)
    database_url: str = DEFAULT_DATABASE_URL
    github_api: str = "https://api.github.com"
    github_token: str = ""
    github_repository: str = ""

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        webhooks = {
            key[len(WEBHOOK_PREFIX):].lower().replace("_", "-"): value
            for key, value in env.items()
            if key.startswith(WEBHOOK_PREFIX) and value
        }
        return cls(
            max_workers=_env_int(env, ENV_PREFIX + "MAX_WORKERS"),
            job_timeout=_env_float(env, ENV_PREFIX + "JOB_TIMEOUT", DEFAULT_JOB_TIMEOUT),
            webhooks=webhooks,
            database_url=env.get(ENV_PREFIX + "DATABASE_URL") or DEFAULT_DATABASE_URL,
            github_api=env.get(ENV_PREFIX + "GITHUB_API") or "https://api.github.com",
            github_token=env.get(ENV_PREFIX + "GITHUB_TOKEN", ""),
            github_repository=env.get(ENV_PREFIX + "GITHUB_REPOSITORY", ""),
        )

    def workers(self) -> int:
        return self.max_workers or min(8, (os.cpu_count() or 2))


def secrets_from_env(env: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """PIPECORE_SECRET_DEPLOY_TOKEN=x -> {"deploy-token": "x"}"""
    env = os.environ if env is None else env
    return {
        key[len(SECRET_PREFIX):].lower().replace("_", "-"): value
        for key, value in env.items()
        if key.startswith(SECRET_PREFIX)
    }
