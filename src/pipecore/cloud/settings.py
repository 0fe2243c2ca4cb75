from __future__ import annotations

from pathlib import Path

from ..config import Settings

settings = Settings.from_env()

DATABASE_URL = settings.database_url


def ensure_sqlite_dir(url: str) -> None:
    # sqlite+aiosqlite:///./.pipecore/runs.db -> ./.pipecore must exist
    if url.startswith("sqlite") and ":///" in url:
        path = url.split(":///", 1)[1]
        if path and path != ":memory:":
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
