import os
import tempfile

import pytest

# the API module binds its engine at import time
_DB_DIR = tempfile.mkdtemp(prefix="pipecore-tests-")
os.environ["PIPECORE_DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/runs.db"

from fakes import FakeExecutor  # noqa: E402

from pipecore.model import JobKind  # noqa: E402
from pipecore.tracker import DeploymentTracker, set_tracker  # noqa: E402


@pytest.fixture
def fakes():
    return {kind: FakeExecutor(kind) for kind in JobKind}


@pytest.fixture
def tracker():
    t = DeploymentTracker()
    set_tracker(t)
    return t
