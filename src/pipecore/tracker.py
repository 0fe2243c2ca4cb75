# tracker.py
"""
Deployment lifecycle tracking.

    none -> pending -> in_progress -> success | failure
                 \\            \\
                  +-> cancelled +-> cancelled

The tracker is process-wide shared state: every (environment, app) pair has
its own lock, and at most one deployment per pair may be in progress at a
time. Records are created on the first `begin` and never destroyed.
"""
from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

from .errors import DeploymentInFlight, InvalidTransition
from .model import utcnow

logger = logging.getLogger(__name__)


class DeploymentState(str, Enum):
    NONE = "none"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (DeploymentState.SUCCESS, DeploymentState.FAILURE, DeploymentState.CANCELLED)


_TRANSITIONS = {
    DeploymentState.NONE: {DeploymentState.PENDING},
    DeploymentState.PENDING: {DeploymentState.IN_PROGRESS, DeploymentState.CANCELLED},
    DeploymentState.IN_PROGRESS: {DeploymentState.SUCCESS, DeploymentState.FAILURE, DeploymentState.CANCELLED},
}


@dataclass
class DeploymentRecord:
    environment: str
    app: str
    version: str
    deployment_id: Optional[str] = None
    state: DeploymentState = DeploymentState.NONE
    url: str = ""
    history: List[Tuple[DeploymentState, datetime]] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.environment, self.app)

    def to_dict(self) -> dict:
        return {
            "deployment_id": self.deployment_id,
            "environment": self.environment,
            "app": self.app,
            "version": self.version,
            "state": self.state.value,
            "url": self.url,
            "history": [{"state": s.value, "at": at.isoformat()} for s, at in self.history],
        }


class DeploymentBackend(Protocol):
    """External deployment record (e.g. the source-control host's deployments API)."""

    def create(self, environment: str, app: str, version: str) -> str: ...

    def update(self, deployment_id: str, state: DeploymentState, *, url: str = "", description: str = "") -> None: ...


class LocalDeploymentBackend:
    """Keeps deployment ids local to the process."""

    def create(self, environment: str, app: str, version: str) -> str:
        return uuid.uuid4().hex

    def update(self, deployment_id: str, state: DeploymentState, *, url: str = "", description: str = "") -> None:
        logger.debug("deployment %s -> %s", deployment_id, state.value)


class DeploymentTracker:
    def __init__(self, backend: Optional[DeploymentBackend] = None):
        self.backend = backend or LocalDeploymentBackend()
        self._records: Dict[Tuple[str, str], List[DeploymentRecord]] = {}
        self._locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: Tuple[str, str]) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
                self._records[key] = []
            return lock

    def _transition(self, record: DeploymentRecord, target: DeploymentState, description: str = "") -> None:
        if target not in _TRANSITIONS.get(record.state, set()):
            raise InvalidTransition(record.deployment_id, record.state.value, target.value)
        try:
            if record.deployment_id is None:
                record.deployment_id = self.backend.create(record.environment, record.app, record.version)
            self.backend.update(record.deployment_id, target, url=record.url, description=description)
        except Exception:
            # terminal states are applied even when the backend cannot be told
            if target.terminal:
                self._settle(record, target)
            raise
        record.state = target
        record.history.append((target, utcnow()))
        logger.info("deployment %s of %s to %s: %s", record.deployment_id, record.app, record.environment, target.value)

    def _settle(self, record: DeploymentRecord, target: DeploymentState) -> None:
        """Move a live record to a terminal state without calling the backend."""
        logger.warning(
            "deployment %s of %s to %s: backend update failed, marking %s locally",
            record.deployment_id,
            record.app,
            record.environment,
            target.value,
        )
        record.state = target
        record.history.append((target, utcnow()))

    def _find(self, record: DeploymentRecord) -> DeploymentRecord:
        for candidate in self._records.get(record.key, []):
            if candidate.deployment_id == record.deployment_id:
                return candidate
        raise KeyError(f"Unknown deployment {record.deployment_id} for {record.app} in {record.environment}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin(self, environment: str, app: str, version: str) -> DeploymentRecord:
        """Create a record and move it to in_progress, or raise DeploymentInFlight."""
        key = (environment, app)
        with self._lock_for(key):
            for existing in self._records[key]:
                if existing.state in (DeploymentState.PENDING, DeploymentState.IN_PROGRESS):
                    raise DeploymentInFlight(environment, app, existing.deployment_id)

            record = DeploymentRecord(environment=environment, app=app, version=version)
            self._transition(record, DeploymentState.PENDING)
            self._records[key].append(record)
            try:
                self._transition(record, DeploymentState.IN_PROGRESS)
            except Exception:
                self._settle(record, DeploymentState.CANCELLED)
                raise
            return copy.deepcopy(record)

    def complete(
        self,
        record: DeploymentRecord,
        outcome: DeploymentState | bool,
        *,
        url: str = "",
        description: str = "",
    ) -> DeploymentRecord:
        if isinstance(outcome, bool):
            outcome = DeploymentState.SUCCESS if outcome else DeploymentState.FAILURE
        if outcome not in (DeploymentState.SUCCESS, DeploymentState.FAILURE):
            raise ValueError(f"complete() takes success or failure, got {outcome.value}")

        with self._lock_for(record.key):
            live = self._find(record)
            if url:
                live.url = url
            self._transition(live, outcome, description)
            return copy.deepcopy(live)

    def cancel(self, record: DeploymentRecord, *, description: str = "") -> DeploymentRecord:
        with self._lock_for(record.key):
            live = self._find(record)
            self._transition(live, DeploymentState.CANCELLED, description)
            return copy.deepcopy(live)

    def current(self, environment: str, app: str) -> Optional[DeploymentRecord]:
        """Latest deployment for the pair, or None if it was never deployed."""
        key = (environment, app)
        with self._lock_for(key):
            records = self._records[key]
            return copy.deepcopy(records[-1]) if records else None

    def history(self, environment: str, app: str) -> List[DeploymentRecord]:
        key = (environment, app)
        with self._lock_for(key):
            return copy.deepcopy(self._records[key])


# Process-wide tracker (shared by every run of this process)
_tracker: Optional[DeploymentTracker] = None
_tracker_lock = threading.Lock()


def get_tracker() -> DeploymentTracker:
    """Get the global deployment tracker."""
    global _tracker
    with _tracker_lock:
        if _tracker is None:
            _tracker = DeploymentTracker()
        return _tracker


def set_tracker(tracker: DeploymentTracker) -> None:
    """Set the global deployment tracker."""
    global _tracker
    with _tracker_lock:
        _tracker = tracker
