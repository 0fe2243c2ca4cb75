import threading

import pytest

from pipecore.errors import DeploymentInFlight, InvalidTransition
from pipecore.tracker import DeploymentState, DeploymentTracker


class RecordingBackend:
    def __init__(self):
        self.created = []
        self.updates = []

    def create(self, environment, app, version):
        self.created.append((environment, app, version))
        return f"dep-{len(self.created)}"

    def update(self, deployment_id, state, *, url="", description=""):
        self.updates.append((deployment_id, state, url))


def test_begin_moves_through_pending_to_in_progress():
    backend = RecordingBackend()
    tracker = DeploymentTracker(backend)

    record = tracker.begin("prod", "api", "1.3.0")

    assert record.state == DeploymentState.IN_PROGRESS
    assert record.deployment_id == "dep-1"
    assert [s for s, _ in record.history] == [DeploymentState.PENDING, DeploymentState.IN_PROGRESS]
    # the external id is created once, on the first transition
    assert backend.created == [("prod", "api", "1.3.0")]
    assert [u[1] for u in backend.updates] == [DeploymentState.PENDING, DeploymentState.IN_PROGRESS]


def test_complete_records_terminal_state_and_url():
    tracker = DeploymentTracker()
    record = tracker.begin("prod", "api", "1.0.0")

    done = tracker.complete(record, True, url="https://api.example.com")

    assert done.state == DeploymentState.SUCCESS
    assert done.url == "https://api.example.com"
    assert tracker.current("prod", "api").state == DeploymentState.SUCCESS


def test_second_begin_while_in_progress_is_rejected():
    tracker = DeploymentTracker()
    first = tracker.begin("prod", "api", "1.0.0")

    with pytest.raises(DeploymentInFlight) as exc:
        tracker.begin("prod", "api", "1.0.1")
    assert exc.value.details["deployment_id"] == first.deployment_id

    # another app or environment is independent
    tracker.begin("staging", "api", "1.0.1")
    tracker.begin("prod", "web", "2.0.0")

    tracker.complete(first, False)
    assert tracker.begin("prod", "api", "1.0.1").state == DeploymentState.IN_PROGRESS


def test_concurrent_begin_exactly_one_wins():
    tracker = DeploymentTracker()
    barrier = threading.Barrier(8)
    wins, losses = [], []
    lock = threading.Lock()

    def attempt(i):
        barrier.wait()
        try:
            record = tracker.begin("prod", "api", f"1.0.{i}")
        except DeploymentInFlight:
            with lock:
                losses.append(i)
        else:
            with lock:
                wins.append(record)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(losses) == 7
    assert len(tracker.history("prod", "api")) == 1


def test_invalid_transitions_raise():
    tracker = DeploymentTracker()
    record = tracker.begin("prod", "api", "1.0.0")
    tracker.complete(record, True)

    with pytest.raises(InvalidTransition):
        tracker.complete(record, False)
    with pytest.raises(InvalidTransition):
        tracker.cancel(record)


def test_cancel_from_in_progress():
    tracker = DeploymentTracker()
    record = tracker.begin("prod", "api", "1.0.0")
    cancelled = tracker.cancel(record, description="run cancelled")
    assert cancelled.state == DeploymentState.CANCELLED
    assert cancelled.state.terminal


def test_snapshots_are_not_live():
    tracker = DeploymentTracker()
    record = tracker.begin("prod", "api", "1.0.0")
    record.state = DeploymentState.SUCCESS
    assert tracker.current("prod", "api").state == DeploymentState.IN_PROGRESS


def test_history_and_current_for_unknown_pair():
    tracker = DeploymentTracker()
    assert tracker.current("prod", "nothing") is None
    assert tracker.history("prod", "nothing") == []

    a = tracker.begin("prod", "api", "1")
    tracker.complete(a, True)
    b = tracker.begin("prod", "api", "2")
    tracker.complete(b, False)

    assert [r.version for r in tracker.history("prod", "api")] == ["1", "2"]
    assert tracker.current("prod", "api").version == "2"


class FlakyBackend(RecordingBackend):
    """Fails the first update into the given state."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def update(self, deployment_id, state, *, url="", description=""):
        if state == self.fail_on:
            self.fail_on = None
            raise ConnectionError("backend unreachable")
        super().update(deployment_id, state, url=url, description=description)


def test_backend_failure_during_begin_does_not_block_the_pair():
    tracker = DeploymentTracker(FlakyBackend(DeploymentState.IN_PROGRESS))

    with pytest.raises(ConnectionError):
        tracker.begin("prod", "web", "1.0")

    assert tracker.current("prod", "web").state == DeploymentState.CANCELLED
    assert tracker.begin("prod", "web", "1.1").state == DeploymentState.IN_PROGRESS


def test_backend_failure_before_pending_leaves_no_record():
    tracker = DeploymentTracker(FlakyBackend(DeploymentState.PENDING))

    with pytest.raises(ConnectionError):
        tracker.begin("prod", "web", "1.0")

    assert tracker.current("prod", "web") is None
    assert tracker.begin("prod", "web", "1.0").state == DeploymentState.IN_PROGRESS


def test_backend_failure_on_complete_still_settles_locally():
    tracker = DeploymentTracker(FlakyBackend(DeploymentState.SUCCESS))
    record = tracker.begin("prod", "web", "1.0")

    with pytest.raises(ConnectionError):
        tracker.complete(record, True)

    assert tracker.current("prod", "web").state == DeploymentState.SUCCESS
    assert tracker.begin("prod", "web", "1.1").state == DeploymentState.IN_PROGRESS
