"""Shared test fixtures."""
import threading
import time

import pytest

from taskworker.worker.models import ExternalTask


class FakeEngine:
    """
    Scripted stand-in for EngineClient. Each fetch_and_lock call pops the next
    scripted step: a list of tasks is returned, an exception is raised. Once
    the script runs out, fetches return no tasks.
    """
    def __init__(self, script=None):
        self.script = list(script or [])
        self.fetches = []
        self.completed = []
        self.failures = []
        self.extended = []
        self.unlocked = []
        self.fail_reports_with = None
        self._lock = threading.Lock()

    def fetch_and_lock(self, worker_id, max_tasks, topics, use_priority=True, async_response_timeout_ms=None):
        with self._lock:
            self.fetches.append({"worker_id": worker_id, "max_tasks": max_tasks, "topics": list(topics)})
            step = self.script.pop(0) if self.script else []
        if isinstance(step, Exception):
            raise step
        return step

    def _record(self, bucket, entry):
        if self.fail_reports_with is not None:
            raise self.fail_reports_with
        with self._lock:
            bucket.append(entry)

    def complete(self, worker_id, task_id, variables=None, local_variables=None):
        self._record(self.completed, (worker_id, task_id, variables, local_variables))

    def handle_failure(self, worker_id, task_id, message, details="", retries=0, retry_timeout_ms=0):
        self._record(self.failures, (worker_id, task_id, message, details, retries, retry_timeout_ms))

    def extend_lock(self, worker_id, task_id, new_duration_ms):
        self._record(self.extended, (worker_id, task_id, new_duration_ms))

    def unlock(self, worker_id, task_id):
        self._record(self.unlocked, (worker_id, task_id))


def make_task(task_id, topic_name, **variables):
    return ExternalTask.model_validate({
        "id": task_id,
        "topicName": topic_name,
        "variables": {
            name: {"value": value, "type": "Integer" if isinstance(value, int) else "String"}
            for name, value in variables.items()
        },
    })


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class BackgroundWorker:
    """Runs worker.start() on a thread so a test can drive and stop it."""

    def __init__(self, worker):
        self.worker = worker
        self.stop_event = threading.Event()
        self.thread = threading.Thread(target=worker.start, args=(self.stop_event,), daemon=True)

    def __enter__(self):
        self.thread.start()
        return self

    def stop(self, timeout=2.0) -> bool:
        self.stop_event.set()
        self.thread.join(timeout)
        return not self.thread.is_alive()

    def __exit__(self, *exc_info):
        self.stop()


@pytest.fixture()
def fake_engine():
    return FakeEngine()
