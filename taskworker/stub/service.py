import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from pydantic.alias_generators import to_camel

from taskworker.stub.models import (
    Intent,
    PushIntent,
    FetchAndLockIntent,
    CompleteIntent,
    FailureIntent,
    ExtendLockIntent,
    UnlockIntent,
    render_summary,
)
from taskworker.worker.variables import to_variables

logger = logging.getLogger(__name__)


class InMemoryEngine:
    """
    Process-local stand-in for the engine's external task API, for local
    development and tests. Holds tasks in a dict guarded by one lock; every
    operation is an Intent applied under that lock.
    """
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._data: Dict[str, Any] = {"tasks": []}
        self._lock = threading.Lock()

        # Metrics
        self.metrics = {
            "total_intents": 0,
            "total_fetched": 0,
            "total_rejected": 0,
        }

    def _apply(self, intent: Intent) -> Any:
        with self._lock:
            self.metrics["total_intents"] += 1
            try:
                return intent.apply(self._data, self.clock())
            except Exception:
                self.metrics["total_rejected"] += 1
                raise

    def push_task(self, topic_name: str, variables: Dict[str, Any] = None, **correlation) -> str:
        """Create an available task. Correlation fields are given in snake_case."""
        wire_variables = {name: v.to_wire() for name, v in to_variables(variables).items()}
        camel = {to_camel(key): value for key, value in correlation.items()}
        task_id = self._apply(PushIntent(topic_name, wire_variables, **camel))
        logger.info(json.dumps({"event": "task_pushed", "task_id": task_id, "topic": topic_name}))
        return task_id

    def fetch_and_lock(self, worker_id: str, max_tasks: int, topics: List[dict]) -> List[dict]:
        locked = self._apply(FetchAndLockIntent(worker_id, max_tasks, topics))
        with self._lock:
            self.metrics["total_fetched"] += len(locked)
        return locked

    def complete(self, task_id: str, worker_id: str, variables: dict = None, local_variables: dict = None):
        return self._apply(CompleteIntent(task_id, worker_id, variables, local_variables))

    def failure(self, task_id: str, worker_id: str, error_message: str = None, error_details: str = None,
                retries: int = 0, retry_timeout_ms: int = 0):
        return self._apply(FailureIntent(task_id, worker_id, error_message, error_details,
                                         retries, retry_timeout_ms))

    def extend_lock(self, task_id: str, worker_id: str, new_duration_ms: int):
        return self._apply(ExtendLockIntent(task_id, worker_id, new_duration_ms))

    def unlock(self, task_id: str):
        return self._apply(UnlockIntent(task_id))

    def list_tasks(self, topic_name: Optional[str] = None) -> List[dict]:
        with self._lock:
            return [
                render_summary(task) for task in self._data["tasks"]
                if topic_name is None or task["topic_name"] == topic_name
            ]

    def get_task(self, task_id: str) -> Optional[dict]:
        """Raw stored record, including the variables the task was completed with."""
        with self._lock:
            for task in self._data["tasks"]:
                if task["id"] == task_id:
                    return json.loads(json.dumps(task))
        return None
