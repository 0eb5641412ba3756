import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from taskworker.errors import HandlerError, RoutingError, TaskWorkerError
from taskworker.worker.context import TaskContext
from taskworker.worker.models import ExternalTask
from taskworker.worker.registry import RoutingTable

logger = logging.getLogger(__name__)


class TaskOutcome:
    HANDLED = "handled"
    FAILED = "failed"
    UNROUTED = "unrouted"

    def __init__(self, task_id: str, topic_name: str, status: str,
                 error: Optional[TaskWorkerError] = None, duration_ms: float = 0.0):
        self.task_id = task_id
        self.topic_name = topic_name
        self.status = status
        self.error = error
        self.duration_ms = duration_ms

    @property
    def ok(self) -> bool:
        return self.status == self.HANDLED

    def __repr__(self):
        return f"TaskOutcome(task_id={self.task_id!r}, topic_name={self.topic_name!r}, status={self.status!r})"


class TaskGroup:
    """
    Supervises the execution units spawned for fetched tasks.

    Without a concurrency bound every task gets its own daemon thread. With
    one, tasks go to a thread pool and wait for a free worker there; spawn()
    itself never blocks. Nothing is ever cancelled; drain() lets a caller
    wait until all spawned work has finished.
    """
    def __init__(self, max_concurrency: int = None, name: str = "task"):
        if max_concurrency is not None and max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be positive, got {max_concurrency}")
        self.name = name
        self.max_concurrency = max_concurrency
        self._executor = (
            ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix=name)
            if max_concurrency else None
        )
        self._idle = threading.Condition(threading.Lock())
        self._in_flight = 0
        self._spawned = 0

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def spawn(self, fn: Callable, *args):
        with self._idle:
            self._in_flight += 1
            self._spawned += 1
            seq = self._spawned

        def run():
            try:
                fn(*args)
            finally:
                self._release()

        try:
            if self._executor:
                self._executor.submit(run)
            else:
                threading.Thread(target=run, name=f"{self.name}-{seq}", daemon=True).start()
        except Exception:
            # Nothing was started, so nothing will ever release this slot
            self._release()
            raise

    def _release(self):
        with self._idle:
            self._in_flight -= 1
            if self._in_flight == 0:
                self._idle.notify_all()

    def drain(self, timeout: float = None) -> bool:
        """Block until no spawned work is running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._in_flight == 0, timeout)

    def shutdown(self, wait: bool = False):
        if self._executor:
            self._executor.shutdown(wait=wait)


class Dispatcher:
    """
    Routes each fetched task to its handler on its own execution unit.
    A task whose topic has no route, or whose handler raises, ends here:
    the failure is logged and emitted as a TaskOutcome, never propagated.
    """
    def __init__(self, routes: RoutingTable, engine, worker_id: str, group: TaskGroup,
                 on_result: Callable[[TaskOutcome], None] = None):
        self.routes = routes
        self.engine = engine
        self.worker_id = worker_id
        self.group = group
        self.on_result = on_result

    def dispatch(self, task: ExternalTask):
        self.group.spawn(self.execute, task)

    def execute(self, task: ExternalTask) -> TaskOutcome:
        route = self.routes.route(task.topic_name)
        if route is None:
            # The task stays locked until the engine's own lock timeout elapses
            error = RoutingError(task.id, task.topic_name)
            logger.error(str(error))
            return self._emit(TaskOutcome(task.id, task.topic_name, TaskOutcome.UNROUTED, error))

        ctx = TaskContext(self.engine, self.worker_id, task)
        start_t = time.perf_counter()
        try:
            route.handler(task, ctx)
            outcome = TaskOutcome(task.id, task.topic_name, TaskOutcome.HANDLED)
        except Exception as e:
            error = HandlerError(task.id, task.topic_name, e)
            error.__cause__ = e
            logger.exception(str(error))
            outcome = TaskOutcome(task.id, task.topic_name, TaskOutcome.FAILED, error)
        outcome.duration_ms = round((time.perf_counter() - start_t) * 1000, 2)

        if outcome.duration_ms > route.lock_duration_ms:
            logger.warning(json.dumps({
                "event": "lock_overrun",
                "task_id": task.id,
                "topic": task.topic_name,
                "duration_ms": outcome.duration_ms,
                "lock_duration_ms": route.lock_duration_ms,
            }))
        return self._emit(outcome)

    def _emit(self, outcome: TaskOutcome) -> TaskOutcome:
        logger.info(json.dumps({
            "event": "task_done",
            "task_id": outcome.task_id,
            "topic": outcome.topic_name,
            "status": outcome.status,
            "duration_ms": outcome.duration_ms,
        }))
        if self.on_result:
            try:
                self.on_result(outcome)
            except Exception:
                logger.exception(f"Result callback failed for task {outcome.task_id}")
        return outcome
