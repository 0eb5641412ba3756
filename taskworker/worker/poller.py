import json
import logging
import threading
from typing import Callable, Iterable, List, Optional

from taskworker.errors import TaskWorkerError
from taskworker.worker.dispatch import Dispatcher, TaskGroup, TaskOutcome
from taskworker.worker.models import ExternalTask
from taskworker.worker.policy import auto_fail
from taskworker.worker.registry import Handler, RoutingTable, TopicRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_TASKS = 10
DEFAULT_POLL_INTERVAL_SEC = 5.0
DEFAULT_BATCH_PAUSE_SEC = 1.0


class ExternalTaskWorker:
    """
    Polls the engine for tasks on every registered topic and hands each
    fetched task to its handler on a separate thread.

    Handlers are registered before start(); start() freezes them into a
    read-only routing table and blocks until stop() (or the stop event passed
    in) is set. Fetch failures never end the loop. Each start() gets a fresh stop
    event, so a stopped worker can be started again. Tasks still running when
    the loop ends are left alone; call drain() to wait for them.
    """
    def __init__(self, engine, worker_id: str, max_tasks: int = DEFAULT_MAX_TASKS,
                 poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
                 batch_pause_sec: float = DEFAULT_BATCH_PAUSE_SEC,
                 max_concurrency: int = None, use_priority: bool = True,
                 async_response_timeout_ms: int = None,
                 on_result: Callable[[TaskOutcome], None] = None,
                 failure_retries: int = 3, failure_retry_timeout_ms: int = 30000):
        self.engine = engine
        self.worker_id = worker_id
        self.max_tasks = max_tasks
        self.poll_interval_sec = poll_interval_sec
        self.batch_pause_sec = batch_pause_sec
        self.use_priority = use_priority
        self.async_response_timeout_ms = async_response_timeout_ms
        self.on_result = on_result
        self.failure_retries = failure_retries
        self.failure_retry_timeout_ms = failure_retry_timeout_ms

        self.registry = TopicRegistry()
        self.group = TaskGroup(max_concurrency, name=f"{worker_id}-task")
        self._routes: Optional[RoutingTable] = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._running = False

    @classmethod
    def from_settings(cls, engine, settings, **kwargs) -> "ExternalTaskWorker":
        options = dict(
            max_tasks=settings.max_tasks,
            poll_interval_sec=settings.poll_interval_sec,
            batch_pause_sec=settings.batch_pause_sec,
            max_concurrency=settings.max_concurrency,
            use_priority=settings.use_priority,
            async_response_timeout_ms=settings.async_response_timeout_ms,
            failure_retries=settings.failure_retries,
            failure_retry_timeout_ms=settings.failure_retry_timeout_ms,
        )
        options.update(kwargs)
        return cls(engine, settings.worker_id, **options)

    # --- Registration ---
    def register(self, topic_name: str, handler: Handler, lock_duration_ms: int,
                 variables: Optional[Iterable[str]] = None, **filters) -> "ExternalTaskWorker":
        if self._routes is not None:
            raise RuntimeError("Handlers must be registered before the worker is started")
        self.registry.register(topic_name, handler, lock_duration_ms, variables, **filters)
        return self

    def handler(self, topic_name: str, lock_duration_ms: int, variables: Optional[Iterable[str]] = None,
                **filters):
        """Decorator form of register() that reports raised exceptions as task failures."""
        def decorator(fn: Handler) -> Handler:
            wrapped = auto_fail(fn, retries=self.failure_retries, retry_timeout_ms=self.failure_retry_timeout_ms)
            self.register(topic_name, wrapped, lock_duration_ms, variables, **filters)
            return fn
        return decorator

    def resolve(self, topic_name: str) -> Optional[Handler]:
        if self._routes is not None:
            return self._routes.resolve(topic_name)
        return self.registry.resolve(topic_name)

    def set_max_tasks(self, max_tasks: int) -> "ExternalTaskWorker":
        if max_tasks <= 0:
            raise ValueError(f"max_tasks must be positive, got {max_tasks}")
        self.max_tasks = max_tasks
        return self

    def set_poll_interval(self, interval_sec: float) -> "ExternalTaskWorker":
        if interval_sec <= 0:
            raise ValueError(f"poll interval must be positive, got {interval_sec}")
        self.poll_interval_sec = interval_sec
        return self

    # --- Lifecycle ---
    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return self.group.in_flight

    def stop(self):
        """Stop the current run. Has no effect on a worker that is not running."""
        self._stop_event.set()

    def drain(self, timeout: float = None) -> bool:
        """Wait for dispatched tasks to finish. Returns False if the timeout expired first."""
        return self.group.drain(timeout)

    def start(self, stop_event: threading.Event = None):
        """Run the poll loop until stop() is called or stop_event is set."""
        with self._state_lock:
            if self._running:
                raise RuntimeError("Worker is already running")
            if not len(self.registry):
                raise RuntimeError("No topics registered, nothing to poll")
            self._stop_event = stop_event if stop_event is not None else threading.Event()
            self._running = True

        if self._routes is None:
            self._routes = self.registry.freeze()
        dispatcher = Dispatcher(self._routes, self.engine, self.worker_id, self.group, self.on_result)

        logger.info(json.dumps({
            "event": "worker_started",
            "worker_id": self.worker_id,
            "topics": [s.topic_name for s in self._routes.subscriptions],
            "max_tasks": self.max_tasks,
        }))
        try:
            self._poll_loop(dispatcher, self._stop_event)
        finally:
            self._running = False
            logger.info(json.dumps({
                "event": "worker_stopped",
                "worker_id": self.worker_id,
                "in_flight": self.group.in_flight,
            }))

    def _poll_loop(self, dispatcher: Dispatcher, stop_event: threading.Event):
        while not stop_event.is_set():
            try:
                tasks = self._fetch()
            except TaskWorkerError as e:
                logger.warning(f"Failed to fetch tasks: {e}")
                stop_event.wait(self.poll_interval_sec)
                continue
            except Exception:
                logger.exception("Unexpected error while fetching tasks")
                stop_event.wait(self.poll_interval_sec)
                continue

            if not tasks:
                stop_event.wait(self.poll_interval_sec)
                continue

            logger.info(f"Fetched {len(tasks)} tasks")
            for task in tasks:
                try:
                    dispatcher.dispatch(task)
                except Exception:
                    # The task keeps its lock and is fetched again once it expires
                    logger.exception(f"Failed to dispatch task {task.id} on topic {task.topic_name}")

            # Give the engine a moment before asking again while this batch drains
            stop_event.wait(self.batch_pause_sec)

    def _fetch(self) -> List[ExternalTask]:
        return self.engine.fetch_and_lock(
            self.worker_id,
            self.max_tasks,
            self._routes.subscriptions,
            use_priority=self.use_priority,
            async_response_timeout_ms=self.async_response_timeout_ms,
        )
