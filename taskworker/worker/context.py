import logging
from typing import Any, Mapping

from taskworker.errors import ReportingError
from taskworker.worker.models import ExternalTask
from taskworker.worker.variables import to_variables

logger = logging.getLogger(__name__)


class TaskContext:
    """
    Outcome-reporting operations handed to a handler, bound to one task and
    the worker's identity. Whether complete or fail was already called is not
    tracked here; the engine rejects reports against a resolved task.
    """
    def __init__(self, engine, worker_id: str, task: ExternalTask):
        self._engine = engine
        self.worker_id = worker_id
        self.task = task

    @property
    def task_id(self) -> str:
        return self.task.id

    def _report(self, operation: str, call, *args):
        try:
            call(self.worker_id, self.task.id, *args)
        except Exception as e:
            logger.error(f"{operation} failed for task {self.task.id} (topic {self.task.topic_name}): {e}")
            raise ReportingError(operation, self.task.id, e) from e

    def complete(self, variables: Mapping[str, Any] = None, local_variables: Mapping[str, Any] = None):
        self._report("complete", self._engine.complete, to_variables(variables), to_variables(local_variables))
        logger.info(f"Completed task {self.task.id}")

    def fail(self, message: str, details: str = "", retries: int = 0, retry_timeout_ms: int = 0):
        self._report("fail", self._engine.handle_failure, message, details, retries, retry_timeout_ms)
        logger.info(f"Reported failure for task {self.task.id} retries={retries} retryTimeout={retry_timeout_ms}")

    def extend_lock(self, new_duration_ms: int):
        self._report("extendLock", self._engine.extend_lock, new_duration_ms)

    def unlock(self):
        self._report("unlock", self._engine.unlock)
