import functools
import logging

from taskworker.errors import ReportingError

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Task processing failed"
DEFAULT_FAILURE_RETRIES = 3
DEFAULT_RETRY_TIMEOUT_MS = 30000


def auto_fail(handler, message: str = DEFAULT_FAILURE_MESSAGE, retries: int = DEFAULT_FAILURE_RETRIES,
              retry_timeout_ms: int = DEFAULT_RETRY_TIMEOUT_MS):
    """
    Wrap a handler so that an exception it raises is reported to the engine
    as a task failure, with the exception text as error details. The
    exception is re-raised afterwards so the dispatcher still records it.
    """
    @functools.wraps(handler)
    def wrapper(task, ctx):
        logger.info(f"Processing task {task.id} topic={task.topic_name}")
        try:
            handler(task, ctx)
        except Exception as e:
            logger.error(f"Task processing failed task={task.id} topic={task.topic_name}: {e}")
            try:
                ctx.fail(message, str(e), retries, retry_timeout_ms)
            except ReportingError as report_error:
                logger.error(f"Failed to report task failure task={task.id}: {report_error}")
            raise
        logger.info(f"Task processed successfully task={task.id} topic={task.topic_name}")

    return wrapper
