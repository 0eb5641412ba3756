class TaskWorkerError(Exception):
    pass


class TransportError(TaskWorkerError):
    """The request never got a response from the engine."""


class EngineError(TaskWorkerError):
    """The engine answered with an unexpected status or an unreadable body."""

    def __init__(self, message: str, status_code: int = None, body: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RoutingError(TaskWorkerError):
    """A fetched task belongs to a topic nobody registered a handler for."""

    def __init__(self, task_id: str, topic_name: str):
        super().__init__(f"No handler registered for topic {topic_name!r} (task {task_id})")
        self.task_id = task_id
        self.topic_name = topic_name


class HandlerError(TaskWorkerError):
    """Raised-by-handler failure, recorded per task. The original exception is the __cause__."""

    def __init__(self, task_id: str, topic_name: str, error: BaseException):
        super().__init__(f"Handler for topic {topic_name!r} failed on task {task_id}: {error}")
        self.task_id = task_id
        self.topic_name = topic_name


class ReportingError(TaskWorkerError):
    """complete/failure/extendLock/unlock could not be delivered."""

    def __init__(self, operation: str, task_id: str, error: BaseException):
        super().__init__(f"{operation} failed for task {task_id}: {error}")
        self.operation = operation
        self.task_id = task_id
