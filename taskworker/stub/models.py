import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class StubEngineError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code


def format_engine_timestamp(epoch_sec: float) -> str:
    stamp = datetime.fromtimestamp(epoch_sec, tz=timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}+0000"


def _find_task(data: dict, task_id: str) -> dict:
    for task in data.get("tasks", []):
        if task["id"] == task_id:
            return task
    raise StubEngineError(404, f"External task with id {task_id} does not exist")


def _check_owner(task: dict, worker_id: str, now: float):
    locked = task["state"] == "locked" and task["lock_expiration"] > now
    if not locked or task["worker_id"] != worker_id:
        raise StubEngineError(400, "Invalid state or ownership.")


def _is_lockable(task: dict, now: float) -> bool:
    if task["state"] == "available":
        return task["available_at"] <= now
    if task["state"] == "locked":
        return task["lock_expiration"] <= now
    return False


class Intent:
    def apply(self, data: dict, now: float) -> Any:
        raise NotImplementedError


class PushIntent(Intent):
    def __init__(self, topic_name: str, variables: Dict[str, dict] = None, **correlation):
        self.topic_name = topic_name
        self.variables = variables or {}
        self.correlation = correlation

    def apply(self, data: dict, now: float):
        task_id = str(uuid.uuid4())
        data.setdefault("tasks", []).append({
            "id": task_id,
            "topic_name": self.topic_name,
            "state": "available",
            "worker_id": None,
            "lock_expiration": None,
            "available_at": now,
            "retries": None,
            "error_message": None,
            "error_details": None,
            "variables": dict(self.variables),
            "completed_variables": {},
            "correlation": dict(self.correlation),
            "created_ts": now,
        })
        return task_id


class FetchAndLockIntent(Intent):
    def __init__(self, worker_id: str, max_tasks: int, topics: List[dict]):
        self.worker_id = worker_id
        self.max_tasks = max_tasks
        self.topics = topics

    def apply(self, data: dict, now: float):
        locked = []
        for topic in self.topics:
            for task in data.get("tasks", []):
                if len(locked) >= self.max_tasks:
                    return locked
                if task["topic_name"] != topic["topicName"] or not _is_lockable(task, now):
                    continue
                task["state"] = "locked"
                task["worker_id"] = self.worker_id
                task["lock_expiration"] = now + topic["lockDuration"] / 1000.0
                locked.append(_render(task, topic.get("variables")))
        return locked


class CompleteIntent(Intent):
    def __init__(self, task_id: str, worker_id: str, variables: Dict[str, dict] = None,
                 local_variables: Dict[str, dict] = None):
        self.task_id = task_id
        self.worker_id = worker_id
        self.variables = variables or {}
        self.local_variables = local_variables or {}

    def apply(self, data: dict, now: float):
        task = _find_task(data, self.task_id)
        _check_owner(task, self.worker_id, now)
        task["state"] = "completed"
        task["worker_id"] = None
        task["completed_variables"] = {**self.variables, **self.local_variables}
        return True


class FailureIntent(Intent):
    def __init__(self, task_id: str, worker_id: str, error_message: str = None, error_details: str = None,
                 retries: int = 0, retry_timeout_ms: int = 0):
        self.task_id = task_id
        self.worker_id = worker_id
        self.error_message = error_message
        self.error_details = error_details
        self.retries = retries
        self.retry_timeout_ms = retry_timeout_ms

    def apply(self, data: dict, now: float):
        task = _find_task(data, self.task_id)
        _check_owner(task, self.worker_id, now)
        task["error_message"] = self.error_message
        task["error_details"] = self.error_details
        task["retries"] = self.retries
        task["worker_id"] = None
        task["lock_expiration"] = None
        if self.retries <= 0:
            task["state"] = "incident"
        else:
            task["state"] = "available"
            task["available_at"] = now + self.retry_timeout_ms / 1000.0
        return True


class ExtendLockIntent(Intent):
    def __init__(self, task_id: str, worker_id: str, new_duration_ms: int):
        self.task_id = task_id
        self.worker_id = worker_id
        self.new_duration_ms = new_duration_ms

    def apply(self, data: dict, now: float):
        task = _find_task(data, self.task_id)
        _check_owner(task, self.worker_id, now)
        task["lock_expiration"] = now + self.new_duration_ms / 1000.0
        return True


class UnlockIntent(Intent):
    def __init__(self, task_id: str):
        self.task_id = task_id

    def apply(self, data: dict, now: float):
        # The engine does not check ownership on unlock
        task = _find_task(data, self.task_id)
        if task["state"] == "locked":
            task["state"] = "available"
            task["available_at"] = now
        task["worker_id"] = None
        task["lock_expiration"] = None
        return True


def _render(task: dict, variable_names: Optional[List[str]]) -> dict:
    if variable_names is None:
        variables = dict(task["variables"])
    else:
        variables = {k: v for k, v in task["variables"].items() if k in variable_names}
    rendered = {
        "id": task["id"],
        "topicName": task["topic_name"],
        "workerId": task["worker_id"],
        "lockExpirationTime": (
            format_engine_timestamp(task["lock_expiration"]) if task["lock_expiration"] else None
        ),
        "retries": task["retries"],
        "errorMessage": task["error_message"],
        "errorDetails": task["error_details"],
        "variables": variables,
    }
    rendered.update(task["correlation"])
    return rendered


def render_summary(task: dict) -> dict:
    summary = _render(task, [])
    del summary["variables"]
    summary["state"] = task["state"]
    return summary
