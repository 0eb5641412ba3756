import json
import logging
import time
from typing import Any, BinaryIO, Dict, Iterable, List, Mapping, Optional

import httpx
from pydantic import ValidationError

from taskworker.errors import EngineError, TransportError
from taskworker.worker.models import ExternalTask, FetchRequest, TopicSubscription
from taskworker.worker.variables import to_variables

logger = logging.getLogger(__name__)


def _wire_variables(variables: Optional[Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {name: variable.to_wire() for name, variable in to_variables(variables).items()}


def _mark_request_start(request: httpx.Request):
    request.extensions["started_at"] = time.perf_counter()


def _log_response(response: httpx.Response):
    request = response.request
    started_at = request.extensions.get("started_at")
    logger.info(json.dumps({
        "event": "engine_request",
        "method": request.method,
        "url": str(request.url),
        "status": response.status_code,
        "duration_ms": round((time.perf_counter() - started_at) * 1000, 2) if started_at else None,
    }))


class EngineClient:
    """
    REST client for the engine's external task API.
    One instance is shared by the poll loop and every in-flight task;
    httpx.Client pools connections and is safe to use from many threads.
    """
    def __init__(self, base_url: str, timeout: float = 30.0, http_client: httpx.Client = None,
                 log_requests: bool = False):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.Client(timeout=timeout)
        if log_requests:
            self.http_client.event_hooks["request"].append(_mark_request_start)
            self.http_client.event_hooks["response"].append(_log_response)

    @classmethod
    def from_settings(cls, settings) -> "EngineClient":
        return cls(settings.engine_url, timeout=settings.request_timeout_sec, log_requests=settings.log_requests)

    def close(self):
        self.http_client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _make_request(self, method: str, endpoint: str, expected_status: int = 204, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self.http_client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise TransportError(f"{method} {endpoint} could not reach the engine: {e}") from e

        if resp.status_code != expected_status:
            raise EngineError(
                f"{method} {endpoint} failed with status {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )
        return resp

    def _decode(self, resp: httpx.Response, endpoint: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise EngineError(f"{endpoint} returned a body that is not JSON: {e}",
                              status_code=resp.status_code, body=resp.text) from e

    def _decode_object(self, resp: httpx.Response, endpoint: str) -> Dict[str, Any]:
        payload = self._decode(resp, endpoint)
        if not isinstance(payload, dict):
            raise EngineError(f"{endpoint} returned {type(payload).__name__}, expected a JSON object",
                              status_code=resp.status_code, body=resp.text)
        return payload

    # --- External task API ---
    def fetch_and_lock(self, worker_id: str, max_tasks: int, topics: Iterable[TopicSubscription],
                       use_priority: bool = True, async_response_timeout_ms: int = None) -> List[ExternalTask]:
        endpoint = "/external-task/fetchAndLock"
        request = FetchRequest(
            worker_id=worker_id,
            max_tasks=max_tasks,
            use_priority=use_priority,
            async_response_timeout=async_response_timeout_ms,
            topics=list(topics),
        )
        resp = self._make_request("POST", endpoint, expected_status=200, json=request.to_wire())
        payload = self._decode(resp, endpoint)
        try:
            return [ExternalTask.model_validate(item) for item in payload or []]
        except (ValidationError, TypeError) as e:
            raise EngineError(f"{endpoint} returned malformed tasks: {e}",
                              status_code=resp.status_code, body=resp.text) from e

    def complete(self, worker_id: str, task_id: str, variables: Mapping[str, Any] = None,
                 local_variables: Mapping[str, Any] = None):
        body = {"workerId": worker_id}
        if variables:
            body["variables"] = _wire_variables(variables)
        if local_variables:
            body["localVariables"] = _wire_variables(local_variables)
        self._make_request("POST", f"/external-task/{task_id}/complete", json=body)

    def handle_failure(self, worker_id: str, task_id: str, error_message: str, error_details: str = "",
                       retries: int = 0, retry_timeout_ms: int = 0):
        body = {
            "workerId": worker_id,
            "errorMessage": error_message,
            "errorDetails": error_details,
            "retries": retries,
            "retryTimeout": retry_timeout_ms,
        }
        self._make_request("POST", f"/external-task/{task_id}/failure", json=body)

    def extend_lock(self, worker_id: str, task_id: str, new_duration_ms: int):
        body = {"workerId": worker_id, "newDuration": new_duration_ms}
        self._make_request("POST", f"/external-task/{task_id}/extendLock", json=body)

    def unlock(self, worker_id: str, task_id: str):
        self._make_request("POST", f"/external-task/{task_id}/unlock", json={"workerId": worker_id})

    # --- Process API ---
    def start_process_instance(self, process_definition_key: str,
                               variables: Mapping[str, Any] = None, business_key: str = None) -> str:
        endpoint = f"/process-definition/key/{process_definition_key}/start"
        body: Dict[str, Any] = {"variables": _wire_variables(variables)}
        if business_key:
            body["businessKey"] = business_key
        resp = self._make_request("POST", endpoint, expected_status=200, json=body)
        instance_id = self._decode_object(resp, endpoint).get("id")
        logger.info(json.dumps({"event": "process_started", "key": process_definition_key, "id": instance_id}))
        return instance_id

    def deploy_process(self, deployment_name: str, bpmn: BinaryIO, filename: str) -> str:
        endpoint = "/deployment/create"
        resp = self._make_request(
            "POST",
            endpoint,
            expected_status=200,
            data={"deployment-name": deployment_name, "enable-duplicate-filtering": "true"},
            files={"data": (filename, bpmn, "application/octet-stream")},
        )
        deployment_id = self._decode_object(resp, endpoint).get("id")
        logger.info(json.dumps({"event": "process_deployed", "name": deployment_name, "id": deployment_id}))
        return deployment_id

