import io
import json
import logging
import threading

import httpx
import pytest

from conftest import BackgroundWorker
from taskworker.client.engine_client import EngineClient
from taskworker.errors import EngineError, TransportError
from taskworker.worker.models import TopicSubscription
from taskworker.worker.poller import ExternalTaskWorker
from taskworker.worker.variables import list_variable

BASE_URL = "http://engine.test/engine-rest"


class RecordingEngine:
    """httpx transport handler that records requests and answers from a route table."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.requests.append(request)
        path = request.url.path[len("/engine-rest"):]
        for suffix, respond in self.routes.items():
            if path.endswith(suffix):
                return respond(request)
        return httpx.Response(404, json={"message": f"no route for {path}"})

    def bodies(self, suffix):
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(suffix)]


def make_client(routes):
    recorder = RecordingEngine(routes)
    client = EngineClient(BASE_URL, http_client=httpx.Client(transport=httpx.MockTransport(recorder)))
    return client, recorder


def no_content(request):
    return httpx.Response(204)


def test_fetch_and_lock_sends_request_and_parses_tasks():
    tasks = [{
        "id": "T1",
        "topicName": "t1",
        "workerId": "w1",
        "lockExpirationTime": "2025-10-08T03:50:45.087+0000",
        "variables": {"x": {"value": 5, "type": "Integer", "valueInfo": {}}},
        "processInstanceId": "pi-1",
    }]
    client, recorder = make_client({"/external-task/fetchAndLock": lambda r: httpx.Response(200, json=tasks)})

    result = client.fetch_and_lock("w1", 10, [TopicSubscription(topic_name="t1", lock_duration=60000,
                                                                variables=["x"])])

    assert recorder.bodies("fetchAndLock") == [{
        "workerId": "w1",
        "maxTasks": 10,
        "usePriority": True,
        "topics": [{"topicName": "t1", "lockDuration": 60000, "variables": ["x"]}],
    }]
    assert result[0].id == "T1"
    assert result[0].get_variable("x") == 5
    assert result[0].process_instance_id == "pi-1"


def test_fetch_and_lock_long_polling_timeout():
    client, recorder = make_client({"/external-task/fetchAndLock": lambda r: httpx.Response(200, json=[])})
    assert client.fetch_and_lock("w1", 1, [], use_priority=False, async_response_timeout_ms=20000) == []
    body = recorder.bodies("fetchAndLock")[0]
    assert body["asyncResponseTimeout"] == 20000
    assert body["usePriority"] is False


def test_engine_rejection_becomes_engine_error():
    client, _ = make_client({
        "/external-task/fetchAndLock": lambda r: httpx.Response(500, json={"message": "db down"}),
    })
    with pytest.raises(EngineError) as info:
        client.fetch_and_lock("w1", 10, [])
    assert info.value.status_code == 500
    assert "db down" in info.value.body


def test_malformed_payload_becomes_engine_error():
    client, _ = make_client({
        "/external-task/fetchAndLock": lambda r: httpx.Response(200, content=b"<html>"),
    })
    with pytest.raises(EngineError):
        client.fetch_and_lock("w1", 10, [])

    client, _ = make_client({
        "/external-task/fetchAndLock": lambda r: httpx.Response(200, json=[{"topicName": "no id"}]),
    })
    with pytest.raises(EngineError):
        client.fetch_and_lock("w1", 10, [])


def test_transport_failure_becomes_transport_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = EngineClient(BASE_URL, http_client=httpx.Client(transport=httpx.MockTransport(refuse)))
    with pytest.raises(TransportError):
        client.unlock("w1", "T1")


def test_request_logging_is_opt_in(caplog):
    routes = {"/extendLock": no_content, "/unlock": lambda r: httpx.Response(404, json={"message": "gone"})}
    quiet = EngineClient(BASE_URL, http_client=httpx.Client(transport=httpx.MockTransport(RecordingEngine(routes))))
    chatty = EngineClient(BASE_URL, log_requests=True,
                          http_client=httpx.Client(transport=httpx.MockTransport(RecordingEngine(routes))))

    with caplog.at_level(logging.INFO, logger="taskworker.client.engine_client"):
        quiet.extend_lock("w1", "T1", 1000)
        assert not [r for r in caplog.records if r.name == "taskworker.client.engine_client"]
        chatty.extend_lock("w1", "T1", 1000)
        with pytest.raises(EngineError):
            chatty.unlock("w1", "T1")

    events = [json.loads(r.getMessage()) for r in caplog.records if r.name == "taskworker.client.engine_client"]
    assert [(e["method"], e["url"], e["status"]) for e in events] == [
        ("POST", f"{BASE_URL}/external-task/T1/extendLock", 204),
        ("POST", f"{BASE_URL}/external-task/T1/unlock", 404),
    ]
    assert all(e["event"] == "engine_request" and e["duration_ms"] >= 0 for e in events)


@pytest.mark.parametrize("body", [b"[1, 2]", b"\xff\xfe not utf-8", b"null"])
def test_id_endpoints_reject_non_object_bodies(body):
    client, _ = make_client({
        "/process-definition/key/p/start": lambda r: httpx.Response(200, content=body),
        "/deployment/create": lambda r: httpx.Response(200, content=body),
    })
    with pytest.raises(EngineError):
        client.start_process_instance("p")
    with pytest.raises(EngineError):
        client.deploy_process("p", io.BytesIO(b"<definitions/>"), "p.bpmn")


def test_report_endpoints():
    client, recorder = make_client({
        "/complete": no_content,
        "/failure": no_content,
        "/extendLock": no_content,
        "/unlock": no_content,
    })

    client.complete("w1", "T1", {"result": "ok", "scores": list_variable([1, 2])}, {"local": None})
    client.handle_failure("w1", "T1", "Task processing failed", "boom", 3, 30000)
    client.extend_lock("w1", "T1", 120000)
    client.unlock("w1", "T1")

    paths = [r.url.path for r in recorder.requests]
    assert paths == [
        "/engine-rest/external-task/T1/complete",
        "/engine-rest/external-task/T1/failure",
        "/engine-rest/external-task/T1/extendLock",
        "/engine-rest/external-task/T1/unlock",
    ]
    complete = recorder.bodies("/complete")[0]
    assert complete["workerId"] == "w1"
    assert complete["variables"]["result"] == {"value": "ok", "type": "String"}
    assert complete["variables"]["scores"]["type"] == "Object"
    assert complete["localVariables"] == {"local": {"value": None, "type": "Null"}}
    assert recorder.bodies("/failure")[0] == {
        "workerId": "w1",
        "errorMessage": "Task processing failed",
        "errorDetails": "boom",
        "retries": 3,
        "retryTimeout": 30000,
    }
    assert recorder.bodies("/extendLock")[0] == {"workerId": "w1", "newDuration": 120000}
    assert recorder.bodies("/unlock")[0] == {"workerId": "w1"}


def test_report_on_resolved_task_raises():
    client, _ = make_client({"/complete": lambda r: httpx.Response(404, json={"message": "gone"})})
    with pytest.raises(EngineError) as info:
        client.complete("w1", "T1")
    assert info.value.status_code == 404


def test_start_process_instance():
    client, recorder = make_client({
        "/process-definition/key/loan_process/start": lambda r: httpx.Response(200, json={"id": "pi-42"}),
    })
    instance_id = client.start_process_instance("loan_process", {"amount": 15000.0, "name": "Ann"},
                                                business_key="app-1")
    assert instance_id == "pi-42"
    assert recorder.bodies("/start")[0] == {
        "variables": {
            "amount": {"value": 15000.0, "type": "Double"},
            "name": {"value": "Ann", "type": "String"},
        },
        "businessKey": "app-1",
    }


def test_deploy_process_sends_multipart():
    client, recorder = make_client({
        "/deployment/create": lambda r: httpx.Response(200, json={"id": "dep-1"}),
    })
    deployment_id = client.deploy_process("loan", io.BytesIO(b"<definitions/>"), "loan.bpmn")

    assert deployment_id == "dep-1"
    request = recorder.requests[0]
    assert request.headers["content-type"].startswith("multipart/form-data")
    content = request.content
    assert b'name="deployment-name"' in content
    assert b'name="enable-duplicate-filtering"' in content
    assert b'filename="loan.bpmn"' in content
    assert b"<definitions/>" in content


def test_worker_completes_task_end_to_end():
    completed = threading.Event()
    fetched = []

    def fetch(request):
        fetched.append(request)
        if len(fetched) == 1:
            return httpx.Response(200, json=[{
                "id": "T1",
                "topicName": "t1",
                "variables": {"x": {"value": 5, "type": "Integer"}},
            }])
        return httpx.Response(200, json=[])

    def complete(request):
        completed.set()
        return httpx.Response(204)

    client, recorder = make_client({"/external-task/fetchAndLock": fetch, "/complete": complete})
    worker = ExternalTaskWorker(client, "worker-e2e", poll_interval_sec=0.01, batch_pause_sec=0.01)
    seen_x = []

    def handler(task, ctx):
        seen_x.append(task.get_variable("x"))
        ctx.complete({"result": "ok"})

    worker.register("t1", handler, 60000, ["x"])

    with BackgroundWorker(worker):
        assert completed.wait(2.0)

    assert seen_x == [5]
    assert recorder.bodies("fetchAndLock")[0]["topics"] == [
        {"topicName": "t1", "lockDuration": 60000, "variables": ["x"]},
    ]
    complete_request = next(r for r in recorder.requests if r.url.path.endswith("/complete"))
    assert complete_request.url.path == "/engine-rest/external-task/T1/complete"
    assert json.loads(complete_request.content) == {
        "workerId": "worker-e2e",
        "variables": {"result": {"value": "ok", "type": "String"}},
    }


def test_policy_wrapper_reports_boom_to_engine():
    failed = threading.Event()

    def fetch(request):
        if not failed.is_set() and len(recorder.bodies("fetchAndLock")) == 1:
            return httpx.Response(200, json=[{"id": "T2", "topicName": "t2"}])
        return httpx.Response(200, json=[])

    def failure(request):
        failed.set()
        return httpx.Response(204)

    client, recorder = make_client({"/external-task/fetchAndLock": fetch, "/failure": failure})
    worker = ExternalTaskWorker(client, "worker-e2e", poll_interval_sec=0.01, batch_pause_sec=0.01)

    @worker.handler("t2", 60000)
    def handler(task, ctx):
        raise RuntimeError("boom")

    with BackgroundWorker(worker):
        assert failed.wait(2.0)

    body = recorder.bodies("/failure")[0]
    assert body["workerId"] == "worker-e2e"
    assert body["retries"] == 3
    assert body["retryTimeout"] == 30000
    assert "boom" in body["errorDetails"]
