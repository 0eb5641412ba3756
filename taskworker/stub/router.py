from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Response
from taskworker.stub.schemas import (
    FetchAndLockRequest,
    CompleteRequest,
    FailureRequest,
    ExtendLockRequest,
    UnlockRequest,
)
from taskworker.stub.dependencies import get_engine
from taskworker.stub.models import StubEngineError
from taskworker.stub.service import InMemoryEngine

router = APIRouter(prefix="/engine-rest/external-task", tags=["External Task"])

# Routes are `def`, not `async def`: the engine serializes every operation
# behind a thread lock, so FastAPI has to run them in its threadpool.

def _reject(e: StubEngineError):
    return HTTPException(status_code=e.status_code, detail=str(e))

@router.post("/fetchAndLock")
def fetch_and_lock(req: FetchAndLockRequest, engine: InMemoryEngine = Depends(get_engine)):
    topics = [topic.model_dump(by_alias=True) for topic in req.topics]
    return engine.fetch_and_lock(req.worker_id, req.max_tasks, topics)

@router.post("/{task_id}/complete")
def complete_task(task_id: str, req: CompleteRequest, engine: InMemoryEngine = Depends(get_engine)):
    try:
        engine.complete(task_id, req.worker_id, req.variables, req.local_variables)
    except StubEngineError as e:
        raise _reject(e)
    return Response(status_code=204)

@router.post("/{task_id}/failure")
def report_failure(task_id: str, req: FailureRequest, engine: InMemoryEngine = Depends(get_engine)):
    try:
        engine.failure(task_id, req.worker_id, req.error_message, req.error_details,
                       req.retries, req.retry_timeout)
    except StubEngineError as e:
        raise _reject(e)
    return Response(status_code=204)

@router.post("/{task_id}/extendLock")
def extend_lock(task_id: str, req: ExtendLockRequest, engine: InMemoryEngine = Depends(get_engine)):
    try:
        engine.extend_lock(task_id, req.worker_id, req.new_duration)
    except StubEngineError as e:
        raise _reject(e)
    return Response(status_code=204)

@router.post("/{task_id}/unlock")
def unlock_task(task_id: str, req: Optional[UnlockRequest] = None, engine: InMemoryEngine = Depends(get_engine)):
    try:
        engine.unlock(task_id)
    except StubEngineError as e:
        raise _reject(e)
    return Response(status_code=204)

@router.get("")
def list_tasks(topicName: Optional[str] = None, engine: InMemoryEngine = Depends(get_engine)):
    return engine.list_tasks(topicName)

@router.get("/count")
def count_tasks(topicName: Optional[str] = None, engine: InMemoryEngine = Depends(get_engine)):
    return {"count": len(engine.list_tasks(topicName))}

@router.get("/metrics")
def get_metrics(engine: InMemoryEngine = Depends(get_engine)):
    return {
        "status": "ok",
        "metrics": engine.metrics
    }
