from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TopicRequest(WireModel):
    topic_name: str
    lock_duration: int = Field(gt=0)
    variables: Optional[List[str]] = None


class FetchAndLockRequest(WireModel):
    worker_id: str
    max_tasks: int = Field(default=1, gt=0)
    use_priority: bool = False
    async_response_timeout: Optional[int] = None
    topics: List[TopicRequest]


class CompleteRequest(WireModel):
    worker_id: str
    variables: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    local_variables: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class FailureRequest(WireModel):
    worker_id: str
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    retries: int = 0
    retry_timeout: int = 0


class ExtendLockRequest(WireModel):
    worker_id: str
    new_duration: int = Field(gt=0)


class UnlockRequest(WireModel):
    worker_id: Optional[str] = None
