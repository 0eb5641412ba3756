import socket
import uuid
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"


class WorkerSettings(BaseSettings):
    engine_url: str = "http://localhost:8080/engine-rest"
    worker_id: str = Field(default_factory=default_worker_id)
    request_timeout_sec: float = 30.0

    # Poll loop
    max_tasks: int = 10
    poll_interval_sec: float = 5.0
    batch_pause_sec: float = 1.0
    use_priority: bool = True
    async_response_timeout_ms: Optional[int] = None
    max_concurrency: Optional[int] = None

    # Failure policy applied by ExternalTaskWorker.handler
    failure_retries: int = 3
    failure_retry_timeout_ms: int = 30000

    log_level: str = "INFO"
    # One JSON line per engine HTTP call
    log_requests: bool = False
    stub_port: int = 8080

    model_config = SettingsConfigDict(
        env_prefix="TASKWORKER_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

settings = WorkerSettings()
