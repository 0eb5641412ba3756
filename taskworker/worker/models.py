import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class VariableType:
    STRING = "String"
    INTEGER = "Integer"
    LONG = "Long"
    DOUBLE = "Double"
    BOOLEAN = "Boolean"
    DATE = "Date"
    OBJECT = "Object"
    NULL = "Null"


INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_json(value) -> bool:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return False
    return True


# Types missing here (Json, Bytes, File, ...) are passed through unchecked
_VALUE_SHAPES = {
    VariableType.STRING: lambda v: isinstance(v, str),
    VariableType.INTEGER: lambda v: _is_int(v) and INT32_MIN <= v <= INT32_MAX,
    VariableType.LONG: _is_int,
    VariableType.DOUBLE: lambda v: _is_int(v) or isinstance(v, float),
    VariableType.BOOLEAN: lambda v: isinstance(v, bool),
    VariableType.DATE: lambda v: isinstance(v, str),
    VariableType.OBJECT: lambda v: isinstance(v, str) or _is_json(v),
}


# The engine writes "2025-10-08T03:50:45.087+0000"; RFC3339 (with or without
# nanoseconds) shows up too. strptime's %f stops at microseconds.
_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
)
_EXTRA_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_engine_timestamp(value: str) -> datetime:
    trimmed = _EXTRA_FRACTION.sub(r"\1", value.strip())
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(trimmed, fmt)
        except ValueError:
            continue
    raise ValueError(f"failed to parse engine timestamp {value!r}")


class EngineModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class Variable(EngineModel):
    value: Any = None
    type: str = VariableType.NULL
    value_info: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def check_value_shape(self):
        if self.type == VariableType.NULL:
            if self.value is not None:
                raise ValueError("a Null variable cannot carry a value")
            return self
        # The engine sends null for typed variables that were never set
        if self.value is None:
            return self
        fits = _VALUE_SHAPES.get(self.type)
        if fits is not None and not fits(self.value):
            raise ValueError(f"{type(self.value).__name__} value {self.value!r} does not fit a {self.type} variable")
        return self

    def to_wire(self) -> Dict[str, Any]:
        data = {"value": self.value, "type": self.type}
        if self.value_info:
            data["valueInfo"] = self.value_info
        return data


class ExternalTask(EngineModel):
    id: str
    topic_name: str
    worker_id: Optional[str] = None
    lock_expiration_time: Optional[datetime] = None
    retries: Optional[int] = None
    error_message: Optional[str] = None
    error_details: Optional[str] = None
    variables: Dict[str, Variable] = Field(default_factory=dict)
    business_key: Optional[str] = None
    tenant_id: Optional[str] = None
    priority: int = 0

    # Correlation fields, passed through untouched
    activity_id: Optional[str] = None
    activity_instance_id: Optional[str] = None
    execution_id: Optional[str] = None
    process_instance_id: Optional[str] = None
    process_definition_id: Optional[str] = None
    process_definition_key: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @field_validator("lock_expiration_time", mode="before")
    @classmethod
    def parse_lock_expiration(cls, value):
        if isinstance(value, str):
            if not value:
                return None
            return parse_engine_timestamp(value)
        return value

    @field_validator("variables", mode="before")
    @classmethod
    def default_variables(cls, value):
        return value or {}

    @field_validator("priority", mode="before")
    @classmethod
    def default_priority(cls, value):
        return value or 0

    def get_variable(self, name: str, default: Any = None) -> Any:
        variable = self.variables.get(name)
        if variable is None:
            return default
        return variable.value


class TopicSubscription(EngineModel):
    topic_name: str
    lock_duration: int = Field(gt=0)
    # None fetches every variable, an empty list fetches none
    variables: Optional[List[str]] = None
    local_variables: Optional[bool] = None
    business_key: Optional[str] = None
    process_definition_id: Optional[str] = None
    process_definition_key: Optional[str] = None
    tenant_ids: Optional[List[str]] = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class FetchRequest(EngineModel):
    worker_id: str
    max_tasks: int
    use_priority: bool = True
    async_response_timeout: Optional[int] = None
    topics: List[TopicSubscription]

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
