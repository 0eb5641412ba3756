"""Typed variable constructors and inference from plain Python values."""
import json
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Mapping, Optional

from taskworker.worker.models import INT32_MAX, INT32_MIN, Variable, VariableType

JSON_FORMAT = "application/json"


def string_variable(value: str) -> Variable:
    return Variable(value=value, type=VariableType.STRING)


def integer_variable(value: int) -> Variable:
    return Variable(value=value, type=VariableType.INTEGER)


def long_variable(value: int) -> Variable:
    return Variable(value=value, type=VariableType.LONG)


def double_variable(value: float) -> Variable:
    return Variable(value=value, type=VariableType.DOUBLE)


def boolean_variable(value: bool) -> Variable:
    return Variable(value=value, type=VariableType.BOOLEAN)


def date_variable(value: date) -> Variable:
    """
    Date variable carrying an offset the engine can parse. A plain date means
    midnight UTC and a naive datetime is taken to be UTC.
    """
    if not isinstance(value, datetime):
        value = datetime.combine(value, time.min)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return Variable(value=value.isoformat(), type=VariableType.DATE)


def null_variable() -> Variable:
    return Variable(value=None, type=VariableType.NULL)


def _object_variable(value: Any, object_type_name: str) -> Variable:
    # Object variables travel as a JSON string so BPMN expressions can read them
    return Variable(
        value=json.dumps(value),
        type=VariableType.OBJECT,
        value_info={
            "objectTypeName": object_type_name,
            "serializationDataFormat": JSON_FORMAT,
        },
    )


def json_variable(value: Any) -> Variable:
    return _object_variable(value, "java.util.LinkedHashMap")


def list_variable(value: Any) -> Variable:
    """Collection variable, e.g. for multi-instance activities that iterate over it."""
    return _object_variable(list(value), "java.util.ArrayList")


def to_variable(value: Any) -> Variable:
    if isinstance(value, Variable):
        return value
    if value is None:
        return null_variable()
    # bool before int: True is an int too
    if isinstance(value, bool):
        return boolean_variable(value)
    if isinstance(value, int):
        if INT32_MIN <= value <= INT32_MAX:
            return integer_variable(value)
        return long_variable(value)
    if isinstance(value, float):
        return double_variable(value)
    if isinstance(value, str):
        return string_variable(value)
    if isinstance(value, (datetime, date)):
        return date_variable(value)
    if isinstance(value, (list, tuple)):
        return list_variable(value)
    if isinstance(value, dict):
        return json_variable(value)
    raise TypeError(f"Cannot infer a variable type for {type(value).__name__}")


def to_variables(values: Optional[Mapping[str, Any]]) -> Dict[str, Variable]:
    if not values:
        return {}
    return {name: to_variable(value) for name, value in values.items()}
