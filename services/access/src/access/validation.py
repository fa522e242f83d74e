from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from access.errors import VALIDATION_ERROR, DomainError

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class Ok(Generic[ModelT]):
    value: ModelT
    ok: bool = True


@dataclass(frozen=True)
class Err:
    errors: list[dict[str, Any]]
    ok: bool = False


def validate(model: type[ModelT], data: Any) -> Ok[ModelT] | Err:
    """Validate ``data`` against ``model`` without raising."""
    try:
        return Ok(model.model_validate(data))
    except ValidationError as exc:
        return Err(exc.errors(include_url=False, include_context=False))


def parse_with(model: type[ModelT], data: Any) -> ModelT:
    result = validate(model, data)
    if isinstance(result, Err):
        raise DomainError("Validation failed", VALIDATION_ERROR, result.errors)
    return result.value
