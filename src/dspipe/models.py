"""Pydantic base models shared by stage parameter definitions."""

from __future__ import annotations

from typing import Any, Mapping, Type, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .errors import ConfigurationError

ParamsT = TypeVar("ParamsT", bound="StageParams")


class StageParams(BaseModel):
    """Immutable stage parameters. Accepts snake_case names or camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    def describe(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def _format_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    message = str(first.get("msg", "invalid value"))
    if message.startswith("Value error, "):
        message = message[len("Value error, ") :]
    return f"{loc}: {message}" if loc else message


def validate_params(model: Type[ParamsT], params: Mapping[str, Any], *, stage: str) -> ParamsT:
    """Build a parameter model, converting pydantic failures into ConfigurationError."""

    try:
        return model.model_validate(dict(params))
    except ValidationError as exc:
        raise ConfigurationError(f"{stage}: {_format_error(exc)}") from exc
