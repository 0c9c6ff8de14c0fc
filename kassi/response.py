"""Success envelopes returned by the HTTP API."""

from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from typing import Any, Generic, Mapping, TypeVar

T = TypeVar("T")


def _timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    micros = value.microsecond
    if micros == 0:
        return text + "Z"
    if micros % 1000 == 0:
        return f"{text}.{micros // 1000:03d}Z"
    return f"{text}.{micros:06d}Z"


def _to_json(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_json(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, datetime):
        return _timestamp(value)
    if isinstance(value, enum.Enum):
        return _to_json(value.value)
    if isinstance(value, Mapping):
        return {str(k): _to_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    return value


@dataclass(frozen=True)
class ListMeta:
    """Cursors for the neighbouring pages of a list."""

    next_page: str | None = None
    previous_page: str | None = None


@dataclass(frozen=True)
class ApiSuccess(Generic[T]):
    """A single result wrapped as {"data": ...}."""

    data: T

    def to_response(self) -> tuple[HTTPStatus, dict[str, Any]]:
        """200 OK with the JSON body."""
        return HTTPStatus.OK, {"data": _to_json(self.data)}

    @classmethod
    def created(cls, data: T) -> tuple[HTTPStatus, dict[str, Any]]:
        """201 Created with the JSON body."""
        return HTTPStatus.CREATED, {"data": _to_json(data)}


@dataclass(frozen=True)
class ApiList(Generic[T]):
    """A page of results with pagination metadata."""

    data: list[T]
    meta: ListMeta = field(default_factory=ListMeta)

    def to_response(self) -> tuple[HTTPStatus, dict[str, Any]]:
        """200 OK with data and meta."""
        return HTTPStatus.OK, {"data": _to_json(self.data), "meta": _to_json(self.meta)}