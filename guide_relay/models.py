"""Domain records shared by the store, the relay and the clients.

Rows travel over MQTT as JSON, so every record has `to_dict()`/`from_dict()`.
Datetimes are naive local time (the business runs on one wall clock) and are
serialized as ISO-8601 strings.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, fields
from datetime import datetime
from typing import Any, TypeVar

T = TypeVar("T")


class RequestState(str, enum.Enum):
    ACTIVE = "active"
    CONSUMED = "consumed"
    EXPIRED = "expired"


def _dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _dump(obj: Any) -> dict[str, Any]:
    out = asdict(obj)
    for k, v in out.items():
        if isinstance(v, datetime):
            out[k] = v.isoformat()
    return out


def _load(cls: type[T], data: dict[str, Any], dt_fields: tuple[str, ...]) -> T:
    names = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    kwargs = {k: v for k, v in data.items() if k in names}
    for name in dt_fields:
        if name in kwargs:
            kwargs[name] = _dt(kwargs[name])
    return cls(**kwargs)


@dataclass(frozen=True)
class StatusRequest:
    id: int
    store_id: str
    kind: str
    message: str
    created_at: datetime
    expires_at: datetime
    is_consumed: bool = False
    consumed_at: datetime | None = None
    announcement_ref: int | None = None

    def state_at(self, now: datetime) -> RequestState:
        """Expiry is derived here and nowhere else; it is never stored."""
        if self.is_consumed:
            return RequestState.CONSUMED
        if now > self.expires_at:
            return RequestState.EXPIRED
        return RequestState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusRequest":
        return _load(cls, data, ("created_at", "expires_at", "consumed_at"))


@dataclass(frozen=True)
class ChatMessage:
    id: int
    sender_id: str
    sender_role: str
    message: str
    created_at: datetime
    is_edited: bool = False
    sender_name: str | None = None
    message_type: str = "chat"
    # Set on status-request announcements.
    kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return _load(cls, data, ("created_at",))


@dataclass(frozen=True)
class VisitReport:
    id: int
    store_id: str
    staff_id: str
    guest_count: int
    guided_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VisitReport":
        return _load(cls, data, ("guided_at",))
