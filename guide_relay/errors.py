"""Shared error envelope and exception taxonomy.

Every failure that can cross a process boundary maps to an `ErrorResponse` so
the relay, the storefront CLI and the staff CLI agree on the wire format.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ErrorResponse:
    code: str
    message: str

    def to_message(self, *, corr_id: str | None = None) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": "error", "code": self.code, "message": self.message}
        if corr_id is not None:
            msg["corr_id"] = corr_id
        return msg

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "ErrorResponse":
        return cls(str(msg.get("code", "unknown")), str(msg.get("message", "")))


class RelayError(Exception):
    """Base class. `code` is the stable identifier used on the wire."""

    code = "relay_error"

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(self.code, str(self))


class KindDisabled(RelayError):
    code = "kind_disabled"

    def __init__(self, store_id: str, kind: str) -> None:
        super().__init__(f"Requests of kind {kind!r} are not available for store {store_id!r}")
        self.store_id = store_id
        self.kind = kind


class QuotaExceeded(RelayError):
    code = "quota_exceeded"

    def __init__(self, store_id: str, kind: str, quota: int) -> None:
        super().__init__(f"Monthly limit of {quota} {kind!r} requests reached for store {store_id!r}")
        self.store_id = store_id
        self.kind = kind
        self.quota = quota


class StorageUnavailable(RelayError):
    code = "storage_unavailable"


class ChannelUnavailable(RelayError):
    """Transient. Callers retry on their next tick and never surface it."""

    code = "channel_unavailable"


class SubscriptionLost(RelayError):
    code = "subscription_lost"


class MalformedPushPayload(RelayError):
    code = "malformed_push_payload"


class BadRequest(RelayError):
    code = "bad_request"


class UnknownRequest(RelayError):
    code = "unknown_request"


class RemoteError(RelayError):
    """An error envelope received from the relay, re-raised on the client side."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def raise_for_response(msg: dict[str, Any]) -> None:
    if msg.get("type") != "error":
        return
    err = ErrorResponse.from_message(msg)
    raise RemoteError(err.code, err.message)
