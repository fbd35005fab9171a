from __future__ import annotations

# Durable-store collaborator.
#
# The core never talks to a database directly; it goes through the `Store`
# interface below. Two implementations ship:
# 1) `MemoryStore` (this file): lock-protected dicts, used by tests and by a
#    single-process demo.
# 2) `SqlStore` (sql_store.py): SQLAlchemy, used by the relay service.
#
# Both emit row-level `ChangeEvent`s to registered listeners after every write.
# That stream is what the relay publishes on the notification channel.

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable

from .models import ChatMessage, StatusRequest, VisitReport

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "status_requests"
MESSAGES_TABLE = "chat_messages"
VISITS_TABLE = "visit_reports"


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change. `event_id` is the dedup key for consumers."""

    op: str  # INSERT | UPDATE | DELETE
    table: str
    row: dict[str, Any]
    old: dict[str, Any] | None = None
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "change",
            "event_id": self.event_id,
            "op": self.op,
            "table": self.table,
            "row": self.row,
            "old": self.old,
        }

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "ChangeEvent":
        row = msg.get("row")
        if not isinstance(row, dict) or not isinstance(msg.get("event_id"), str):
            raise ValueError("not a change event")
        old = msg.get("old")
        return cls(
            op=str(msg.get("op", "")),
            table=str(msg.get("table", "")),
            row=row,
            old=old if isinstance(old, dict) else None,
            event_id=msg["event_id"],
        )


ChangeListener = Callable[[ChangeEvent], None]


class Store:
    """Read/write interface the ledger, the lifecycle engine and the worker use."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _emit(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # A broken subscriber must not fail the write that already happened.
                logger.exception("change listener failed for %s %s", event.op, event.table)

    # -------------------- status requests --------------------

    def write_request(
        self,
        *,
        store_id: str,
        kind: str,
        message: str,
        created_at: datetime,
        expires_at: datetime,
        announcement_ref: int | None,
    ) -> StatusRequest:
        raise NotImplementedError

    def read_requests(
        self, store_id: str, kind: str | None, start: datetime, end: datetime
    ) -> list[StatusRequest]:
        """Requests created in `[start, end)`, oldest first. `kind=None` means all kinds."""
        raise NotImplementedError

    def get_request(self, request_id: int) -> StatusRequest | None:
        raise NotImplementedError

    def find_request_by_announcement(self, message_id: int) -> StatusRequest | None:
        raise NotImplementedError

    def consume_request(self, request_id: int, guided_at: datetime) -> bool:
        """Conditional write guarded by `is_consumed = false`.

        Returns True only for the single caller that flipped the flag.
        """
        raise NotImplementedError

    # -------------------- chat --------------------

    def write_message(
        self,
        *,
        sender_id: str,
        sender_role: str,
        message: str,
        created_at: datetime,
        sender_name: str | None = None,
        message_type: str = "chat",
        kind: str | None = None,
    ) -> ChatMessage:
        raise NotImplementedError

    def delete_message(self, message_id: int) -> None:
        raise NotImplementedError

    def read_messages(self, limit: int, after_id: int | None = None) -> list[ChatMessage]:
        """Newest first. With `after_id`, only messages with a larger id."""
        raise NotImplementedError

    # -------------------- visit reports --------------------

    def write_visit_report(
        self, *, store_id: str, staff_id: str, guest_count: int, guided_at: datetime
    ) -> VisitReport:
        raise NotImplementedError

    def read_visit_reports(self, store_id: str | None, start: datetime, end: datetime) -> list[VisitReport]:
        raise NotImplementedError

    def ping(self) -> None:
        """Cheap liveness probe."""


class MemoryStore(Store):
    """In-memory store (testable without a database)."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._requests: dict[int, StatusRequest] = {}
        self._messages: dict[int, ChatMessage] = {}
        self._visits: dict[int, VisitReport] = {}
        self._next_id = {REQUESTS_TABLE: 1, MESSAGES_TABLE: 1, VISITS_TABLE: 1}

    def _allocate(self, table: str) -> int:
        rid = self._next_id[table]
        self._next_id[table] = rid + 1
        return rid

    def write_request(self, *, store_id, kind, message, created_at, expires_at, announcement_ref):
        with self._lock:
            req = StatusRequest(
                id=self._allocate(REQUESTS_TABLE),
                store_id=store_id,
                kind=kind,
                message=message,
                created_at=created_at,
                expires_at=expires_at,
                announcement_ref=announcement_ref,
            )
            self._requests[req.id] = req
        self._emit(ChangeEvent("INSERT", REQUESTS_TABLE, req.to_dict()))
        return req

    def read_requests(self, store_id, kind, start, end):
        with self._lock:
            rows = [
                r
                for r in self._requests.values()
                if r.store_id == store_id and (kind is None or r.kind == kind) and start <= r.created_at < end
            ]
        rows.sort(key=lambda r: (r.created_at, r.id))
        return rows

    def get_request(self, request_id):
        with self._lock:
            return self._requests.get(request_id)

    def find_request_by_announcement(self, message_id):
        with self._lock:
            for r in self._requests.values():
                if r.announcement_ref == message_id:
                    return r
        return None

    def consume_request(self, request_id, guided_at):
        with self._lock:
            old = self._requests.get(request_id)
            if old is None or old.is_consumed:
                return False
            new = replace(old, is_consumed=True, consumed_at=guided_at)
            self._requests[request_id] = new
        self._emit(ChangeEvent("UPDATE", REQUESTS_TABLE, new.to_dict(), old=old.to_dict()))
        return True

    def write_message(self, *, sender_id, sender_role, message, created_at, sender_name=None, message_type="chat", kind=None):
        with self._lock:
            msg = ChatMessage(
                id=self._allocate(MESSAGES_TABLE),
                sender_id=sender_id,
                sender_role=sender_role,
                message=message,
                created_at=created_at,
                sender_name=sender_name,
                message_type=message_type,
                kind=kind,
            )
            self._messages[msg.id] = msg
        self._emit(ChangeEvent("INSERT", MESSAGES_TABLE, msg.to_dict()))
        return msg

    def delete_message(self, message_id):
        with self._lock:
            old = self._messages.pop(message_id, None)
        if old is not None:
            self._emit(ChangeEvent("DELETE", MESSAGES_TABLE, {"id": message_id}, old=old.to_dict()))

    def read_messages(self, limit, after_id=None):
        with self._lock:
            rows = [m for m in self._messages.values() if after_id is None or m.id > after_id]
        rows.sort(key=lambda m: m.id, reverse=True)
        return rows[:limit]

    def write_visit_report(self, *, store_id, staff_id, guest_count, guided_at):
        with self._lock:
            report = VisitReport(
                id=self._allocate(VISITS_TABLE),
                store_id=store_id,
                staff_id=staff_id,
                guest_count=guest_count,
                guided_at=guided_at,
            )
            self._visits[report.id] = report
        self._emit(ChangeEvent("INSERT", VISITS_TABLE, report.to_dict()))
        return report

    def read_visit_reports(self, store_id, start, end):
        with self._lock:
            rows = [
                v
                for v in self._visits.values()
                if (store_id is None or v.store_id == store_id) and start <= v.guided_at < end
            ]
        rows.sort(key=lambda v: v.guided_at, reverse=True)
        return rows
