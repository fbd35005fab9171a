"""Unread counter for the staff chat.

A dashboard remembers when its user last looked at the chat. Messages newer
than that, sent by someone else, are unread. Live chat inserts bump the count
without a refetch; `recount()` resynchronises after a reconnect.
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Iterable

from .models import ChatMessage
from .store import MESSAGES_TABLE, ChangeEvent

EPOCH = datetime(1970, 1, 1)


class UnreadTracker:
    def __init__(self, user_id: str, last_view: datetime | None = None) -> None:
        self.user_id = user_id
        # First run: everything is unread.
        self.last_view = last_view or EPOCH
        self.count = 0
        self._lock = threading.Lock()

    def mark_as_read(self, now: datetime | None = None) -> None:
        with self._lock:
            self.last_view = now or datetime.now()
            self.count = 0

    def is_unread(self, message: ChatMessage) -> bool:
        return message.created_at > self.last_view and message.sender_id != self.user_id

    def recount(self, messages: Iterable[ChatMessage]) -> int:
        with self._lock:
            self.count = sum(1 for m in messages if self.is_unread(m))
            return self.count

    def on_event(self, event: ChangeEvent) -> None:
        if event.table != MESSAGES_TABLE or event.op != "INSERT":
            return
        try:
            message = ChatMessage.from_dict(event.row)
        except (TypeError, ValueError):
            return
        if self.is_unread(message):
            with self._lock:
                self.count += 1

    def title(self, base: str) -> str:
        return f"({self.count}) {base}" if self.count > 0 else base
