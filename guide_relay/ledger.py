from __future__ import annotations

# Request ledger: creation and reads of status requests.
#
# A storefront "broadcasts" a request by creating it here. Creation is
# quota-limited per store and kind within a calendar month, and always comes
# with a chat announcement so staff see it in the chat feed.

import logging
from datetime import datetime
from typing import Callable

from .business_clock import calendar_month_range
from .config import RelayConfig
from .errors import KindDisabled, QuotaExceeded, StorageUnavailable
from .models import RequestState, StatusRequest
from .store import Store

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def default_message(store_name: str, kind: str) -> str:
    label = kind.replace("_", " ")
    return f"{store_name} - {label} wanted now!"


class RequestLedger:
    def __init__(self, store: Store, config: RelayConfig | None = None, *, clock: Clock = datetime.now) -> None:
        self.store = store
        self.config = config or RelayConfig()
        self.clock = clock

    def create_request(
        self,
        store_id: str,
        kind: str,
        message: str | None = None,
        *,
        sender_name: str | None = None,
    ) -> StatusRequest:
        """Create a request and its chat announcement.

        The quota check reads the month's count and then writes; nothing in the
        store makes that atomic. It holds because one relay process owns the
        store and handles requests one at a time on its MQTT thread. Running
        several relays against one database can overshoot the quota.

        Raises:
            KindDisabled: quota for (store_id, kind) is 0.
            QuotaExceeded: this calendar month's count already equals the quota.
            StorageUnavailable: the store failed; nothing is left half-written.
        """
        quota = self.config.quota_for(store_id, kind)
        if quota <= 0:
            raise KindDisabled(store_id, kind)
        if self.get_monthly_count(store_id, kind) >= quota:
            raise QuotaExceeded(store_id, kind, quota)

        now = self.clock()
        name = sender_name or store_id
        text = message or default_message(name, kind)

        announcement = self.store.write_message(
            sender_id=store_id,
            sender_role="customer",
            sender_name=name,
            message=text,
            created_at=now,
            message_type="status_request",
            kind=kind,
        )
        try:
            req = self.store.write_request(
                store_id=store_id,
                kind=kind,
                message=text,
                created_at=now,
                expires_at=now + self.config.validity_window,
                announcement_ref=announcement.id,
            )
        except StorageUnavailable:
            logger.warning("request write failed for store=%s kind=%s; retracting announcement %s", store_id, kind, announcement.id)
            self.store.delete_message(announcement.id)
            raise

        logger.info("request %s created for store=%s kind=%s expires_at=%s", req.id, store_id, kind, req.expires_at)
        return req

    def get_active_request(self, store_id: str, kind: str) -> StatusRequest | None:
        """Most recent request that is neither consumed nor past `expires_at`."""
        now = self.clock()
        # A request older than the validity window cannot be active.
        start = now - self.config.validity_window
        rows = self.store.read_requests(store_id, kind, start, now + self.config.validity_window)
        for req in reversed(rows):
            if req.state_at(now) is RequestState.ACTIVE:
                return req
        return None

    def get_latest_request(self, store_id: str, kind: str) -> StatusRequest | None:
        """Most recent request this month in any state (dashboards show recent completions)."""
        start, end = calendar_month_range(self.clock())
        rows = self.store.read_requests(store_id, kind, start, end)
        return rows[-1] if rows else None

    def get_monthly_count(self, store_id: str, kind: str) -> int:
        start, end = calendar_month_range(self.clock())
        return len(self.store.read_requests(store_id, kind, start, end))

    def remaining_quota(self, store_id: str, kind: str) -> int:
        quota = self.config.quota_for(store_id, kind)
        return max(0, quota - self.get_monthly_count(store_id, kind))

    def get_request_for_announcement(self, message_id: int) -> StatusRequest | None:
        return self.store.find_request_by_announcement(message_id)

    def state_of(self, request: StatusRequest) -> RequestState:
        return request.state_at(self.clock())
