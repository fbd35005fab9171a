from __future__ import annotations

# Request lifecycle: ACTIVE -> CONSUMED | EXPIRED.
#
# - CONSUMED is the only transition that is ever written. It happens when a
#   visit report for the same store arrives within the validity window.
# - EXPIRED is derived at read time (`StatusRequest.state_at`). Nothing sweeps.
#
# The write is a conditional update in the store. Two concurrent reports may
# both pick the same request; only one flips it and the other sees a no-op.

import logging
from datetime import datetime, timedelta
from typing import Callable

from .config import RelayConfig
from .models import RequestState, StatusRequest, VisitReport
from .store import Store

logger = logging.getLogger(__name__)


class RequestLifecycleEngine:
    def __init__(
        self,
        store: Store,
        config: RelayConfig | None = None,
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.config = config or RelayConfig()
        self.clock = clock

    def state_of(self, request: StatusRequest, now: datetime | None = None) -> RequestState:
        return request.state_at(now or self.clock())

    def candidates_for(self, report: VisitReport) -> list[StatusRequest]:
        """Unconsumed requests this report may fulfil, oldest first."""
        window = self.config.validity_window
        # Upper bound is inclusive of guided_at itself.
        rows = self.store.read_requests(
            report.store_id, None, report.guided_at - window, report.guided_at + timedelta(microseconds=1)
        )
        return [
            r
            for r in rows
            if not r.is_consumed
            and self.config.is_consumable(r.kind)
            and r.created_at <= report.guided_at <= r.created_at + window
        ]

    def on_visit_report(self, report: VisitReport) -> StatusRequest | None:
        """Consume at most one request for `report`.

        Returns the consumed request, or None when nothing was eligible or the
        oldest candidate was taken by a concurrent report. Losing that race is
        not an error and is not retried.
        """
        candidates = self.candidates_for(report)
        if not candidates:
            return None

        target = candidates[0]
        if not self.store.consume_request(target.id, report.guided_at):
            logger.info("request %s already consumed; report %s is a no-op", target.id, report.id)
            return None

        logger.info("request %s consumed by report %s at %s", target.id, report.id, report.guided_at)
        return self.store.get_request(target.id)

    def record_visit(
        self,
        store_id: str,
        staff_id: str,
        guest_count: int = 1,
        guided_at: datetime | None = None,
    ) -> tuple[VisitReport, StatusRequest | None]:
        """Insert a visit report, then run consumption for it."""
        if guest_count < 0:
            raise ValueError("guest_count must be >= 0")
        report = self.store.write_visit_report(
            store_id=store_id,
            staff_id=staff_id,
            guest_count=guest_count,
            guided_at=guided_at or self.clock(),
        )
        return report, self.on_visit_report(report)

