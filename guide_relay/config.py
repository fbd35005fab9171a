"""Static configuration (Pydantic).

The recognized keys mirror the dashboard's settings object (camelCase, times in
milliseconds), so a settings JSON file validates as-is. Python code builds the
model by field name and works in `timedelta`.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

FIRST_TIME_GUEST = "first_time_guest"

_DURATIONS = (
    "validity_window",
    "heartbeat_interval",
    "poll_interval",
    "keepalive_interval",
    "settle_delay",
    "debounce",
    "completed_grace",
)


class RelayConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    validity_window: timedelta = Field(timedelta(hours=1), alias="validityWindowMs")
    monthly_quota_by_kind: dict[str, int] = Field(
        default_factory=lambda: {FIRST_TIME_GUEST: 3}, alias="monthlyQuotaByKind"
    )
    # store_id -> kind -> quota; wins over monthly_quota_by_kind.
    quota_overrides: dict[str, dict[str, int]] = Field(default_factory=dict, alias="quotaOverrides")
    # None means "every kind that has a quota".
    consumable_kinds: frozenset[str] | None = Field(None, alias="consumableKinds")
    urgent_kinds: frozenset[str] = Field(frozenset({FIRST_TIME_GUEST}), alias="urgentKinds")

    heartbeat_interval: timedelta = Field(timedelta(seconds=30), alias="heartbeatIntervalMs")
    poll_interval: timedelta = Field(timedelta(seconds=30), alias="pollIntervalMs")
    keepalive_interval: timedelta = Field(timedelta(seconds=5), alias="keepaliveIntervalMs")

    settle_delay: timedelta = Field(timedelta(milliseconds=500), alias="settleDelayMs")
    debounce: timedelta = Field(timedelta(seconds=1), alias="debounceMs")
    completed_grace: timedelta = Field(timedelta(minutes=5), alias="completedGraceMs")

    @field_validator(*_DURATIONS, mode="before")
    @classmethod
    def milliseconds(cls, v: Any) -> Any:
        # Numbers on the wire are milliseconds, not pydantic's default seconds.
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return timedelta(milliseconds=v)
        return v

    @field_validator(*_DURATIONS, mode="after")
    @classmethod
    def non_negative(cls, v: timedelta) -> timedelta:
        if v < timedelta(0):
            raise ValueError("must be >= 0")
        return v

    def quota_for(self, store_id: str, kind: str) -> int:
        per_store = self.quota_overrides.get(store_id)
        if per_store is not None and kind in per_store:
            return per_store[kind]
        return self.monthly_quota_by_kind.get(kind, 0)

    def is_consumable(self, kind: str) -> bool:
        if self.consumable_kinds is None:
            return kind in self.monthly_quota_by_kind
        return kind in self.consumable_kinds

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RelayConfig":
        """Validate the camelCase settings object. Unknown keys are ignored.

        Raises:
            pydantic.ValidationError: (a ValueError) on bad or negative values.
        """
        return cls.model_validate(dict(data))

    @classmethod
    def from_file(cls, path: str | Path) -> "RelayConfig":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))

    def with_overrides(self, **changes: Any) -> "RelayConfig":
        return self.model_copy(update=changes)


def load_config(path: str | None) -> RelayConfig:
    """CLI helper: `--config` is optional."""
    if not path:
        return RelayConfig()
    return RelayConfig.from_file(path)
