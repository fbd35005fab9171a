"""Notification payloads and the surfaces that display them.

A notification always mirrors the latest chat message (ground truth); push
payloads may only override its wording. Urgent request kinds get a stronger
vibration pattern, a different icon and an urgent title.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Iterable

from .errors import MalformedPushPayload
from .models import ChatMessage
from .topics import DEFAULT_NAMESPACE, notifications

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

DEFAULT_URL = "/staff"
DEFAULT_ICON = "/icon-192x192.png"
URGENT_ICON = "/icon-urgent-192x192.png"
BADGE_ICON = "/icon-72x72.png"
NORMAL_VIBRATE = (100, 50, 100)
URGENT_VIBRATE = (200, 100, 200, 100, 200)

TITLE_MESSAGE = "New message"
TITLE_URGENT = "Urgent request"
BODY_FALLBACK = "There is a new message in the staff chat"

DEFAULT_ACTIONS = (("open", "Open"), ("close", "Close"))


def unique_tag(prefix: str = "push") -> str:
    """Tag unique per event so the host never folds two notifications into one."""
    return f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    tag: str
    icon: str = DEFAULT_ICON
    badge: str = BADGE_ICON
    vibrate: tuple[int, ...] = NORMAL_VIBRATE
    url: str = DEFAULT_URL
    entity_id: int | None = None
    urgent: bool = False
    actions: tuple[tuple[str, str], ...] = field(default=DEFAULT_ACTIONS)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "icon": self.icon,
            "badge": self.badge,
            "tag": self.tag,
            "vibrate": list(self.vibrate),
            "data": {"url": self.url, "entity_id": self.entity_id, "urgent": self.urgent},
            "actions": [{"action": a, "title": t} for a, t in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Notification":
        """Build from a caller-supplied dict, filling every missing field."""
        extra = data.get("data") if isinstance(data.get("data"), dict) else {}
        vibrate = data.get("vibrate")
        return cls(
            title=str(data.get("title") or TITLE_MESSAGE),
            body=str(data.get("body") or BODY_FALLBACK),
            tag=str(data.get("tag") or unique_tag("local")),
            icon=str(data.get("icon") or DEFAULT_ICON),
            badge=str(data.get("badge") or BADGE_ICON),
            vibrate=tuple(int(v) for v in vibrate) if isinstance(vibrate, list) else NORMAL_VIBRATE,
            url=str(extra.get("url") or DEFAULT_URL),
            entity_id=extra.get("entity_id"),
            urgent=bool(extra.get("urgent", False)),
        )


def is_urgent(message: ChatMessage | None, urgent_kinds: Iterable[str]) -> bool:
    return message is not None and message.kind is not None and message.kind in set(urgent_kinds)


def for_message(message: ChatMessage | None, *, urgent_kinds: Iterable[str], tag_prefix: str = "push") -> Notification:
    urgent = is_urgent(message, urgent_kinds)
    body = BODY_FALLBACK
    if message is not None and message.message:
        body = f"{message.sender_name or message.sender_id}: {message.message}"
    return Notification(
        title=TITLE_URGENT if urgent else TITLE_MESSAGE,
        body=body,
        tag=unique_tag(tag_prefix),
        icon=URGENT_ICON if urgent else DEFAULT_ICON,
        vibrate=URGENT_VIBRATE if urgent else NORMAL_VIBRATE,
        entity_id=message.id if message is not None else None,
        urgent=urgent,
    )


@dataclass(frozen=True)
class PushPayload:
    """Out-of-band push data. Every field is optional and untrusted."""

    title: str | None = None
    body: str | None = None
    sender_name: str | None = None
    message: str | None = None
    url: str | None = None


_PUSH_FIELDS = ("title", "body", "sender_name", "message", "url")


def parse_push_payload(raw: Any) -> PushPayload:
    """Accept None, bytes, str (JSON) or a dict.

    Raises:
        MalformedPushPayload: not JSON, or not a JSON object.
    """
    if raw is None:
        return PushPayload()
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPushPayload("push payload is not UTF-8") from e
    if isinstance(raw, str):
        if not raw.strip():
            return PushPayload()
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise MalformedPushPayload("push payload is not JSON") from e
    if not isinstance(raw, dict):
        raise MalformedPushPayload(f"push payload is a {type(raw).__name__}, expected an object")
    values = {}
    for name in _PUSH_FIELDS:
        v = raw.get(name)
        values[name] = (v.strip() or None) if isinstance(v, str) else None
    return PushPayload(**values)


def apply_push(notification: Notification, payload: PushPayload) -> Notification:
    body = payload.body or notification.body
    if payload.sender_name and payload.message:
        body = f"{payload.sender_name}: {payload.message}"
    url = payload.url if payload.url and payload.url.startswith("/") else notification.url
    return replace(notification, title=payload.title or notification.title, body=body, url=url)


class NotificationSurface:
    """Where notifications end up (the host's notification tray)."""

    def show(self, notification: Notification) -> None:
        raise NotImplementedError


class LogSurface(NotificationSurface):
    def show(self, notification: Notification) -> None:
        marker = "!" if notification.urgent else "-"
        logger.info("[notify %s] %s | %s (tag=%s)", marker, notification.title, notification.body, notification.tag)


class MqttSurface(NotificationSurface):
    """Publishes notifications for whatever host shell renders them."""

    def __init__(self, mqtt: MqttClient, *, namespace: str = DEFAULT_NAMESPACE) -> None:
        self.mqtt = mqtt
        self.topic = notifications(namespace)

    def show(self, notification: Notification) -> None:
        self.mqtt.publish(self.topic, {"type": "notification", **notification.to_dict()})
