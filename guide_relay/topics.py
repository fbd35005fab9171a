"""MQTT topic helpers.

We keep topic construction in one place so the relay, the worker and the
dashboards agree on naming.

Topic layout (v0) under a configurable namespace (default: `guide-relay/v0`):

Request/response (relay owns the store):
- `<ns>/relay/requests`
- `<ns>/relay/responses/<client_id>`

Row-level change streams (relay publishes, clients subscribe):
- `<ns>/stores/<store_id>/requests`
    Insert/update events for one store's status requests.
- `<ns>/chat/staff`
    Insert/delete events for the staff chat.

Worker <-> foreground links:
- `<ns>/worker/heartbeat`   worker liveness signal
- `<ns>/worker/commands`    foreground -> worker (RESTART_HEARTBEAT, ...)
- `<ns>/clients/presence`   foreground clients announce themselves
- `<ns>/clients/<client_id>/inbox`   click routing to one client
- `<ns>/notifications`      notifications raised by the worker
"""

from __future__ import annotations

DEFAULT_NAMESPACE = "guide-relay/v0"


def relay_requests(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/relay/requests"


def relay_responses(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/relay/responses/{client_id}"


def requests_for_store(store_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/stores/{store_id}/requests"


def staff_chat(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/chat/staff"


def worker_heartbeat(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/worker/heartbeat"


def worker_commands(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/worker/commands"


def client_presence(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/clients/presence"


def client_inbox(client_id: str, namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/clients/{client_id}/inbox"


def notifications(namespace: str = DEFAULT_NAMESPACE) -> str:
    return f"{namespace}/notifications"
