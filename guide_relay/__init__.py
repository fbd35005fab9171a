"""Time-boxed storefront requests with realtime staff delivery (MQTT-based).

Project v0 coordinates, over MQTT pub/sub (via a broker like Mosquitto):
- a relay service that owns the store (request ledger + lifecycle engine)
- a background worker (heartbeat, polling fallback, notifications)
- staff/store dashboards that keep a supervised subscription alive
- short-lived storefront and staff clients (broadcast a request, report a visit)

Run `python -m guide_relay.app -h` for the entrypoints.
"""
