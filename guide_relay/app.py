from __future__ import annotations

# Single-entrypoint runner.
#
# CLEAN CLI (v0):
#   python -m guide_relay.app relay      # owns the store, answers requests
#   python -m guide_relay.app worker     # background heartbeat/poll/notifications
#   python -m guide_relay.app dashboard --store-id S1
#   python -m guide_relay.app request --store-id S1
#   python -m guide_relay.app visit --store-id S1 --staff-id u1
#   python -m guide_relay.app chat --user-id u1

import argparse


def main() -> None:
    parser = argparse.ArgumentParser(description="Guide relay (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mqtt_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mqtt-host", default="127.0.0.1")
        p.add_argument("--mqtt-port", type=int, default=1883)
        p.add_argument("--namespace", default="guide-relay/v0")

    p_relay = sub.add_parser("relay", help="Start the relay service (store owner)")
    add_mqtt_args(p_relay)
    p_relay.add_argument("--database-url", default="sqlite:///guide_relay.db")
    p_relay.add_argument("--config", default=None)
    p_relay.add_argument("--log-level", default="INFO")

    p_worker = sub.add_parser("worker", help="Start the background notification worker")
    add_mqtt_args(p_worker)
    p_worker.add_argument("--config", default=None)
    p_worker.add_argument("--self-sender-id", default=None)
    p_worker.add_argument("--log-level", default="INFO")

    p_dash = sub.add_parser("dashboard", help="Live view of one store's requests")
    add_mqtt_args(p_dash)
    p_dash.add_argument("--store-id", required=True)
    p_dash.add_argument("--kind", default=None)
    p_dash.add_argument("--config", default=None)

    p_req = sub.add_parser("request", help="Broadcast one storefront request")
    add_mqtt_args(p_req)
    p_req.add_argument("--store-id", required=True)
    p_req.add_argument("--kind", default=None)
    p_req.add_argument("--store-name", default=None)

    p_visit = sub.add_parser("visit", help="Report one visit (may fulfil a request)")
    add_mqtt_args(p_visit)
    p_visit.add_argument("--store-id", required=True)
    p_visit.add_argument("--staff-id", required=True)
    p_visit.add_argument("--guest-count", type=int, default=1)

    p_chat = sub.add_parser("chat", help="Staff chat with unread counter")
    add_mqtt_args(p_chat)
    p_chat.add_argument("--user-id", required=True)
    p_chat.add_argument("--name", default=None)
    p_chat.add_argument("--config", default=None)

    args = parser.parse_args()

    common = ["--mqtt-host", args.mqtt_host, "--mqtt-port", str(args.mqtt_port), "--namespace", args.namespace]

    if args.cmd == "relay":
        from .relay import main as run

        run_args = common + ["--database-url", args.database_url, "--log-level", args.log_level]
        if args.config:
            run_args += ["--config", args.config]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "worker":
        from .worker import main as run

        run_args = common + ["--log-level", args.log_level]
        if args.config:
            run_args += ["--config", args.config]
        if args.self_sender_id:
            run_args += ["--self-sender-id", args.self_sender_id]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "dashboard":
        from .dashboard import main as run

        run_args = common + ["--store-id", args.store_id]
        if args.kind:
            run_args += ["--kind", args.kind]
        if args.config:
            run_args += ["--config", args.config]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "request":
        from .storefront import main as run

        run_args = common + ["--store-id", args.store_id]
        if args.kind:
            run_args += ["--kind", args.kind]
        if args.store_name:
            run_args += ["--store-name", args.store_name]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "visit":
        from .staff import main as run

        run_args = common + [
            "--store-id",
            args.store_id,
            "--staff-id",
            args.staff_id,
            "--guest-count",
            str(args.guest_count),
        ]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "chat":
        from .chat import main as run

        run_args = common + ["--user-id", args.user_id]
        if args.name:
            run_args += ["--name", args.name]
        if args.config:
            run_args += ["--config", args.config]
        _dispatch_to_module_main(run, run_args)
        return


def _dispatch_to_module_main(module_main, argv: list[str]) -> None:
    import sys

    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()
