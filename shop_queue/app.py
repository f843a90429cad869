from __future__ import annotations

# Single-entrypoint runner.
#
#     python -m shop_queue.app serve --catalog catalog.json --db queue.db
#
# starts the queue manager. The other subcommands are thin MQTT clients for
# operating a running server from a terminal:
#
#     join / cancel / advance / move-down / move-up / queue / find / watch

import argparse
import json
import sys
from typing import Any

from .mqtt_topics import DEFAULT_NAMESPACE


def _parse_service(text: str) -> dict[str, Any]:
    """`haircut` or `haircut:2` -> {"service_ref": ..., "quantity": ...}"""
    ref, _, qty = text.partition(":")
    if not ref:
        raise argparse.ArgumentTypeError(f"invalid service {text!r}")
    try:
        quantity = int(qty) if qty else 1
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid quantity in {text!r}") from None
    return {"service_ref": ref, "quantity": quantity}


def _requester(args: argparse.Namespace) -> dict[str, str]:
    return {"role": args.as_role, "ref": args.as_ref}


def _print_response(resp: dict[str, Any]) -> int:
    if resp.get("type") == "error":
        print(f"error [{resp.get('code')}]: {resp.get('message')}", file=sys.stderr)
        return 1
    print(json.dumps(resp, indent=2, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Shop Queue (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    def add_mqtt_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--mqtt-host", default="127.0.0.1")
        p.add_argument("--mqtt-port", type=int, default=1883)
        p.add_argument("--namespace", default=DEFAULT_NAMESPACE)

    def add_requester_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--as-role", required=True, choices=["customer", "worker", "operator", "admin"])
        p.add_argument("--as-ref", default="", help="user/worker/operator reference of the caller")

    # ---- Server ----
    p_serve = sub.add_parser("serve", help="Start the queue manager")
    add_mqtt_args(p_serve)
    p_serve.add_argument("--db", default=None, help="SQLite file (default: in-memory)")
    p_serve.add_argument("--catalog", default=None, help="catalog JSON (shops, workers, tokens)")
    p_serve.add_argument("--no-push", action="store_true", help="disable push notifications")
    p_serve.add_argument("--log-level", default=None)

    # ---- Clients ----
    p_join = sub.add_parser("join", help="Join a shop's queue")
    add_mqtt_args(p_join)
    p_join.add_argument("--shop", required=True)
    p_join.add_argument("--worker", default=None)
    p_join.add_argument("--user", default=None, help="registered customer reference")
    p_join.add_argument("--name", default=None, help="guest name")
    p_join.add_argument("--phone", default=None, help="guest phone")
    p_join.add_argument(
        "--service",
        dest="services",
        action="append",
        type=_parse_service,
        required=True,
        help="service_ref[:quantity], repeatable",
    )

    p_cancel = sub.add_parser("cancel", help="Cancel a queue entry")
    add_mqtt_args(p_cancel)
    add_requester_args(p_cancel)
    p_cancel.add_argument("--entry", required=True)

    p_adv = sub.add_parser("advance", help="Set an entry to in_progress or completed")
    add_mqtt_args(p_adv)
    add_requester_args(p_adv)
    p_adv.add_argument("--entry", required=True)
    p_adv.add_argument("--status", required=True, choices=["in_progress", "completed", "cancelled"])

    for name, help_text in (("move-down", "Swap an entry with the next one"), ("move-up", "Swap an entry with the previous one")):
        p_move = sub.add_parser(name, help=help_text)
        add_mqtt_args(p_move)
        add_requester_args(p_move)
        p_move.add_argument("--entry", required=True)

    p_queue = sub.add_parser("queue", help="Print a shop's (or one worker's) active queue")
    add_mqtt_args(p_queue)
    p_queue.add_argument("--shop", required=True)
    p_queue.add_argument("--worker", default=None)

    p_find = sub.add_parser("find", help="Look up an entry by its public code")
    add_mqtt_args(p_find)
    p_find.add_argument("--code", required=True)

    p_watch = sub.add_parser("watch", help="Print live queue snapshots of a shop")
    add_mqtt_args(p_watch)
    p_watch.add_argument("--shop", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.cmd == "serve":
        from .manager import main as serve

        serve_args = ["--mqtt-host", args.mqtt_host, "--mqtt-port", str(args.mqtt_port), "--namespace", args.namespace]
        if args.db:
            serve_args += ["--db", args.db]
        if args.catalog:
            serve_args += ["--catalog", args.catalog]
        if args.no_push:
            serve_args += ["--no-push"]
        if args.log_level:
            serve_args += ["--log-level", args.log_level]
        serve(serve_args)
        return 0

    if args.cmd == "watch":
        from .client import format_queue, watch_shop

        def show(snapshot: dict[str, Any]) -> None:
            print(f"--- shop {snapshot.get('shopId')}: {snapshot.get('count')} waiting ---")
            print(format_queue(snapshot.get("queue") or []))

        watch_shop(
            mqtt_host=args.mqtt_host,
            mqtt_port=args.mqtt_port,
            namespace=args.namespace,
            shop_ref=args.shop,
            on_snapshot=show,
        )
        return 0

    from .client import QueueClient, format_queue

    with QueueClient(mqtt_host=args.mqtt_host, mqtt_port=args.mqtt_port, namespace=args.namespace) as client:
        if args.cmd == "join":
            resp = client.join(
                shop_ref=args.shop,
                services=args.services,
                user_ref=args.user,
                name=args.name,
                phone=args.phone,
                worker_ref=args.worker,
            )
            if resp.get("type") == "joined":
                entry = resp["entry"]
                print(f"joined {args.shop} as #{entry['position']} (code {entry['public_code']}, id {entry['id']})")
                return 0
            return _print_response(resp)

        if args.cmd == "cancel":
            return _print_response(client.cancel(entry_id=args.entry, requester=_requester(args)))

        if args.cmd == "advance":
            return _print_response(
                client.advance(entry_id=args.entry, status=args.status, requester=_requester(args))
            )

        if args.cmd == "move-down":
            return _print_response(client.move_down(entry_id=args.entry, requester=_requester(args)))

        if args.cmd == "move-up":
            return _print_response(client.move_up(entry_id=args.entry, requester=_requester(args)))

        if args.cmd == "queue":
            resp = client.get_queue(shop_ref=args.shop, worker_ref=args.worker)
            if resp.get("type") == "queue":
                print(format_queue(resp.get("queue") or []))
                return 0
            return _print_response(resp)

        if args.cmd == "find":
            return _print_response(client.find(public_code=args.code))

    return 2


if __name__ == "__main__":
    sys.exit(main())
