from __future__ import annotations

# Single-entrypoint runner.
#
#     python -m yearbook_distribution.app coordinator [--database-url sqlite:///yearbook.db]
#     python -m yearbook_distribution.app station --station-id checker-1
#
# plus one-shot commands for scripting and smoke tests (each connects, sends
# one request, prints the reply and exits):
#
#     python -m yearbook_distribution.app pay --student-id S1 --amount-due 13 --bills ten=1 five=1
#     python -m yearbook_distribution.app import roster.csv --map ID=student_id

import argparse
import json
import sys
import time
from typing import Any

from .mqtt_topics import DEFAULT_NAMESPACE


def add_mqtt_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--mqtt-host", default="127.0.0.1")
    p.add_argument("--mqtt-port", type=int, default=1883)
    p.add_argument("--namespace", default=DEFAULT_NAMESPACE)


def add_operator_args(p: argparse.ArgumentParser, station: str) -> None:
    add_mqtt_args(p)
    p.add_argument("--operator", required=True)
    p.add_argument("--station-name", default=station)


def _pairs(values: list[str], what: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise SystemExit(f"{what} must look like key=value, got {item!r}")
        out[key] = value
    return out


def main() -> None:
    parser = argparse.ArgumentParser(description="Yearbook distribution stations (MQTT) - main entrypoint")
    sub = parser.add_subparsers(dest="cmd", required=True)

    # ---- Long-running processes ----
    p_coord = sub.add_parser("coordinator", help="Start the coordinator service")
    add_mqtt_args(p_coord)
    p_coord.add_argument("--database-url", default="")
    p_coord.add_argument("--log-level", default="INFO")

    p_station = sub.add_parser("station", help="Start a station that follows the live event stream")
    add_mqtt_args(p_station)
    p_station.add_argument("--station-id", required=True)
    p_station.add_argument("--operator", default="observer")
    p_station.add_argument("--log-level", default="INFO")

    # ---- One-shot commands ----
    p_pay = sub.add_parser("pay", help="Process a cash payment")
    add_operator_args(p_pay, "Cash Station")
    p_pay.add_argument("--student-id", required=True)
    p_pay.add_argument("--amount-due", default=None, help="defaults to the outstanding balance")
    p_pay.add_argument("--name", default=None, help="name for a walk-up student")
    p_pay.add_argument("--bills", nargs="+", default=[], metavar="DENOM=COUNT", help="e.g. ten=1 five=1")

    p_dist = sub.add_parser("distribute", help="Record a book handoff")
    add_operator_args(p_dist, "Distribution Station")
    p_dist.add_argument("--student-id", required=True)

    p_verify = sub.add_parser("verify", help="Verify a distribution")
    add_operator_args(p_verify, "Checker Station")
    p_verify.add_argument("--distribution-id", type=int, required=True)

    p_free = sub.add_parser("free", help="Issue a complimentary book")
    add_operator_args(p_free, "Ruby Station")
    p_free.add_argument("--name", required=True)
    p_free.add_argument("--student-id", default=None, help="convert an existing student instead")

    p_import = sub.add_parser("import", help="Import a roster CSV")
    add_operator_args(p_import, "Ruby Station")
    p_import.add_argument("csv_path")
    p_import.add_argument("--map", nargs="*", default=[], metavar="COLUMN=FIELD")

    p_logs = sub.add_parser("logs", help="Show recent action-log entries")
    add_mqtt_args(p_logs)
    p_logs.add_argument("--limit", type=int, default=20)

    args = parser.parse_args()

    if args.cmd == "coordinator":
        from .service import main as run

        run_args = _mqtt_argv(args) + ["--log-level", args.log_level]
        if args.database_url:
            run_args += ["--database-url", args.database_url]
        _dispatch_to_module_main(run, run_args)
        return

    if args.cmd == "station":
        from .station import main as run

        run_args = _mqtt_argv(args) + [
            "--station-id",
            args.station_id,
            "--operator",
            args.operator,
            "--log-level",
            args.log_level,
        ]
        _dispatch_to_module_main(run, run_args)
        return

    message: dict[str, Any]
    if args.cmd == "pay":
        bills = {k: int(v) for k, v in _pairs(args.bills, "--bills").items()}
        message = {"type": "process_payment", "student_id": args.student_id, "bills": bills}
        if args.amount_due is not None:
            message["amount_due"] = args.amount_due
        if args.name:
            message["name"] = args.name
    elif args.cmd == "distribute":
        message = {"type": "create_distribution", "student_id": args.student_id}
    elif args.cmd == "verify":
        message = {"type": "verify_distribution", "distribution_id": args.distribution_id}
    elif args.cmd == "free":
        message = {"type": "issue_complimentary", "name": args.name}
        if args.student_id:
            message["student_id"] = args.student_id
    elif args.cmd == "import":
        from .importer import load_csv

        message = {"type": "import_students", "rows": load_csv(args.csv_path, _pairs(args.map, "--map"))}
    else:
        message = {"type": "recent_logs", "limit": args.limit}

    if hasattr(args, "operator"):
        message["operator"] = args.operator
        message["station_name"] = args.station_name

    reply = send_once(mqtt_host=args.mqtt_host, mqtt_port=args.mqtt_port, namespace=args.namespace, message=message)
    print(json.dumps(reply, indent=2))
    if reply.get("type") == "error":
        sys.exit(1)


def send_once(*, mqtt_host: str, mqtt_port: int, namespace: str, message: dict[str, Any]) -> dict[str, Any]:
    """Connect, send one request, wait for its reply, disconnect."""
    from .mqtt_client import MqttClient
    from .mqtt_topics import coordinator_requests, coordinator_responses

    client_id = f"cli-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = coordinator_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=coordinator_requests(namespace),
            response_topic=reply_topic,
            message=message,
            timeout=10.0,
        )
    finally:
        mqtt.stop()


def _mqtt_argv(args: argparse.Namespace) -> list[str]:
    return ["--mqtt-host", args.mqtt_host, "--mqtt-port", str(args.mqtt_port), "--namespace", args.namespace]


def _dispatch_to_module_main(module_main, argv: list[str]) -> None:
    old_argv = sys.argv[:]
    try:
        sys.argv = [old_argv[0], *argv]
        module_main()
    finally:
        sys.argv = old_argv


if __name__ == "__main__":
    main()
