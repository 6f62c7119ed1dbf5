from __future__ import annotations

import argparse
import json
import os
import signal
from collections.abc import Callable
from typing import Any

import httpx

DEFAULT_URL = "http://127.0.0.1:8081"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Profiling agent control helper")
    parser.add_argument(
        "--url",
        default=os.environ.get("PROFILER_TRIGGER_URL", DEFAULT_URL),
        help="Base URL of the agent's HTTP trigger",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("PROFILER_TRIGGER_TOKEN"),
        help="Bearer token expected by the HTTP trigger",
    )
    parser.add_argument("--timeout", type=float, default=120.0, help="Request timeout (seconds)")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start a profiling session")
    start.add_argument("--duration", type=float, help="Session length in seconds")
    sub.add_parser("stop", help="Stop the active session and export it")
    sub.add_parser("status", help="Report whether a session is active")

    sig = sub.add_parser("signal", help="Drive the agent with SIGUSR1/SIGUSR2")
    sig.add_argument("action", choices=("start", "stop"))
    sig.add_argument("--pid", type=int, required=True, help="Agent process id")
    return parser


def _request(client: httpx.Client, args: argparse.Namespace) -> int:
    headers = {"Authorization": f"Bearer {args.token}"} if args.token else {}
    base = args.url.rstrip("/")

    if args.command == "status":
        response = client.get(f"{base}/profile/status", headers=headers)
    else:
        body: dict[str, Any] = {}
        if args.command == "start" and args.duration is not None:
            body["duration"] = args.duration
        response = client.post(f"{base}/profile/{args.command}", json=body, headers=headers)

    try:
        payload = response.json()
    except ValueError:
        print(f"ERROR status={response.status_code} body={response.text!r}")
        return 1

    if args.command == "status":
        print("ACTIVE" if payload.get("active") else "IDLE")
        return 0 if response.status_code == 200 else 1
    if response.status_code == 200 and payload.get("success"):
        print(f"OK {payload.get('message', '')}")
        return 0
    print(f"FAILED status={response.status_code} {payload.get('error', json.dumps(payload))}")
    return 1


def _send_signal(args: argparse.Namespace, kill_fn: Callable[[int, int], None]) -> int:
    sig = signal.SIGUSR1 if args.action == "start" else signal.SIGUSR2
    try:
        kill_fn(args.pid, sig)
    except OSError as exc:
        print(f"ERROR pid={args.pid} {exc}")
        return 1
    print(f"SENT {sig.name} pid={args.pid}")
    return 0


def main(
    argv: list[str] | None = None,
    *,
    client: httpx.Client | None = None,
    kill_fn: Callable[[int, int], None] = os.kill,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "signal":
        return _send_signal(args, kill_fn)

    owned = client is None
    http = client or httpx.Client(timeout=args.timeout)
    try:
        return _request(http, args)
    except httpx.HTTPError as exc:
        print(f"ERROR {args.url}: {exc}")
        return 1
    finally:
        if owned:
            http.close()


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
