#!/usr/bin/env python3
import argparse
import json
import os
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid


def _get_json(url: str) -> dict:
    try:
        with urllib.request.urlopen(url, timeout=10) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body) if body else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8")
        raise SystemExit(f"Executor API error ({e.code}): {body}") from e


def format_line(line: dict) -> str:
    prefix = "ERR " if line.get("isError") else ""
    return f"{line.get('timestamp', '')} {prefix}{line.get('text', '')}"


def main() -> int:
    parser = argparse.ArgumentParser(description="Follow executor output via the status endpoint.")
    parser.add_argument("--ticket-id", help="Ticket to follow")
    parser.add_argument("--project-id", help="Project to follow")
    parser.add_argument("--client-id", help="Polling client id (default: random per run)")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between polls")
    parser.add_argument("--once", action="store_true", help="Print new output once and exit")
    parser.add_argument("--dashboard-url", help="Dashboard base URL (default from DASHBOARD_URL)")

    args = parser.parse_args()

    dashboard_url = args.dashboard_url or os.getenv("DASHBOARD_URL") or "http://localhost:8080"
    params = {"clientId": args.client_id or f"tail-{uuid.uuid4().hex[:8]}"}
    if args.ticket_id:
        params["ticketId"] = args.ticket_id
    if args.project_id:
        params["projectId"] = args.project_id
    endpoint = dashboard_url.rstrip("/") + "/api/executor/status?" + urllib.parse.urlencode(params)

    last_status = None
    try:
        while True:
            status = _get_json(endpoint)
            for line in status.get("newOutput", []):
                print(format_line(line), file=sys.stderr if line.get("isError") else sys.stdout)

            if status.get("status") != last_status:
                stats = status.get("stats", {})
                print(f"-- {status.get('status')} (running {stats.get('running', 0)}/"
                      f"{stats.get('maxConcurrent', 0)}, queued {stats.get('queued', 0)})")
                last_status = status.get("status")

            if args.once:
                return 0
            time.sleep(args.interval)
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
