#!/usr/bin/env python3
import argparse
import json
import os
import urllib.error
import urllib.request


def _parse_env(pairs) -> dict:
    env = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise SystemExit(f"Invalid --env value (expected KEY=VALUE): {pair}")
        key, value = pair.split("=", 1)
        env[key] = value
    return env


def _post_json(url: str, payload: dict) -> dict:
    data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as resp:
            body = resp.read().decode("utf-8")
            return json.loads(body) if body else {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8")
        raise SystemExit(f"Executor API error ({e.code}): {body}") from e


def main() -> int:
    parser = argparse.ArgumentParser(description="Submit a CLI job to the executor via the dashboard API.")
    parser.add_argument("command", help="Executable to run")
    parser.add_argument("args", nargs="*", help="Arguments passed to the command")
    parser.add_argument("--cwd", help="Working directory on the server")
    parser.add_argument("--env", action="append", help="Extra environment variable KEY=VALUE (repeatable)")
    parser.add_argument("--timeout", type=float, help="Timeout in seconds")
    parser.add_argument("--ticket-id", help="Ticket the job belongs to")
    parser.add_argument("--project-id", help="Project the job belongs to")
    parser.add_argument("--dashboard-url", help="Dashboard base URL (default from DASHBOARD_URL)")

    args = parser.parse_args()

    dashboard_url = args.dashboard_url or os.getenv("DASHBOARD_URL") or "http://localhost:8080"
    endpoint = dashboard_url.rstrip("/") + "/api/executor/jobs"

    req = {"command": args.command, "args": args.args}
    if args.cwd:
        req["cwd"] = args.cwd
    if args.env:
        req["env"] = _parse_env(args.env)
    if args.timeout:
        req["timeout"] = args.timeout
    if args.ticket_id:
        req["ticket_id"] = args.ticket_id
    if args.project_id:
        req["project_id"] = args.project_id

    response = _post_json(endpoint, req)
    print(json.dumps(response, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
