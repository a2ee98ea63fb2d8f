#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from datetime import date
from pathlib import Path
from typing import Any

PHASES = ("package_status_refresh", "birthday", "expiry", "scheduled_campaigns")


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("REMINDER_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/automation"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/automation"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
    timeout: int = 600,
) -> tuple[int, dict[str, Any]]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        try:
            parsed = json.loads(detail)
        except ValueError:
            parsed = {"detail": detail}
        return exc.code, parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Trigger one automation run (birthdays, expiry reminders, scheduled campaigns). "
            "Intended for cron or Kubernetes CronJob schedules."
        )
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/automation)."
        ),
    )
    parser.add_argument(
        "--today",
        type=date.fromisoformat,
        default=None,
        help="Evaluate as of YYYY-MM-DD. Requires AUTOMATION_ALLOW_TODAY_OVERRIDE=true on the server.",
    )
    parser.add_argument(
        "--phase",
        dest="phases",
        action="append",
        choices=PHASES,
        default=None,
        help="Run only this phase; repeat for several (default: all phases).",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=600,
        help="HTTP timeout in seconds (default: 600).",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    api_base_url = _resolve_api_base_url(args.api_base_url)
    payload: dict[str, Any] = {}
    if args.today is not None:
        payload["today"] = args.today.isoformat()
    if args.phases:
        payload["phases"] = args.phases

    status_code, body = _request_json("POST", api_base_url, "run", payload=payload, timeout=args.timeout)
    if status_code == 409:
        print("automation run already in progress; nothing to do")
        return 0
    if status_code != 200:
        raise SystemExit(f"POST /run failed with {status_code}: {body.get('detail', body)}")

    print(
        "run {run_id}: sent={sent} failed={failed} skipped={skipped} omitted={omitted} success={success}".format(
            run_id=body.get("run_id"),
            sent=body.get("sent_count"),
            failed=body.get("failed_count"),
            skipped=body.get("skipped_count"),
            omitted=body.get("omitted_count"),
            success=body.get("success"),
        )
    )
    return 0 if body.get("success") else 1


if __name__ == "__main__":
    raise SystemExit(main())
