#!/usr/bin/env python3

import argparse
import json
import sys
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Any, Dict, Optional, TextIO


def call(base_url: str, path: str, *, api_key: Optional[str], timeout: float) -> Dict[str, Any]:
    url = base_url.rstrip("/") + path
    headers = {"accept": "application/json"}
    if api_key:
        headers["x-api-key"] = api_key
    req = urllib.request.Request(url, headers=headers, method="GET")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
    except urllib.error.HTTPError as e:
        try:
            raw = e.read().decode("utf-8", errors="replace")
        except Exception:
            raw = ""
    data = json.loads(raw) if raw else {}
    if not isinstance(data, dict):
        raise RuntimeError(f"Unexpected response from {path}: {raw}")
    return data


def session_path(action: str, session_id: str) -> str:
    return f"/session/{action}/{urllib.parse.quote(session_id, safe='')}"


def wait_for_connected(
    base_url: str,
    session_id: str,
    *,
    api_key: Optional[str],
    timeout_seconds: float,
    poll_seconds: float,
    log_fp: Optional[TextIO],
) -> bool:
    deadline = time.monotonic() + timeout_seconds
    last_qr: Optional[str] = None
    while time.monotonic() < deadline:
        status = call(base_url, session_path("status", session_id), api_key=api_key, timeout=poll_seconds + 15)
        if status.get("success"):
            if log_fp:
                print(f"[status] {status.get('message')} ({status.get('state')})", file=log_fp)
            return True

        qr = call(base_url, session_path("qr", session_id), api_key=api_key, timeout=poll_seconds + 5)
        code = qr.get("qr") if qr.get("success") else None
        if code and code != last_qr:
            last_qr = code
            print(code)
            sys.stdout.flush()
        elif log_fp:
            print(f"[status] {status.get('message')}", file=log_fp)
        time.sleep(poll_seconds)
    return False


def main() -> int:
    parser = argparse.ArgumentParser(description="Minimal gateway session smoke test.")
    parser.add_argument("--base-url", default="http://127.0.0.1:3000")
    parser.add_argument("--session", default="smoke", help="Session id ([A-Za-z0-9_-]+).")
    parser.add_argument("--api-key", default=None, help="Value for the x-api-key header.")
    parser.add_argument("--timeout-seconds", type=float, default=120.0)
    parser.add_argument("--poll-seconds", type=float, default=2.0)
    parser.add_argument(
        "--terminate",
        action="store_true",
        help="Terminate the session (logout + delete auth folder) once connected.",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print QR codes.")
    args = parser.parse_args()

    log_fp: Optional[TextIO] = None if args.quiet else sys.stderr

    try:
        started = call(args.base_url, session_path("start", args.session), api_key=args.api_key, timeout=30)
    except Exception as e:
        print(f"[start] {e}", file=sys.stderr)
        return 2
    if not started.get("success") and "already exists" not in str(started.get("error") or ""):
        print(json.dumps(started, ensure_ascii=False), file=sys.stderr)
        return 2
    if log_fp:
        print(f"[start] {started.get('message') or started.get('error')}", file=log_fp)

    connected = wait_for_connected(
        args.base_url,
        args.session,
        api_key=args.api_key,
        timeout_seconds=args.timeout_seconds,
        poll_seconds=args.poll_seconds,
        log_fp=log_fp,
    )
    if not connected:
        print("[timeout] session did not connect", file=sys.stderr)
        return 1

    if args.terminate:
        done = call(args.base_url, session_path("terminate", args.session), api_key=args.api_key, timeout=60)
        if log_fp:
            print(f"[terminate] {done.get('message') or done.get('error')}", file=log_fp)
        if not done.get("success"):
            return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
