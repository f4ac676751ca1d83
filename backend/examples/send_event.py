"""Example client that publishes a design and reports a play session to the API."""
from __future__ import annotations

import argparse
import base64
import os

import requests


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Publish a sample design and send session telemetry")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("DESIGN_SERVER_API_URL", "http://127.0.0.1:8000"),
        help="Design server base URL (default: %(default)s or DESIGN_SERVER_API_URL)",
    )
    parser.add_argument(
        "--admin-key",
        default=os.environ.get("DESIGN_SERVER_ADMIN_KEY"),
        help="Admin key used to read the analytics summary (DESIGN_SERVER_ADMIN_KEY)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    design = {
        "title": "Cozy Loft",
        "authorName": "example-client",
        "level": "Berlin/Apartment",
        "saveData": base64.b64encode(b"example save data").decode("ascii"),
    }
    response = requests.post(f"{args.api_url}/api/designs", json=design, timeout=10)
    response.raise_for_status()
    print("Design stored:", response.json())

    session = requests.post(
        f"{args.api_url}/api/analytics/sessions/start",
        json={"client_version": "1.0.0", "platform": "example"},
        timeout=10,
    )
    session.raise_for_status()
    session_id = session.json()["id"]

    events = [
        {"event_name": "LevelStart", "session_id": session_id, "properties": {"level": "Berlin"}},
        {"event_name": "LevelComplete", "session_id": session_id, "properties": {"level": "Berlin", "stars": 3}},
    ]
    batch = requests.post(f"{args.api_url}/api/analytics/events/batch", json={"events": events}, timeout=10)
    batch.raise_for_status()

    ended = requests.post(f"{args.api_url}/api/analytics/sessions/{session_id}/end", timeout=10)
    ended.raise_for_status()
    print("Session ended:", ended.json())

    if args.admin_key:
        summary = requests.get(
            f"{args.api_url}/api/analytics/summary",
            headers={"x-admin-key": args.admin_key},
            timeout=10,
        )
        summary.raise_for_status()
        print("Summary:", summary.json())


if __name__ == "__main__":
    main()
