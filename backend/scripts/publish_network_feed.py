from __future__ import annotations

import argparse
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Sequence

import httpx

from saferoute.models import EventRecord, NetworkFeed, OverlayRecord


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Validate normalized network/overlay/event feeds and publish them to a running backend."
    )
    parser.add_argument("--feed", default=None, help="Network feed JSON (nodes, edges, informal_edges).")
    parser.add_argument("--overlays", default=None, help="JSON list of edge overlay records.")
    parser.add_argument("--events", default=None, help="JSON list of event windows.")
    parser.add_argument("--backend-url", default="http://localhost:8000")
    parser.add_argument("--timeout-s", type=float, default=60.0)
    parser.add_argument("--dry-run", action="store_true", help="Validate only; do not contact the backend.")
    return parser


def _read_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def load_feed(path: str) -> dict[str, Any]:
    return NetworkFeed.model_validate(_read_json(path)).model_dump(mode="json")


def load_records(path: str, *, kind: str) -> list[dict[str, Any]]:
    payload = _read_json(path)
    if not isinstance(payload, list):
        raise ValueError(f"{kind} file must contain a JSON list")
    model = OverlayRecord if kind == "overlays" else EventRecord
    return [model.model_validate(item).model_dump(mode="json") for item in payload]


def publish_feeds(
    *,
    backend_url: str,
    feed: dict[str, Any] | None = None,
    overlays: list[dict[str, Any]] | None = None,
    events: list[dict[str, Any]] | None = None,
    timeout_s: float = 60.0,
    client: httpx.Client | None = None,
) -> dict[str, Any]:
    base = backend_url.rstrip("/")
    own_client = client is None
    if client is None:
        client = httpx.Client(timeout=timeout_s)

    summary: dict[str, Any] = {"timestamp": datetime.now(UTC).isoformat(), "backend_url": base}
    try:
        # Snapshot first so overlays and events land on the edges they reference.
        if feed is not None:
            resp = client.post(f"{base}/network/snapshot", json=feed)
            resp.raise_for_status()
            summary["snapshot"] = resp.json()
        if overlays is not None:
            resp = client.post(f"{base}/network/overlays", json=overlays)
            resp.raise_for_status()
            summary["overlays"] = resp.json()
        if events is not None:
            resp = client.post(f"{base}/network/events", json=events)
            resp.raise_for_status()
            summary["events"] = resp.json()
        return summary
    finally:
        if own_client and client is not None:
            client.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    if not (args.feed or args.overlays or args.events):
        raise SystemExit("nothing to publish: pass --feed, --overlays and/or --events")

    feed = load_feed(args.feed) if args.feed else None
    overlays = load_records(args.overlays, kind="overlays") if args.overlays else None
    events = load_records(args.events, kind="events") if args.events else None

    if args.dry_run:
        summary: dict[str, Any] = {
            "dry_run": True,
            "node_count": len(feed["nodes"]) if feed else 0,
            "edge_count": (len(feed["edges"]) + len(feed["informal_edges"])) if feed else 0,
            "overlay_count": len(overlays or []),
            "event_count": len(events or []),
        }
    else:
        summary = publish_feeds(
            backend_url=args.backend_url,
            feed=feed,
            overlays=overlays,
            events=events,
            timeout_s=args.timeout_s,
        )
    print(json.dumps(summary, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
