"""
Offline sync agent: queue needs locally and replay them once the API is
reachable.

Examples:
    python scripts/sync_offline_needs.py --token $TOKEN enqueue need.json
    python scripts/sync_offline_needs.py --token $TOKEN sync
    python scripts/sync_offline_needs.py --token $TOKEN watch --interval-seconds 30
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fulfillme.config import get_settings
from fulfillme.dependencies import get_offline_queue
from fulfillme.sync import HttpNeedSubmitter, NeedSyncer

logger = logging.getLogger(__name__)


def main() -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="FulfillME offline sync agent")
    parser.add_argument(
        "--api-base-url",
        default=settings.api_base_url,
        help="Marketplace API base URL (including the /api prefix)",
    )
    parser.add_argument(
        "--token",
        default=None,
        help="Bearer token of the asker posting the queued needs",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    enqueue = sub.add_parser("enqueue", help="Queue a need from a JSON file")
    enqueue.add_argument("path", type=Path)

    sub.add_parser("sync", help="Run a single sync pass")
    sub.add_parser("status", help="List queued entries")

    watch = sub.add_parser("watch", help="Probe connectivity and sync on reconnect")
    watch.add_argument(
        "--interval-seconds",
        type=float,
        default=30.0,
        help="Seconds between connectivity probes",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    submitter = HttpNeedSubmitter(args.api_base_url, token=args.token)
    syncer = NeedSyncer(get_offline_queue(), submitter)

    if args.command == "enqueue":
        payload = json.loads(args.path.read_text(encoding="utf-8"))
        entry = syncer.enqueue(payload)
        print(entry.entry_id)
        return 0

    if args.command == "status":
        for entry in syncer.queue.pending():
            print(f"{entry.entry_id}\t{entry.payload.get('title', '')}")
        return 0

    if args.command == "sync":
        result = syncer.run_pass()
        return 1 if result and result.failed else 0

    while True:
        syncer.on_connectivity_change(submitter.is_online())
        time.sleep(args.interval_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
