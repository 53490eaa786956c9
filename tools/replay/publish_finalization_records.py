from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

# Allow running from repo root without installing as a package.
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from veilperp.contracts.streams import FINALIZATION_STREAM_V1
from veilperp.core.idempotency import InMemoryIdempotencyStore, finalization_record_key
from veilperp.core.message_bus import RedisStreamBus, wire_dict_to_envelope


def main() -> None:
    ap = argparse.ArgumentParser(description="Replay finalization records onto the finalization stream.")
    ap.add_argument("--redis-url", required=True)
    ap.add_argument("--records-dir", default=str(Path("contracts") / "golden_events" / "v1"))
    ap.add_argument("--stream", default=FINALIZATION_STREAM_V1)
    ap.add_argument("--offset", type=int, action="append", help="Only replay records for these computation offsets.")
    ap.add_argument(
        "--allow-duplicates",
        action="store_true",
        help="Publish every copy of a record, to exercise consumer-side dedupe.",
    )
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument(
        "--fail-on-invalid",
        action="store_true",
        help="By default invalid records are skipped. Use this flag to fail fast instead.",
    )
    args = ap.parse_args()

    root = Path(args.records_dir)
    files = sorted(root.glob("*.json"))
    if not files:
        raise SystemExit(f"no finalization records found under {root}")

    bus = None if args.dry_run else RedisStreamBus(args.redis_url)
    claimed = InMemoryIdempotencyStore()
    published = 0
    for fp in files:
        try:
            env = wire_dict_to_envelope(json.loads(fp.read_text(encoding="utf-8")))
        except ValueError as e:
            if args.fail_on_invalid:
                raise
            print(f"[skip-invalid] {fp.name}: {e}")
            continue
        offset = env.payload["offset"]
        if args.offset and offset not in args.offset:
            continue
        key = finalization_record_key(env)
        if not claimed.claim(key, ttl_seconds=3600) and not args.allow_duplicates:
            print(f"[skip-duplicate] {fp.name}: offset {offset} event {env.event_id}")
            continue
        if bus is None:
            print(f"[dry-run] {args.stream} <- {fp.name} (offset {offset}, {env.schema})")
        else:
            bus.publish(args.stream, env)
            print(f"{args.stream} <- {fp.name} (offset {offset}, {env.schema})")
        published += 1
    print(f"{published} record(s) replayed")


if __name__ == "__main__":
    main()
