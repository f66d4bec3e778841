#!/usr/bin/env python3
"""
Manual reconciliation for the airdrop ledger.

Payouts that went out without a settlement row, or whose confirmation is
unknown, land on the review queue. Check each payout tx on an explorer, then
resolve the item with a note. A claim whose payout provably never landed can
be released so the next delivery of that payment pays it.

  python -m airdrop_backend.ops.reconcile review
  python -m airdrop_backend.ops.reconcile claims --older-than 600
  python -m airdrop_backend.ops.reconcile resolve <source_tx_id> --note "paid, sig ok"
  python -m airdrop_backend.ops.reconcile release <source_tx_id> --note "sig not found on chain"
  python -m airdrop_backend.ops.reconcile events --limit 20
"""
from __future__ import annotations

import argparse
import json
import os
import sys
import time
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from ..airdrop_store import AirdropLedger

BASE_DIR = Path(__file__).resolve().parents[2]


def _ts(v: Optional[int]) -> str:
    if not v:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(int(v)))


def cmd_review(ledger: AirdropLedger, args: argparse.Namespace) -> int:
    items = ledger.fetch_review_items(include_resolved=args.all, limit=args.limit)
    if not items:
        print("review queue is empty")
        return 0
    for it in items:
        state = f"resolved {_ts(it['resolved_at'])}" if it["resolved_at"] else "OPEN"
        print(f"#{it['id']} {_ts(it['created_at'])} [{state}] reason={it['reason']}")
        print(f"    source_tx={it['source_tx_id']}")
        print(f"    payout_tx={it['payout_tx_id'] or '-'}")
        print(f"    detail={json.dumps(it['detail'])}")
        if it["resolution_note"]:
            print(f"    note={it['resolution_note']}")
    return 0


def cmd_claims(ledger: AirdropLedger, args: argparse.Namespace) -> int:
    claims = ledger.fetch_open_claims(older_than_sec=args.older_than, limit=args.limit)
    if not claims:
        print("no open claims")
        return 0
    for c in claims:
        print(
            f"{_ts(c['created_at'])} {c['status']:<11} source_tx={c['source_tx_id']} "
            f"buyer={c['buyer_address']} payout_tx={c['payout_tx_id'] or '-'} error={c['error'] or ''}"
        )
    return 0


def cmd_resolve(ledger: AirdropLedger, args: argparse.Namespace) -> int:
    n = ledger.resolve_review(args.source_tx_id, args.note)
    if n == 0:
        print(f"no open review item for {args.source_tx_id}", file=sys.stderr)
        return 1
    print(f"resolved {n} item(s) for {args.source_tx_id}")
    return 0


def cmd_release(ledger: AirdropLedger, args: argparse.Namespace) -> int:
    status = ledger.drop_claim(args.source_tx_id, args.note)
    if status is None:
        print(f"no releasable claim for {args.source_tx_id} (missing or already settled)", file=sys.stderr)
        return 1
    print(f"released {status} claim for {args.source_tx_id}; the next delivery will pay it")
    return 0


def cmd_events(ledger: AirdropLedger, args: argparse.Namespace) -> int:
    for e in ledger.fetch_events(limit=args.limit):
        print(f"{_ts(e['ts'])} {e['type']:<15} {e['source_tx_id'] or '-'} {e['meta'] or ''}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Inspect and resolve airdrop payouts that need a human.")
    p.add_argument("--db", default=None, help="ledger path (default: AIRDROP_DB env or ./airdrop.db)")
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("review", help="list review queue items")
    r.add_argument("--all", action="store_true", help="include resolved items")
    r.add_argument("--limit", type=int, default=100)
    r.set_defaults(func=cmd_review)

    c = sub.add_parser("claims", help="list claims stuck in settling/unconfirmed")
    c.add_argument("--older-than", type=int, default=0, help="only claims older than N seconds")
    c.add_argument("--limit", type=int, default=100)
    c.set_defaults(func=cmd_claims)

    s = sub.add_parser("resolve", help="mark the review items of a source tx as resolved")
    s.add_argument("source_tx_id")
    s.add_argument("--note", required=True)
    s.set_defaults(func=cmd_resolve)

    rl = sub.add_parser("release", help="drop a claim whose payout never landed so a redelivery can pay it")
    rl.add_argument("source_tx_id")
    rl.add_argument("--note", required=True)
    rl.set_defaults(func=cmd_release)

    e = sub.add_parser("events", help="show the latest delivery outcomes")
    e.add_argument("--limit", type=int, default=50)
    e.set_defaults(func=cmd_events)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(BASE_DIR / ".env")
    args = build_parser().parse_args(argv)
    db_path = args.db or os.getenv("AIRDROP_DB") or str(BASE_DIR / "airdrop.db")
    ledger = AirdropLedger(db_path)
    ledger.init()
    return int(args.func(ledger, args))


if __name__ == "__main__":
    raise SystemExit(main())
