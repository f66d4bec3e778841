# airdrop_store.py
"""
SQLite ledger for the airdrop.

Tables:
- settlement_claims : one row per source tx, inserted before any transfer.
                      PRIMARY KEY(source_tx_id) is what stops two deliveries
                      of the same payment from both paying out.
- settlements       : append-only audit rows, written after confirmation.
- review_queue      : payouts a human has to look at (unknown confirmation,
                      ledger write failed after a transfer).
- airdrop_events    : outcome log for every delivery.
"""
from __future__ import annotations

import json
import sqlite3
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .airdrop_models import PaidAsset, SettlementRecord
from .errors import DuplicateSettlement, LedgerUnavailable

CLAIM_SETTLING = "settling"
CLAIM_SETTLED = "settled"
CLAIM_FAILED = "failed"
CLAIM_UNCONFIRMED = "unconfirmed"


def now_unix() -> int:
    return int(time.time())


def connect(db_path: str, timeout_sec: float = 10.0) -> sqlite3.Connection:
    try:
        con = sqlite3.connect(db_path, timeout=timeout_sec, isolation_level=None)  # autocommit
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA journal_mode=WAL;")
        con.execute("PRAGMA synchronous=NORMAL;")
        con.execute(f"PRAGMA busy_timeout={int(timeout_sec * 1000)};")
    except sqlite3.Error as e:
        raise LedgerUnavailable(f"cannot open ledger '{db_path}': {e}") from e
    return con


def ensure_tables(con: sqlite3.Connection) -> None:
    con.execute("""
    CREATE TABLE IF NOT EXISTS settlement_claims (
      source_tx_id TEXT PRIMARY KEY,
      created_at INTEGER NOT NULL,
      buyer_address TEXT NOT NULL,
      status TEXT NOT NULL,
      payout_tx_id TEXT,
      error TEXT
    );
    """)
    con.execute("""
    CREATE TABLE IF NOT EXISTS settlements (
      source_tx_id TEXT PRIMARY KEY,
      buyer_address TEXT NOT NULL,
      paid_asset TEXT NOT NULL,
      paid_amount TEXT NOT NULL,
      rate_applied TEXT NOT NULL,
      native_usd_price TEXT,
      price_is_fallback INTEGER NOT NULL,
      payout_amount TEXT NOT NULL,
      payout_tx_id TEXT NOT NULL,
      settled_at INTEGER NOT NULL
    );
    """)
    con.execute("""
    CREATE TABLE IF NOT EXISTS review_queue (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      created_at INTEGER NOT NULL,
      source_tx_id TEXT NOT NULL,
      payout_tx_id TEXT,
      reason TEXT NOT NULL,
      detail TEXT,
      resolved_at INTEGER,
      resolution_note TEXT
    );
    """)
    con.execute("""
    CREATE TABLE IF NOT EXISTS airdrop_events (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      ts INTEGER NOT NULL,
      type TEXT NOT NULL,
      source_tx_id TEXT,
      meta TEXT
    );
    """)
    con.execute("CREATE INDEX IF NOT EXISTS idx_review_open ON review_queue(resolved_at, id);")
    con.execute("CREATE INDEX IF NOT EXISTS idx_claims_status ON settlement_claims(status, created_at);")


class AirdropLedger:
    """Idempotency ledger. Opens one short-lived connection per operation."""

    def __init__(self, db_path: str, timeout_sec: float = 10.0):
        self.db_path = db_path
        self.timeout_sec = timeout_sec

    def _con(self) -> sqlite3.Connection:
        return connect(self.db_path, self.timeout_sec)

    def init(self) -> None:
        con = self._con()
        try:
            ensure_tables(con)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"cannot create ledger tables: {e}") from e
        finally:
            con.close()

    # -- idempotency ---------------------------------------------------------

    def has_settled(self, source_tx_id: str) -> bool:
        """Fast-path check only; claim() is the real guard."""
        con = self._con()
        try:
            row = con.execute(
                """
                SELECT 1 FROM settlements WHERE source_tx_id=?
                UNION ALL
                SELECT 1 FROM settlement_claims WHERE source_tx_id=?
                LIMIT 1
                """,
                (source_tx_id, source_tx_id),
            ).fetchone()
            return row is not None
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"ledger read failed: {e}") from e
        finally:
            con.close()

    def claim(self, source_tx_id: str, buyer_address: str) -> None:
        con = self._con()
        try:
            con.execute(
                "INSERT INTO settlement_claims(source_tx_id, created_at, buyer_address, status) VALUES(?,?,?,?)",
                (source_tx_id, now_unix(), buyer_address, CLAIM_SETTLING),
            )
        except sqlite3.IntegrityError:
            raise DuplicateSettlement(source_tx_id)
        except sqlite3.Error as e:
            raise LedgerUnavailable(f"ledger claim failed: {e}") from e
        finally:
            con.close()

    def release_claim(self, source_tx_id: str) -> None:
        """Drop a claim whose transfer never reached the chain, so a redelivery can retry."""
        con = self._con()
        try:
            con.execute(
                "DELETE FROM settlement_claims WHERE source_tx_id=? AND status=?",
                (source_tx_id, CLAIM_SETTLING),
            )
        finally:
            con.close()

    def mark_claim(
        self,
        source_tx_id: str,
        status: str,
        error: str = "",
        payout_tx_id: Optional[str] = None,
    ) -> None:
        con = self._con()
        try:
            con.execute(
                "UPDATE settlement_claims SET status=?, error=?, payout_tx_id=COALESCE(?, payout_tx_id) WHERE source_tx_id=?",
                (status, error[:500], payout_tx_id, source_tx_id),
            )
        finally:
            con.close()

    def record(self, rec: SettlementRecord) -> None:
        """Append the settlement row and close the claim in one transaction."""
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE;")
            try:
                con.execute(
                    """
                    INSERT INTO settlements(
                      source_tx_id, buyer_address, paid_asset, paid_amount, rate_applied,
                      native_usd_price, price_is_fallback, payout_amount, payout_tx_id, settled_at
                    ) VALUES(?,?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        rec.source_tx_id,
                        rec.buyer_address,
                        rec.paid_asset.value,
                        str(rec.paid_amount),
                        str(rec.rate_applied),
                        None if rec.native_usd_price is None else str(rec.native_usd_price),
                        1 if rec.price_is_fallback else 0,
                        str(rec.payout_amount),
                        rec.payout_tx_id,
                        int(rec.settled_at.timestamp()),
                    ),
                )
                con.execute(
                    "UPDATE settlement_claims SET status=?, payout_tx_id=?, error='' WHERE source_tx_id=?",
                    (CLAIM_SETTLED, rec.payout_tx_id, rec.source_tx_id),
                )
                con.execute("COMMIT;")
            except sqlite3.IntegrityError:
                con.execute("ROLLBACK;")
                raise DuplicateSettlement(rec.source_tx_id)
            except Exception:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise
        finally:
            con.close()

    def get_settlement(self, source_tx_id: str) -> Optional[SettlementRecord]:
        con = self._con()
        try:
            r = con.execute("SELECT * FROM settlements WHERE source_tx_id=?", (source_tx_id,)).fetchone()
        finally:
            con.close()
        if r is None:
            return None
        return SettlementRecord(
            source_tx_id=str(r["source_tx_id"]),
            buyer_address=str(r["buyer_address"]),
            paid_asset=PaidAsset(r["paid_asset"]),
            paid_amount=Decimal(r["paid_amount"]),
            rate_applied=Decimal(r["rate_applied"]),
            native_usd_price=Decimal(r["native_usd_price"]) if r["native_usd_price"] is not None else None,
            price_is_fallback=bool(r["price_is_fallback"]),
            payout_amount=int(r["payout_amount"]),
            payout_tx_id=str(r["payout_tx_id"]),
            settled_at=datetime.fromtimestamp(int(r["settled_at"]), tz=timezone.utc),
        )

    # -- manual review -------------------------------------------------------

    def flag_for_review(
        self,
        source_tx_id: str,
        reason: str,
        payout_tx_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> int:
        con = self._con()
        try:
            cur = con.execute(
                "INSERT INTO review_queue(created_at, source_tx_id, payout_tx_id, reason, detail) VALUES(?,?,?,?,?)",
                (now_unix(), source_tx_id, payout_tx_id, reason, json.dumps(detail or {}, default=str)),
            )
            return int(cur.lastrowid)
        finally:
            con.close()

    def fetch_review_items(self, include_resolved: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        q = """
        SELECT id, created_at, source_tx_id, payout_tx_id, reason, detail, resolved_at, resolution_note
        FROM review_queue
        """
        if not include_resolved:
            q += " WHERE resolved_at IS NULL"
        q += " ORDER BY id ASC LIMIT ?"

        con = self._con()
        try:
            rows = con.execute(q, (limit,)).fetchall()
        finally:
            con.close()
        out: List[Dict[str, Any]] = []
        for r in rows:
            try:
                detail = json.loads(r["detail"] or "{}")
            except json.JSONDecodeError:
                detail = {"raw": r["detail"]}
            out.append(
                dict(
                    id=int(r["id"]),
                    created_at=int(r["created_at"]),
                    source_tx_id=str(r["source_tx_id"]),
                    payout_tx_id=r["payout_tx_id"],
                    reason=str(r["reason"]),
                    detail=detail,
                    resolved_at=r["resolved_at"],
                    resolution_note=r["resolution_note"],
                )
            )
        return out

    def resolve_review(self, source_tx_id: str, note: str) -> int:
        con = self._con()
        try:
            cur = con.execute(
                "UPDATE review_queue SET resolved_at=?, resolution_note=? WHERE source_tx_id=? AND resolved_at IS NULL",
                (now_unix(), note, source_tx_id),
            )
            return int(cur.rowcount)
        finally:
            con.close()

    def drop_claim(self, source_tx_id: str, note: str) -> Optional[str]:
        """
        Operator release of a stuck claim, once the payout is known not to have
        landed. Returns the dropped claim's status, or None when there is no
        claim or the source tx is already settled.
        """
        con = self._con()
        try:
            con.execute("BEGIN IMMEDIATE;")
            try:
                settled = con.execute(
                    "SELECT 1 FROM settlements WHERE source_tx_id=?", (source_tx_id,)
                ).fetchone()
                row = con.execute(
                    "SELECT status, payout_tx_id FROM settlement_claims WHERE source_tx_id=?", (source_tx_id,)
                ).fetchone()
                if settled is not None or row is None or row["status"] == CLAIM_SETTLED:
                    con.execute("ROLLBACK;")
                    return None
                con.execute("DELETE FROM settlement_claims WHERE source_tx_id=?", (source_tx_id,))
                con.execute(
                    "INSERT INTO airdrop_events(ts, type, source_tx_id, meta) VALUES(?,?,?,?)",
                    (
                        now_unix(),
                        "claim_released",
                        source_tx_id,
                        json.dumps({"status": row["status"], "payout_tx_id": row["payout_tx_id"], "note": note}),
                    ),
                )
                con.execute("COMMIT;")
                return str(row["status"])
            except Exception:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise
        finally:
            con.close()

    def fetch_open_claims(self, older_than_sec: int = 0, limit: int = 100) -> List[Dict[str, Any]]:
        """Claims that never reached 'settled' or 'failed'."""
        limit = max(1, min(int(limit), 500))
        cutoff = now_unix() - max(0, int(older_than_sec))
        con = self._con()
        try:
            rows = con.execute(
                """
                SELECT source_tx_id, created_at, buyer_address, status, payout_tx_id, error
                FROM settlement_claims
                WHERE status IN (?, ?) AND created_at <= ?
                ORDER BY created_at ASC LIMIT ?
                """,
                (CLAIM_SETTLING, CLAIM_UNCONFIRMED, cutoff, limit),
            ).fetchall()
        finally:
            con.close()
        return [dict(r) for r in rows]

    # -- audit log -----------------------------------------------------------

    def log_event(self, type: str, source_tx_id: Optional[str] = None, meta: Optional[Dict[str, Any]] = None) -> None:
        con = self._con()
        try:
            con.execute(
                "INSERT INTO airdrop_events(ts, type, source_tx_id, meta) VALUES(?,?,?,?)",
                (now_unix(), type, source_tx_id, json.dumps(meta or {}, default=str)),
            )
        finally:
            con.close()

    def fetch_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        con = self._con()
        try:
            rows = con.execute(
                "SELECT id, ts, type, source_tx_id, meta FROM airdrop_events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        finally:
            con.close()
        return [dict(r) for r in rows]
