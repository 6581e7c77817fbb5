from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
import json
import sqlite3
import threading
from typing import Any, Iterable, Iterator

from copytrade_bot.models import DiscoveryRecord, OrderResult, Origin, Position, Side, Stats

_POSITION_FIELDS = [item.name for item in fields(Position)]
_STATS_FIELDS = [item.name for item in fields(Stats)]


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class Storage:
    """SQLite store shared by every worker thread; access is serialized by ``_lock``."""

    def __init__(self, database_path: str) -> None:
        self.path = database_path
        if database_path != ":memory:":
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(database_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._create_schema()

    def _create_schema(self) -> None:
        cursor = self.conn.cursor()
        cursor.executescript(
            """
            CREATE TABLE IF NOT EXISTS discovery_records (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              target TEXT NOT NULL,
              transaction_hash TEXT NOT NULL,
              condition_id TEXT NOT NULL,
              asset TEXT NOT NULL,
              side TEXT NOT NULL,
              size REAL NOT NULL,
              usdc_size REAL NOT NULL,
              price REAL NOT NULL,
              title TEXT NOT NULL,
              outcome TEXT NOT NULL,
              timestamp INTEGER NOT NULL,
              origin TEXT NOT NULL,
              copy INTEGER NOT NULL,
              attempts INTEGER NOT NULL DEFAULT 0,
              dispatched INTEGER NOT NULL DEFAULT 0,
              discovered_at TEXT NOT NULL,
              UNIQUE (target, transaction_hash)
            );

            CREATE INDEX IF NOT EXISTS idx_discovery_pending
              ON discovery_records (target, dispatched, copy, timestamp);

            CREATE TABLE IF NOT EXISTS positions (
              condition_id TEXT NOT NULL,
              outcome TEXT NOT NULL,
              title TEXT NOT NULL,
              asset TEXT NOT NULL,
              total_spend REAL NOT NULL,
              total_shares REAL NOT NULL,
              avg_price REAL NOT NULL,
              target_spend REAL NOT NULL,
              target_shares REAL NOT NULL,
              target_avg_price REAL NOT NULL,
              total_return REAL NOT NULL,
              target_return REAL NOT NULL,
              is_closed INTEGER NOT NULL,
              is_winner INTEGER NOT NULL,
              pnl REAL NOT NULL,
              target_pnl REAL NOT NULL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY (condition_id, outcome)
            );

            CREATE TABLE IF NOT EXISTS paper_trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              condition_id TEXT NOT NULL,
              outcome TEXT NOT NULL,
              title TEXT NOT NULL,
              asset TEXT NOT NULL,
              side TEXT NOT NULL,
              shares REAL NOT NULL,
              price REAL NOT NULL,
              amount REAL NOT NULL,
              target_size REAL NOT NULL,
              target_usdc_size REAL NOT NULL,
              target_timestamp INTEGER NOT NULL,
              latency_seconds REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS paper_stats (
              id INTEGER PRIMARY KEY CHECK (id = 1),
              total_spend REAL NOT NULL,
              total_returns REAL NOT NULL,
              total_wins REAL NOT NULL,
              total_losses REAL NOT NULL,
              winning_positions INTEGER NOT NULL,
              losing_positions INTEGER NOT NULL,
              net_pnl REAL NOT NULL,
              target_total_spend REAL NOT NULL,
              target_total_returns REAL NOT NULL,
              target_net_pnl REAL NOT NULL,
              largest_market_spend REAL NOT NULL,
              largest_market_title TEXT NOT NULL,
              avg_latency REAL NOT NULL,
              total_trades_with_latency INTEGER NOT NULL,
              last_updated TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS order_log (
              ts TEXT NOT NULL,
              mode TEXT NOT NULL,
              asset TEXT NOT NULL,
              side TEXT NOT NULL,
              amount REAL NOT NULL,
              price REAL NOT NULL,
              shares REAL NOT NULL,
              success INTEGER NOT NULL,
              error TEXT NOT NULL,
              metadata TEXT NOT NULL
            );
            """
        )
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Groups writes into one commit; nested use joins the outer transaction."""
        with self._lock:
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self.conn.rollback()
                raise
            self._depth -= 1
            if self._depth == 0:
                self.conn.commit()

    # discovery records

    def insert_discovery(self, target: str, record: DiscoveryRecord) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO discovery_records (
                  target, transaction_hash, condition_id, asset, side, size, usdc_size,
                  price, title, outcome, timestamp, origin, copy, attempts, dispatched,
                  discovered_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    target,
                    record.transaction_hash,
                    record.condition_id,
                    record.asset,
                    record.side.value,
                    float(record.size),
                    float(record.usdc_size),
                    float(record.price),
                    record.title,
                    record.outcome,
                    int(record.timestamp),
                    record.origin.value,
                    1 if record.copy else 0,
                    int(record.attempts),
                    1 if record.dispatched else 0,
                    _now_iso(),
                ),
            )
            inserted = cursor.rowcount == 1
            if inserted:
                record.record_id = int(cursor.lastrowid)
        return inserted

    def has_transaction(self, target: str, transaction_hash: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT 1 FROM discovery_records WHERE target = ? AND transaction_hash = ?",
                (target, transaction_hash),
            ).fetchone()
        return row is not None

    def get_discovery(self, target: str, transaction_hash: str) -> DiscoveryRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM discovery_records WHERE target = ? AND transaction_hash = ?",
                (target, transaction_hash),
            ).fetchone()
        return self._discovery_from_row(row) if row else None

    def find_pending(self, target: str, retry_limit: int) -> list[DiscoveryRecord]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM discovery_records
                WHERE target = ?
                  AND dispatched = 0
                  AND copy = 1
                  AND (attempts = 0 OR attempts < ?)
                ORDER BY timestamp ASC, id ASC
                """,
                (target, int(retry_limit)),
            ).fetchall()
        return [self._discovery_from_row(row) for row in rows]

    def mark_dispatched(self, record_ids: Iterable[int], attempts: int | None = None) -> None:
        ids = [int(record_id) for record_id in record_ids]
        if not ids:
            return
        with self.transaction() as conn:
            for record_id in ids:
                if attempts is None:
                    conn.execute("UPDATE discovery_records SET dispatched = 1 WHERE id = ?", (record_id,))
                else:
                    conn.execute(
                        "UPDATE discovery_records SET dispatched = 1, attempts = ? WHERE id = ?",
                        (int(attempts), record_id),
                    )

    def bump_attempts(self, record_ids: Iterable[int], retry_limit: int) -> int:
        """Counts one failed attempt per record and retires records that reach ``retry_limit``."""
        ids = [int(record_id) for record_id in record_ids]
        if not ids:
            return 0
        with self.transaction() as conn:
            for record_id in ids:
                conn.execute(
                    """
                    UPDATE discovery_records
                    SET attempts = attempts + 1,
                        dispatched = CASE WHEN attempts + 1 >= ? THEN 1 ELSE dispatched END
                    WHERE id = ?
                    """,
                    (int(retry_limit), record_id),
                )
            placeholders = ",".join("?" for _ in ids)
            row = conn.execute(
                f"SELECT COALESCE(MAX(attempts), 0) AS attempts FROM discovery_records WHERE id IN ({placeholders})",
                ids,
            ).fetchone()
        return int(row["attempts"])

    def reset_discovery(self, target: str) -> int:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM discovery_records WHERE target = ?", (target,))
        return int(cursor.rowcount)

    def discovery_counts(self, target: str) -> dict[str, int]:
        with self._lock:
            row = self.conn.execute(
                """
                SELECT
                  COUNT(*) AS total,
                  COALESCE(SUM(CASE WHEN copy = 0 THEN 1 ELSE 0 END), 0) AS filtered,
                  COALESCE(SUM(CASE WHEN copy = 1 AND dispatched = 0 THEN 1 ELSE 0 END), 0) AS pending,
                  COALESCE(SUM(CASE WHEN dispatched = 1 THEN 1 ELSE 0 END), 0) AS dispatched,
                  COALESCE(SUM(CASE WHEN origin = 'CHAIN' THEN 1 ELSE 0 END), 0) AS chain
                FROM discovery_records
                WHERE target = ?
                """,
                (target,),
            ).fetchone()
        return {key: int(row[key] or 0) for key in ("total", "filtered", "pending", "dispatched", "chain")}

    @staticmethod
    def _discovery_from_row(row: sqlite3.Row) -> DiscoveryRecord:
        return DiscoveryRecord(
            transaction_hash=str(row["transaction_hash"]),
            condition_id=str(row["condition_id"]),
            asset=str(row["asset"]),
            side=Side(str(row["side"])),
            size=float(row["size"]),
            usdc_size=float(row["usdc_size"]),
            price=float(row["price"]),
            title=str(row["title"]),
            outcome=str(row["outcome"]),
            timestamp=int(row["timestamp"]),
            origin=Origin(str(row["origin"])),
            copy=bool(row["copy"]),
            attempts=int(row["attempts"]),
            dispatched=bool(row["dispatched"]),
            record_id=int(row["id"]),
        )

    # paper positions and stats

    def get_position(self, condition_id: str, outcome: str) -> Position | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM positions WHERE condition_id = ? AND outcome = ?",
                (condition_id, outcome),
            ).fetchone()
        return self._position_from_row(row) if row else None

    def find_open_position_by_asset(self, asset: str) -> Position | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM positions WHERE asset = ? AND is_closed = 0 ORDER BY updated_at DESC LIMIT 1",
                (asset,),
            ).fetchone()
        return self._position_from_row(row) if row else None

    def upsert_position(self, position: Position) -> None:
        columns = _POSITION_FIELDS + ["updated_at"]
        assignments = ",\n              ".join(
            f"{name}=excluded.{name}" for name in columns if name not in ("condition_id", "outcome")
        )
        values: list[Any] = []
        for name, value in asdict(position).items():
            values.append(int(value) if isinstance(value, bool) else value)
        values.append(_now_iso())
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO positions ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(condition_id, outcome) DO UPDATE SET
                  {assignments}
                """,
                values,
            )

    def list_positions(self, *, open_only: bool = False) -> list[Position]:
        query = "SELECT * FROM positions"
        if open_only:
            query += " WHERE is_closed = 0"
        query += " ORDER BY condition_id, outcome"
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        return [self._position_from_row(row) for row in rows]

    def list_open_positions(self) -> list[Position]:
        return self.list_positions(open_only=True)

    @staticmethod
    def _position_from_row(row: sqlite3.Row) -> Position:
        payload = {name: row[name] for name in _POSITION_FIELDS}
        payload["is_closed"] = bool(payload["is_closed"])
        payload["is_winner"] = bool(payload["is_winner"])
        return Position(**payload)

    def get_stats(self) -> Stats:
        with self._lock:
            row = self.conn.execute("SELECT * FROM paper_stats WHERE id = 1").fetchone()
        if row is None:
            return Stats()
        return Stats(**{name: row[name] for name in _STATS_FIELDS})

    def save_stats(self, stats: Stats) -> None:
        stats.last_updated = _now_iso()
        columns = ["id"] + _STATS_FIELDS
        assignments = ",\n              ".join(f"{name}=excluded.{name}" for name in _STATS_FIELDS)
        values = [1] + [getattr(stats, name) for name in _STATS_FIELDS]
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO paper_stats ({", ".join(columns)})
                VALUES ({", ".join("?" for _ in columns)})
                ON CONFLICT(id) DO UPDATE SET
                  {assignments}
                """,
                values,
            )

    def close_positions(self, positions: list[Position], stats: Stats) -> None:
        """Persists resolved positions and the rolled-up stats in one commit."""
        with self.transaction():
            for position in positions:
                self.upsert_position(position)
            self.save_stats(stats)

    def record_paper_trade(
        self,
        position: Position,
        *,
        side: Side,
        shares: float,
        price: float,
        amount: float,
        target_size: float,
        target_usdc_size: float,
        target_timestamp: int,
        latency_seconds: float,
    ) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO paper_trades (
                  ts, condition_id, outcome, title, asset, side, shares, price, amount,
                  target_size, target_usdc_size, target_timestamp, latency_seconds
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _now_iso(),
                    position.condition_id,
                    position.outcome,
                    position.title,
                    position.asset,
                    side.value,
                    float(shares),
                    float(price),
                    float(amount),
                    float(target_size),
                    float(target_usdc_size),
                    int(target_timestamp),
                    float(latency_seconds),
                ),
            )

    def count_paper_trades(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM paper_trades").fetchone()
        return int(row["n"])

    def reset_paper(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM positions")
            conn.execute("DELETE FROM paper_trades")
            conn.execute("DELETE FROM paper_stats")

    # order audit log

    def record_order(
        self,
        *,
        mode: str,
        asset: str,
        side: Side,
        result: OrderResult,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(metadata or {})
        if result.raw:
            payload["_raw"] = result.raw
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO order_log (
                  ts, mode, asset, side, amount, price, shares, success, error, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _now_iso(),
                    mode,
                    asset,
                    side.value,
                    float(result.amount),
                    float(result.price),
                    float(result.shares),
                    1 if result.success else 0,
                    result.error,
                    json.dumps(payload, separators=(",", ":"), default=str),
                ),
            )

    def count_orders(self, *, success: bool | None = None) -> int:
        query = "SELECT COUNT(*) AS n FROM order_log"
        params: tuple[Any, ...] = ()
        if success is not None:
            query += " WHERE success = ?"
            params = (1 if success else 0,)
        with self._lock:
            row = self.conn.execute(query, params).fetchone()
        return int(row["n"])

    def report(self, target: str) -> dict[str, Any]:
        positions = self.list_positions()
        return {
            "target": target,
            "discovery": self.discovery_counts(target),
            "orders": {
                "total": self.count_orders(),
                "succeeded": self.count_orders(success=True),
            },
            "paper_trades": self.count_paper_trades(),
            "stats": self.get_stats().to_dict(),
            "open_positions": [asdict(item) for item in positions if not item.is_closed],
            "closed_positions": [asdict(item) for item in positions if item.is_closed],
        }
