"""
Record store for managed escrow metadata.

One logical table keyed by ``(escrow_address, network)``.  The keeper
only depends on the ``EscrowStore`` interface; the backend is chosen by
``[storage] backend`` in the configuration:

  - ``sqlite``: ``SQLiteEscrowStore`` (default)
  - ``file``:   ``JSONFileEscrowStore``, a JSON array on disk

Usage:
    store = open_store(cfg.storage)
    store.add(EscrowRecord("0xAbC...", "sepolia", email="a@b.com"))
    for rec in store.list_by_network("sepolia"):
        ...
"""

from __future__ import annotations

import abc
import json
import logging
import os
import sqlite3
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any

from heira_keeper.config import StorageConfig
from heira_keeper.models import EscrowRecord, normalize_address, now_ms

logger = logging.getLogger("heira_storage")


class EscrowStore(abc.ABC):
    """Interface shared by every record store backend.

    Each call is atomic on its own; there are no multi-record transactions.
    """

    @abc.abstractmethod
    def add(self, record: EscrowRecord) -> None:
        """Upsert by (address, network); keeps the original ``created_at``."""

    @abc.abstractmethod
    def remove(self, escrow_address: str, network: str) -> bool:
        """Delete a record; return whether one existed."""

    @abc.abstractmethod
    def get(self, escrow_address: str, network: str) -> EscrowRecord | None:
        ...

    @abc.abstractmethod
    def list_by_network(self, network: str) -> list[EscrowRecord]:
        ...

    @abc.abstractmethod
    def list_all(self) -> list[EscrowRecord]:
        ...

    @abc.abstractmethod
    def update_last_notified(self, escrow_address: str, network: str, timestamp: int) -> None:
        """Advance ``last_email_sent``.  Never moves it backwards."""

    def close(self) -> None:
        pass

    def __enter__(self) -> EscrowStore:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


# ═══════════════════════════════════════════════════════════════════
#  SQLite backend
# ═══════════════════════════════════════════════════════════════════

class SQLiteEscrowStore(EscrowStore):
    """SQLite-backed store; safe to share between the API and the keeper."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/escrows.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # busy_timeout avoids "database is locked" when the API writes mid-tick
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Escrow store opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS escrows (
                escrow_address    TEXT NOT NULL,
                network           TEXT NOT NULL,
                email             TEXT,
                inactivity_period INTEGER,
                created_at        INTEGER,
                last_email_sent   INTEGER,
                PRIMARY KEY (escrow_address, network)
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_network ON escrows(network)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_created_at ON escrows(created_at)")
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Escrow database schema v{row['version']} is newer than this "
                f"software (v{self.CURRENT_SCHEMA_VERSION})."
            )

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EscrowRecord:
        return EscrowRecord(
            escrow_address=row["escrow_address"],
            network=row["network"],
            email=row["email"],
            inactivity_period=row["inactivity_period"] or 0,
            created_at=row["created_at"] or 0,
            last_email_sent=row["last_email_sent"],
        )

    # ── operations ───────────────────────────────────────────────

    def add(self, record: EscrowRecord) -> None:
        created_at = record.created_at or now_ms()
        with self._lock:
            # ON CONFLICT keeps created_at; INSERT OR REPLACE would reset it
            self._conn.execute(
                """INSERT INTO escrows
                   (escrow_address, network, email, inactivity_period,
                    created_at, last_email_sent)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT (escrow_address, network) DO UPDATE SET
                       email = excluded.email,
                       inactivity_period = excluded.inactivity_period,
                       last_email_sent = COALESCE(excluded.last_email_sent,
                                                  escrows.last_email_sent)""",
                (
                    record.escrow_address,
                    record.network,
                    record.email,
                    record.inactivity_period,
                    created_at,
                    record.last_email_sent,
                ),
            )
            self._conn.commit()

    def remove(self, escrow_address: str, network: str) -> bool:
        with self._lock:
            cur = self._conn.execute(
                "DELETE FROM escrows WHERE escrow_address = ? AND network = ?",
                (normalize_address(escrow_address), network),
            )
            self._conn.commit()
        return cur.rowcount > 0

    def get(self, escrow_address: str, network: str) -> EscrowRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM escrows WHERE escrow_address = ? AND network = ?",
                (normalize_address(escrow_address), network),
            ).fetchone()
        return self._row_to_record(row) if row else None

    def list_by_network(self, network: str) -> list[EscrowRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM escrows WHERE network = ?", (network,)
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def list_all(self) -> list[EscrowRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM escrows ORDER BY created_at"
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def update_last_notified(self, escrow_address: str, network: str, timestamp: int) -> None:
        with self._lock:
            cur = self._conn.execute(
                """UPDATE escrows SET last_email_sent = ?
                   WHERE escrow_address = ? AND network = ?
                     AND (last_email_sent IS NULL OR last_email_sent < ?)""",
                (timestamp, normalize_address(escrow_address), network, timestamp),
            )
            self._conn.commit()
            missing = cur.rowcount == 0 and self._conn.execute(
                "SELECT 1 FROM escrows WHERE escrow_address = ? AND network = ?",
                (normalize_address(escrow_address), network),
            ).fetchone() is None
        if missing:
            logger.warning(
                f"Cannot update last_email_sent: escrow {escrow_address} "
                f"on {network} not found in storage"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()


# ═══════════════════════════════════════════════════════════════════
#  JSON file backend
# ═══════════════════════════════════════════════════════════════════

class JSONFileEscrowStore(EscrowStore):
    """Stores all records as a JSON array in ``<data_dir>/escrows.json``.

    Suited to single-process deployments; every call re-reads the file so
    edits made by another process between calls are picked up.
    """

    FILENAME = "escrows.json"

    def __init__(self, data_dir: str = "data", filename: str = FILENAME):
        self.data_dir = Path(data_dir)
        self.path = self.data_dir / filename
        self._lock = threading.Lock()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Escrow store opened: {self.path}")

    def _load(self) -> list[EscrowRecord]:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return []
        if not text:
            return []
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as exc:
            logger.warning(f"Invalid JSON in {self.path}, resetting to empty: {exc}")
            self._save([])
            return []
        if not isinstance(parsed, list):
            logger.warning(f"{self.path} does not contain an array, resetting to empty")
            self._save([])
            return []
        return [EscrowRecord.from_dict(item) for item in parsed]

    def _save(self, records: list[EscrowRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], indent=2)
        fd, tmp = tempfile.mkstemp(dir=str(self.data_dir), prefix=".escrows-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    @staticmethod
    def _find(records: list[EscrowRecord], key: tuple[str, str]) -> int:
        for i, rec in enumerate(records):
            if rec.key == key:
                return i
        return -1

    def add(self, record: EscrowRecord) -> None:
        with self._lock:
            records = self._load()
            idx = self._find(records, record.key)
            if idx >= 0:
                existing = records[idx]
                record = EscrowRecord(
                    escrow_address=record.escrow_address,
                    network=record.network,
                    email=record.email,
                    inactivity_period=record.inactivity_period,
                    created_at=existing.created_at,
                    last_email_sent=(
                        record.last_email_sent
                        if record.last_email_sent is not None
                        else existing.last_email_sent
                    ),
                )
                records[idx] = record
            else:
                if not record.created_at:
                    record = replace(record, created_at=now_ms())
                records.append(record)
            self._save(records)

    def remove(self, escrow_address: str, network: str) -> bool:
        key = (normalize_address(escrow_address), network)
        with self._lock:
            records = self._load()
            kept = [r for r in records if r.key != key]
            if len(kept) == len(records):
                return False
            self._save(kept)
        return True

    def get(self, escrow_address: str, network: str) -> EscrowRecord | None:
        key = (normalize_address(escrow_address), network)
        with self._lock:
            for rec in self._load():
                if rec.key == key:
                    return rec
        return None

    def list_by_network(self, network: str) -> list[EscrowRecord]:
        with self._lock:
            return [r for r in self._load() if r.network == network]

    def list_all(self) -> list[EscrowRecord]:
        with self._lock:
            return self._load()

    def update_last_notified(self, escrow_address: str, network: str, timestamp: int) -> None:
        key = (normalize_address(escrow_address), network)
        with self._lock:
            records = self._load()
            idx = self._find(records, key)
            if idx < 0:
                logger.warning(
                    f"Cannot update last_email_sent: escrow {escrow_address} "
                    f"on {network} not found in storage"
                )
                return
            rec = records[idx]
            if rec.last_email_sent is not None and rec.last_email_sent >= timestamp:
                return
            rec.last_email_sent = timestamp
            self._save(records)


def open_store(cfg: StorageConfig) -> EscrowStore:
    """Open the backend named by ``cfg.backend``."""
    backend = cfg.backend.lower()
    if backend == "sqlite":
        return SQLiteEscrowStore(cfg.path)
    if backend in ("file", "json"):
        # path may name the directory or the escrows.json file itself
        p = Path(cfg.path)
        if p.suffix == ".json":
            return JSONFileEscrowStore(str(p.parent), p.name)
        return JSONFileEscrowStore(str(p))
    raise ValueError(f"Unknown storage backend: {cfg.backend!r}")
