"""Append-only, hash-chained build ledger backed by SQLite.

Every stage state transition of every build is recorded here: which cache
key was computed, whether the stage was served from cache or executed, the
artifact it produced, and why it failed. ``dockhand history`` is a view of
this table.

Design:
- Append-only: only ``append()``; no update, no delete.
- Hash-chained per build: each entry includes SHA-256 of the previous entry.
- WAL journal mode for concurrent readers (builds may run concurrently).
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from dockhand.core.hasher import compute_entry_hash
from dockhand.models.ledger import LedgerEntry

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS build_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    build_id            TEXT NOT NULL,
    stage_name          TEXT NOT NULL,
    state_transition    TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    tag                 TEXT NOT NULL DEFAULT '',
    cache_key           TEXT NOT NULL DEFAULT '',
    artifact_address    TEXT NOT NULL DEFAULT '',
    detail              TEXT NOT NULL DEFAULT '',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_BUILD = """
CREATE INDEX IF NOT EXISTS idx_build_id ON build_ledger(build_id, id);
"""

_COLUMNS = (
    "entry_id, build_id, stage_name, state_transition, timestamp_utc, tag, "
    "cache_key, artifact_address, detail, previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class BuildLedger:
    """Append-only, hash-chained build ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serialises read-latest-then-insert within this process.
        self._append_lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_BUILD)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        """
        with self._append_lock, self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM build_ledger WHERE build_id = ? ORDER BY id DESC LIMIT 1",
                (entry.build_id,),
            ).fetchone()
            previous_hash = row[0] if row else ""

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )

            conn.execute(
                f"INSERT INTO build_ledger ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    sealed.entry_id,
                    sealed.build_id,
                    sealed.stage_name,
                    sealed.state_transition,
                    sealed.timestamp_utc.isoformat()
                    if isinstance(sealed.timestamp_utc, datetime)
                    else sealed.timestamp_utc,
                    sealed.tag,
                    sealed.cache_key,
                    sealed.artifact_address,
                    sealed.detail,
                    sealed.previous_entry_hash,
                    sealed.entry_hash,
                ),
            )
            conn.commit()
        return sealed

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_build_entries(self, build_id: str) -> list[LedgerEntry]:
        """Return all entries for a build, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM build_ledger WHERE build_id = ? ORDER BY id ASC",
                (build_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_build_ids(self) -> list[str]:
        """Return build ids, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT build_id, MAX(id) AS last FROM build_ledger "
                "GROUP BY build_id ORDER BY last DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def stage_states(self, build_id: str) -> dict[str, str]:
        """Latest state per stage for a build."""
        states: dict[str, str] = {}
        for entry in self.get_build_entries(build_id):
            states[entry.stage_name] = entry.to_state
        return states

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, build_id: str) -> bool:
        """Verify the hash chain integrity for a build.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_build_entries(build_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            entry_id,
            build_id,
            stage_name,
            state_transition,
            timestamp_utc,
            tag,
            cache_key,
            artifact_address,
            detail,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            build_id=build_id,
            stage_name=stage_name,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            tag=tag,
            cache_key=cache_key,
            artifact_address=artifact_address,
            detail=detail,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
