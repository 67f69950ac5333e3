"""SQLite storage for a ledger replica."""

import logging
import sqlite3
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from .models import Expense, Group, Settlement, Snapshot

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager.

    Entities are stored as their wire-format JSON. Expenses and settlements
    keep their insertion order through an autoincrement sequence column, and
    an overwrite keeps the original position.

    One connection is shared across threads and guarded by a lock. Callers
    that read, modify and write a group must hold that group's lock
    (see ``GroupLocks``); this lock only protects the connection.
    """

    def __init__(self, db_path: Path | str):
        """Initialize database connection."""
        self.db_path = db_path
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self):
        """Initialize database schema."""
        cursor = self.conn.cursor()

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS ledger_groups (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS expenses (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (group_id, id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS settlements (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL,
                group_id TEXT NOT NULL,
                data TEXT NOT NULL,
                UNIQUE (group_id, id)
            )
        """
        )

        # Invite code lookup, one code per group
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS invite_codes (
                code TEXT PRIMARY KEY,
                group_id TEXT NOT NULL UNIQUE
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        self.conn.commit()

    def close(self):
        """Close database connection."""
        self.conn.close()

    # ========================================================================
    # Config operations
    # ========================================================================

    def get_config(self, key: str) -> str | None:
        """Get a config value by key."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = cursor.fetchone()
        return str(row["value"]) if row else None

    def set_config(self, key: str, value: str):
        """Set a config value."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                """
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, datetime.now().isoformat()),
            )
            self.conn.commit()

    def delete_config(self, key: str):
        """Remove a config value."""
        with self._lock:
            self.conn.execute("DELETE FROM config WHERE key = ?", (key,))
            self.conn.commit()

    def get_last_synced_at(self) -> datetime | None:
        """Get the watermark of the last successful sync."""
        value = self.get_config("last_synced_at")
        return datetime.fromisoformat(value) if value else None

    def set_last_synced_at(self, watermark: datetime):
        """Set the watermark of the last successful sync."""
        self.set_config("last_synced_at", watermark.isoformat())

    def has_pending_sync(self) -> bool:
        """Whether local changes were made since the last push."""
        return self.get_config("pending_sync") == "true"

    def mark_pending_sync(self):
        """Flag local changes that still need to be pushed."""
        self.set_config("pending_sync", "true")

    def clear_pending_sync(self):
        """Clear the pending-changes flag after a successful push."""
        self.delete_config("pending_sync")

    # ========================================================================
    # Group operations
    # ========================================================================

    def _upsert_group(self, cursor: sqlite3.Cursor, group: Group):
        cursor.execute(
            """
            INSERT INTO ledger_groups (id, data, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                data = excluded.data,
                updated_at = excluded.updated_at
            """,
            (group.id, group.model_dump_json(by_alias=True), datetime.now().isoformat()),
        )
        if group.invite_code:
            self._insert_invite_code(cursor, group.invite_code, group.id)

    def get_group(self, group_id: str) -> Group | None:
        """Get a group by id."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT data FROM ledger_groups WHERE id = ?", (group_id,))
            row = cursor.fetchone()
        return Group.model_validate_json(row["data"]) if row else None

    def list_groups(self) -> list[Group]:
        """Get all groups."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT data FROM ledger_groups ORDER BY rowid")
            rows = cursor.fetchall()
        return [Group.model_validate_json(row["data"]) for row in rows]

    def save_group(self, group: Group, mark_pending: bool = True):
        """Insert or replace a group (and its invite code, if any)."""
        with self._lock:
            self._upsert_group(self.conn.cursor(), group)
            self.conn.commit()
        if mark_pending:
            self.mark_pending_sync()

    # ========================================================================
    # Invite code operations
    # ========================================================================

    def _insert_invite_code(self, cursor: sqlite3.Cursor, code: str, group_id: str):
        # An existing code keeps its group
        cursor.execute(
            """
            INSERT INTO invite_codes (code, group_id) VALUES (?, ?)
            ON CONFLICT(code) DO NOTHING
            """,
            (code, group_id),
        )

    def get_invite_group_id(self, code: str) -> str | None:
        """Resolve an invite code to its group id."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT group_id FROM invite_codes WHERE code = ?", (code,))
            row = cursor.fetchone()
        return str(row["group_id"]) if row else None

    def save_invite_code(self, code: str, group_id: str):
        """Record the invite code of a group."""
        with self._lock:
            self._insert_invite_code(self.conn.cursor(), code, group_id)
            self.conn.commit()

    # ========================================================================
    # Expense / settlement operations
    # ========================================================================

    def _upsert_record(
        self, cursor: sqlite3.Cursor, table: str, record: Expense | Settlement
    ):
        cursor.execute(
            f"""
            INSERT INTO {table} (id, group_id, data) VALUES (?, ?, ?)
            ON CONFLICT(group_id, id) DO UPDATE SET data = excluded.data
            """,
            (record.id, record.group_id, record.model_dump_json(by_alias=True)),
        )

    def _fetch_records(self, table: str, group_ids: list[str] | None) -> list[str]:
        cursor = self.conn.cursor()
        if group_ids is None:
            cursor.execute(f"SELECT data FROM {table} ORDER BY seq")
        else:
            placeholders = ", ".join("?" for _ in group_ids)
            cursor.execute(
                f"SELECT data FROM {table} WHERE group_id IN ({placeholders}) "
                f"ORDER BY seq",
                group_ids,
            )
        return [row["data"] for row in cursor.fetchall()]

    def get_expenses(self, group_id: str) -> list[Expense]:
        """Get a group's expenses in insertion order."""
        with self._lock:
            rows = self._fetch_records("expenses", [group_id])
        return [Expense.model_validate_json(data) for data in rows]

    def save_expense(self, expense: Expense, mark_pending: bool = True):
        """Insert or overwrite an expense."""
        with self._lock:
            self._upsert_record(self.conn.cursor(), "expenses", expense)
            self.conn.commit()
        if mark_pending:
            self.mark_pending_sync()

    def get_settlements(self, group_id: str) -> list[Settlement]:
        """Get a group's settlements in insertion order."""
        with self._lock:
            rows = self._fetch_records("settlements", [group_id])
        return [Settlement.model_validate_json(data) for data in rows]

    def save_settlement(self, settlement: Settlement, mark_pending: bool = True):
        """Insert or overwrite a settlement."""
        with self._lock:
            self._upsert_record(self.conn.cursor(), "settlements", settlement)
            self.conn.commit()
        if mark_pending:
            self.mark_pending_sync()

    # ========================================================================
    # Snapshot operations
    # ========================================================================

    def load_snapshot(self, group_ids: Iterable[str] | None = None) -> Snapshot:
        """
        Load the stored state, optionally limited to some groups.

        Args:
            group_ids: Groups to load, or None for everything

        Returns:
            Snapshot of the selected groups, their records and invite codes
        """
        ids = sorted(set(group_ids)) if group_ids is not None else None

        with self._lock:
            cursor = self.conn.cursor()
            if ids is None:
                cursor.execute("SELECT data FROM ledger_groups ORDER BY rowid")
                group_rows = [row["data"] for row in cursor.fetchall()]
                cursor.execute("SELECT code, group_id FROM invite_codes")
            else:
                placeholders = ", ".join("?" for _ in ids)
                cursor.execute(
                    f"SELECT data FROM ledger_groups WHERE id IN ({placeholders}) "
                    f"ORDER BY rowid",
                    ids,
                )
                group_rows = [row["data"] for row in cursor.fetchall()]
                cursor.execute(
                    f"SELECT code, group_id FROM invite_codes "
                    f"WHERE group_id IN ({placeholders})",
                    ids,
                )
            invite_codes = {row["code"]: row["group_id"] for row in cursor.fetchall()}
            expense_rows = self._fetch_records("expenses", ids)
            settlement_rows = self._fetch_records("settlements", ids)

        snapshot = Snapshot(invite_codes=invite_codes)
        for data in group_rows:
            group = Group.model_validate_json(data)
            snapshot.groups[group.id] = group
        for data in expense_rows:
            expense = Expense.model_validate_json(data)
            snapshot.expenses.setdefault(expense.group_id, []).append(expense)
        for data in settlement_rows:
            settlement = Settlement.model_validate_json(data)
            snapshot.settlements.setdefault(settlement.group_id, []).append(settlement)
        return snapshot

    def save_snapshot(self, snapshot: Snapshot):
        """
        Persist a (merged) snapshot in a single transaction.

        Everything in the snapshot is upserted; nothing is deleted. Saving a
        snapshot does not flag pending local changes.
        """
        with self._lock:
            cursor = self.conn.cursor()
            try:
                for group in snapshot.groups.values():
                    self._upsert_group(cursor, group)
                for code, group_id in snapshot.invite_codes.items():
                    self._insert_invite_code(cursor, code, group_id)
                for expenses in snapshot.expenses.values():
                    for expense in expenses:
                        self._upsert_record(cursor, "expenses", expense)
                for settlements in snapshot.settlements.values():
                    for settlement in settlements:
                        self._upsert_record(cursor, "settlements", settlement)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

        logger.debug(
            f"Saved snapshot: {len(snapshot.groups)} groups, "
            f"{sum(len(e) for e in snapshot.expenses.values())} expenses, "
            f"{sum(len(s) for s in snapshot.settlements.values())} settlements"
        )
