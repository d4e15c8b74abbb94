"""
SQLite contact store for CRM reconciliation.

Provides persistent storage for canonical contacts, the quarantine ledger,
fan-out outcomes, identity investigations and run history.
"""

import json
import sqlite3
import threading
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from crm_reconcile.sync.contact import (
    CanonicalContact,
    ContactKey,
    ContactSource,
    IdentityFields,
    format_timestamp,
    parse_timestamp,
)

# Seconds a connection waits on a locked database before giving up
DEFAULT_BUSY_TIMEOUT = 30.0

_SOURCE_VALUES = ", ".join(f"'{s.value}'" for s in ContactSource)

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY,
    source TEXT NOT NULL CHECK (source IN ({_SOURCE_VALUES})),
    natural_key TEXT NOT NULL CHECK (length(trim(natural_key)) > 0),
    email TEXT,
    phone TEXT,
    first_name TEXT,
    last_name TEXT,
    revision TEXT,
    content_hash TEXT NOT NULL,
    data TEXT NOT NULL,
    source_deleted INTEGER NOT NULL DEFAULT 0,
    source_deleted_at TEXT,
    last_synced_at TEXT,
    last_sync_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(source, natural_key)
);

CREATE INDEX IF NOT EXISTS idx_contacts_email ON contacts(email);
CREATE INDEX IF NOT EXISTS idx_contacts_phone ON contacts(phone);
CREATE INDEX IF NOT EXISTS idx_contacts_source_deleted
    ON contacts(source, source_deleted);

CREATE TABLE IF NOT EXISTS quarantine_ledger (
    source TEXT NOT NULL,
    natural_key TEXT NOT NULL,
    history TEXT NOT NULL DEFAULT '',
    quarantined_until_run INTEGER,
    last_run_number INTEGER,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (source, natural_key)
);

CREATE TABLE IF NOT EXISTS ledger_runs (
    source TEXT PRIMARY KEY,
    run_number INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    profile TEXT NOT NULL,
    source TEXT NOT NULL,
    status TEXT NOT NULL,
    dry_run INTEGER NOT NULL DEFAULT 0,
    gapped INTEGER NOT NULL DEFAULT 0,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    report TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_runs_profile ON sync_runs(profile, id);

CREATE TABLE IF NOT EXISTS fanout_outcomes (
    source TEXT NOT NULL,
    natural_key TEXT NOT NULL,
    channel TEXT NOT NULL,
    list_id TEXT NOT NULL,
    status TEXT NOT NULL,
    used_fallback INTEGER NOT NULL DEFAULT 0,
    revision TEXT,
    error TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    run_id INTEGER,
    updated_at TEXT,
    PRIMARY KEY (source, natural_key, channel)
);

CREATE INDEX IF NOT EXISTS idx_fanout_status ON fanout_outcomes(channel, status);

CREATE TABLE IF NOT EXISTS investigations (
    id INTEGER PRIMARY KEY,
    key_a TEXT NOT NULL,
    key_b TEXT NOT NULL,
    rule TEXT NOT NULL,
    score REAL,
    status TEXT NOT NULL DEFAULT 'open',
    run_id INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(key_a, key_b)
);
"""


class StoreError(Exception):
    """Raised when the contact store cannot be read or written."""

    pass


class StoreBusyError(StoreError):
    """Raised when the database stayed locked past the busy timeout."""

    pass


def _utc_text(value: Optional[datetime] = None) -> str:
    return (value or datetime.now(timezone.utc)).isoformat()


def _key_text(key: ContactKey) -> str:
    return str(key)


class ContactStore:
    """
    SQLite-backed local contact store.

    Provides methods for:
    - Point lookup and key enumeration of canonical contacts by source
    - Per-record upserts inside a caller-managed transaction
    - Soft deletes
    - Quarantine ledger, fan-out outcome and investigation bookkeeping
    - Run history

    Usage:
        store = ContactStore('/path/to/contacts.db')
        store.initialize()

        # Or use in-memory for testing:
        store = ContactStore(':memory:')
        store.initialize()
    """

    def __init__(self, db_path: str, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:'
            busy_timeout: Seconds to wait for a write lock
        """
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._shared_connection: Optional[sqlite3.Connection] = None
        # Serializes use of the shared in-memory connection across threads
        self._shared_lock = threading.RLock()

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        In-memory databases share one connection so the schema persists;
        file databases get a fresh connection per use.
        """
        try:
            if self.is_memory:
                if self._shared_connection is None:
                    self._shared_connection = sqlite3.connect(
                        ":memory:", check_same_thread=False
                    )
                    self._shared_connection.row_factory = sqlite3.Row
                return self._shared_connection

            conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open contact store {self.db_path}: {e}") from e

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success, rolls back on any error. SQLite errors are
        re-raised as StoreBusyError (locked/busy) or StoreError.

        Usage:
            with store.connection() as conn:
                conn.execute("SELECT count(*) FROM contacts")
        """
        if self.is_memory:
            self._shared_lock.acquire()
        try:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                message = str(e).lower()
                if "locked" in message or "busy" in message:
                    raise StoreBusyError(f"Contact store is busy: {e}") from e
                raise StoreError(f"Contact store error: {e}") from e
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(f"Contact store error: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                if not self.is_memory:
                    conn.close()
        finally:
            if self.is_memory:
                self._shared_lock.release()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Open a write transaction that takes the write lock up front.

        Used by the bulk writer so that concurrent batches queue on the
        busy timeout instead of failing on lock upgrade.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            yield conn

    @contextmanager
    def savepoint(
        self, conn: sqlite3.Connection, name: str
    ) -> Generator[None, None, None]:
        """
        Isolate one record's writes inside a transaction.

        An exception rolls back only this savepoint; the enclosing
        transaction stays usable.
        """
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            conn.execute(f"RELEASE SAVEPOINT {name}")

    def initialize(self) -> None:
        """Create all tables if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Contact Operations
    # =========================================================================

    @staticmethod
    def _row_to_contact(row: sqlite3.Row) -> CanonicalContact:
        contact = CanonicalContact.from_dict(json.loads(row["data"]))
        # Columns are authoritative for bookkeeping that changes in place
        contact.source_deleted = bool(row["source_deleted"])
        contact.source_deleted_at = parse_timestamp(row["source_deleted_at"])
        contact.sync_state.last_synced_at = parse_timestamp(row["last_synced_at"])
        contact.sync_state.last_sync_error = row["last_sync_error"]
        return contact

    def fetch_contact(
        self, conn: sqlite3.Connection, key: ContactKey
    ) -> Optional[tuple[CanonicalContact, str]]:
        """
        Look up a contact inside an open connection.

        Returns:
            Tuple of (contact, stored content hash), or None if not found
        """
        row = conn.execute(
            "SELECT * FROM contacts WHERE source = ? AND natural_key = ?",
            (key.source.value, key.natural_key),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_contact(row), row["content_hash"]

    def write_contact(
        self, conn: sqlite3.Connection, contact: CanonicalContact, content_hash: str
    ) -> None:
        """
        Insert or update a contact by (source, natural_key).

        Runs inside the caller's transaction. Constraint violations raise
        sqlite3.IntegrityError so the caller can contain them per record.
        """
        source = (
            contact.source.value
            if isinstance(contact.source, ContactSource)
            else str(contact.source)
        )
        conn.execute(
            """
            INSERT INTO contacts (
                source, natural_key, email, phone, first_name, last_name,
                revision, content_hash, data, source_deleted,
                source_deleted_at, last_synced_at, last_sync_error
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source, natural_key) DO UPDATE SET
                email = excluded.email,
                phone = excluded.phone,
                first_name = excluded.first_name,
                last_name = excluded.last_name,
                revision = excluded.revision,
                content_hash = excluded.content_hash,
                data = excluded.data,
                source_deleted = excluded.source_deleted,
                source_deleted_at = excluded.source_deleted_at,
                last_synced_at = excluded.last_synced_at,
                last_sync_error = excluded.last_sync_error,
                updated_at = CURRENT_TIMESTAMP
            """,
            (
                source,
                contact.natural_key,
                contact.identity.email,
                contact.identity.phone,
                contact.identity.first_name,
                contact.identity.last_name,
                format_timestamp(contact.revision),
                content_hash,
                json.dumps(contact.to_dict(), sort_keys=True, default=str),
                int(contact.source_deleted),
                format_timestamp(contact.source_deleted_at),
                format_timestamp(contact.sync_state.last_synced_at),
                contact.sync_state.last_sync_error,
            ),
        )

    def set_sync_error(self, key: ContactKey, error: Optional[str]) -> bool:
        """
        Record (or clear) the last write error of a stored contact.

        Returns:
            True if the contact exists
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE contacts SET last_sync_error = ?
                WHERE source = ? AND natural_key = ?
                """,
                (error, key.source.value, key.natural_key),
            )
            return cursor.rowcount > 0

    def get_contact(self, key: ContactKey) -> Optional[CanonicalContact]:
        """Get a contact by key, or None if not stored."""
        with self.connection() as conn:
            found = self.fetch_contact(conn, key)
        return found[0] if found else None

    def list_keys(
        self, source: ContactSource, include_deleted: bool = False
    ) -> set[ContactKey]:
        """
        Enumerate stored keys for one source.

        Args:
            source: Source namespace to enumerate
            include_deleted: Also return soft-deleted contacts
        """
        query = "SELECT natural_key FROM contacts WHERE source = ?"
        if not include_deleted:
            query += " AND source_deleted = 0"
        with self.connection() as conn:
            rows = conn.execute(query, (source.value,)).fetchall()
        return {ContactKey(source, row["natural_key"]) for row in rows}

    def iter_contacts(
        self,
        source: Optional[ContactSource] = None,
        include_deleted: bool = False,
    ) -> list[CanonicalContact]:
        """Load contacts, optionally filtered by source."""
        clauses: list[str] = []
        params: list[Any] = []
        if source is not None:
            clauses.append("source = ?")
            params.append(source.value)
        if not include_deleted:
            clauses.append("source_deleted = 0")
        query = "SELECT * FROM contacts"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY source, natural_key"
        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_contact(row) for row in rows]

    def identity_index(self) -> dict[ContactKey, IdentityFields]:
        """Identity fields of every active contact, across all sources."""
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT source, natural_key, first_name, last_name, email, phone
                FROM contacts
                WHERE source_deleted = 0
                """
            ).fetchall()
        index: dict[ContactKey, IdentityFields] = {}
        for row in rows:
            key = ContactKey(ContactSource(row["source"]), row["natural_key"])
            index[key] = IdentityFields(
                first_name=row["first_name"],
                last_name=row["last_name"],
                email=row["email"],
                phone=row["phone"],
            )
        return index

    def soft_delete(
        self, conn: sqlite3.Connection, key: ContactKey, deleted_at: datetime
    ) -> bool:
        """
        Mark a contact as no longer returned by its source.

        Returns:
            True if an active contact was marked, False otherwise
        """
        found = self.fetch_contact(conn, key)
        if found is None or found[0].source_deleted:
            return False
        contact = found[0]
        contact.source_deleted = True
        contact.source_deleted_at = deleted_at
        self.write_contact(conn, contact, contact.content_hash())
        return True

    def count_contacts(
        self, source: Optional[ContactSource] = None, include_deleted: bool = False
    ) -> int:
        query = "SELECT COUNT(*) FROM contacts WHERE 1 = 1"
        params: list[Any] = []
        if source is not None:
            query += " AND source = ?"
            params.append(source.value)
        if not include_deleted:
            query += " AND source_deleted = 0"
        with self.connection() as conn:
            return conn.execute(query, params).fetchone()[0]

    def count_deleted(self, source: Optional[ContactSource] = None) -> int:
        return self.count_contacts(source, include_deleted=True) - self.count_contacts(
            source
        )

    # =========================================================================
    # Quarantine Ledger Operations
    # =========================================================================

    def load_ledger(self, source: ContactSource) -> dict[str, dict[str, Any]]:
        """
        Load ledger entries for one source, keyed by natural key.

        Returns:
            {natural_key: {"history", "quarantined_until_run", "last_run_number"}}
        """
        with self.connection() as conn:
            rows = conn.execute(
                """
                SELECT natural_key, history, quarantined_until_run, last_run_number
                FROM quarantine_ledger WHERE source = ?
                """,
                (source.value,),
            ).fetchall()
        return {
            row["natural_key"]: {
                "history": row["history"],
                "quarantined_until_run": row["quarantined_until_run"],
                "last_run_number": row["last_run_number"],
            }
            for row in rows
        }

    def load_ledger_run(self, source: ContactSource) -> int:
        """Last run number recorded in the ledger of one source (0 if none)."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT run_number FROM ledger_runs WHERE source = ?", (source.value,)
            ).fetchone()
        return row["run_number"] if row else 0

    def save_ledger(
        self,
        source: ContactSource,
        entries: dict[str, dict[str, Any]],
        run_number: Optional[int] = None,
    ) -> None:
        """
        Replace the ledger entries of one source.

        When run_number is given it becomes the source's ledger run, in the
        same transaction as the entries.
        """
        with self.connection() as conn:
            if run_number is not None:
                conn.execute(
                    """
                    INSERT INTO ledger_runs (source, run_number) VALUES (?, ?)
                    ON CONFLICT(source) DO UPDATE SET run_number = excluded.run_number
                    """,
                    (source.value, run_number),
                )
            conn.execute(
                "DELETE FROM quarantine_ledger WHERE source = ?", (source.value,)
            )
            conn.executemany(
                """
                INSERT INTO quarantine_ledger (
                    source, natural_key, history, quarantined_until_run,
                    last_run_number
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(source, natural_key) DO UPDATE SET
                    history = excluded.history,
                    quarantined_until_run = excluded.quarantined_until_run,
                    last_run_number = excluded.last_run_number,
                    updated_at = CURRENT_TIMESTAMP
                """,
                [
                    (
                        source.value,
                        natural_key,
                        entry["history"],
                        entry.get("quarantined_until_run"),
                        entry.get("last_run_number"),
                    )
                    for natural_key, entry in entries.items()
                ],
            )

    def clear_ledger(self, source: Optional[ContactSource] = None) -> int:
        """Delete ledger entries (all sources when source is None)."""
        with self.connection() as conn:
            if source is None:
                conn.execute("DELETE FROM ledger_runs")
                cursor = conn.execute("DELETE FROM quarantine_ledger")
            else:
                conn.execute(
                    "DELETE FROM ledger_runs WHERE source = ?", (source.value,)
                )
                cursor = conn.execute(
                    "DELETE FROM quarantine_ledger WHERE source = ?", (source.value,)
                )
            return cursor.rowcount

    # =========================================================================
    # Run History Operations
    # =========================================================================

    def start_run(
        self,
        profile: str,
        source: ContactSource,
        dry_run: bool = False,
        started_at: Optional[datetime] = None,
    ) -> int:
        """Record the start of a run and return its id."""
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_runs (profile, source, status, dry_run, started_at)
                VALUES (?, ?, 'running', ?, ?)
                """,
                (profile, source.value, int(dry_run), _utc_text(started_at)),
            )
            return int(cursor.lastrowid)

    def finish_run(
        self,
        run_id: int,
        status: str,
        report: dict[str, Any],
        gapped: bool = False,
        finished_at: Optional[datetime] = None,
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE sync_runs
                SET status = ?, gapped = ?, finished_at = ?, report = ?
                WHERE id = ?
                """,
                (
                    status,
                    int(gapped),
                    _utc_text(finished_at),
                    json.dumps(report, sort_keys=True, default=str),
                    run_id,
                ),
            )

    def get_runs(self, limit: int = 10, profile: Optional[str] = None) -> list[dict]:
        """Most recent runs first, with their decoded reports."""
        query = "SELECT * FROM sync_runs"
        params: list[Any] = []
        if profile:
            query += " WHERE profile = ?"
            params.append(profile)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        runs = []
        for row in rows:
            run = dict(row)
            run["report"] = json.loads(row["report"]) if row["report"] else None
            runs.append(run)
        return runs

    def clear_run_history(self) -> int:
        with self.connection() as conn:
            return conn.execute("DELETE FROM sync_runs").rowcount

    # =========================================================================
    # Fan-Out Outcome Operations
    # =========================================================================

    def record_fanout_outcome(
        self,
        key: ContactKey,
        channel: str,
        list_id: str,
        status: str,
        revision: Optional[datetime],
        error: Optional[str] = None,
        used_fallback: bool = False,
        run_id: Optional[int] = None,
    ) -> None:
        """Insert or replace the outcome of one (contact, channel) push."""
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO fanout_outcomes (
                    source, natural_key, channel, list_id, status,
                    used_fallback, revision, error, attempts, run_id, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(source, natural_key, channel) DO UPDATE SET
                    list_id = excluded.list_id,
                    status = excluded.status,
                    used_fallback = excluded.used_fallback,
                    revision = excluded.revision,
                    error = excluded.error,
                    attempts = fanout_outcomes.attempts + 1,
                    run_id = excluded.run_id,
                    updated_at = excluded.updated_at
                """,
                (
                    key.source.value,
                    key.natural_key,
                    channel,
                    list_id,
                    status,
                    int(used_fallback),
                    format_timestamp(revision),
                    error,
                    run_id,
                    _utc_text(),
                ),
            )

    def get_fanout_outcomes(
        self, channel: Optional[str] = None, status: Optional[str] = None
    ) -> dict[tuple[ContactKey, str], dict[str, Any]]:
        """Outcomes keyed by (contact key, channel)."""
        query = "SELECT * FROM fanout_outcomes WHERE 1 = 1"
        params: list[Any] = []
        if channel:
            query += " AND channel = ?"
            params.append(channel)
        if status:
            query += " AND status = ?"
            params.append(status)
        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return {
            (
                ContactKey(ContactSource(row["source"]), row["natural_key"]),
                row["channel"],
            ): dict(row)
            for row in rows
        }

    # =========================================================================
    # Investigation Operations
    # =========================================================================

    def record_investigations(
        self,
        matches: Iterable[tuple[ContactKey, ContactKey, str, float]],
        run_id: Optional[int] = None,
    ) -> int:
        """
        Store identity matches for human review, ignoring known pairs.

        Pairs are stored in sorted order so (a, b) and (b, a) collapse.

        Returns:
            Number of newly recorded pairs
        """
        rows = []
        for key_a, key_b, rule, score in matches:
            first, second = sorted((_key_text(key_a), _key_text(key_b)))
            rows.append((first, second, rule, score, run_id))
        with self.connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO investigations (key_a, key_b, rule, score, run_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def get_investigations(self, status: Optional[str] = "open") -> list[dict]:
        query = "SELECT * FROM investigations"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY id"
        with self.connection() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def resolve_investigation(self, investigation_id: int, status: str) -> bool:
        """Set an investigation's status (e.g. 'dismissed', 'confirmed')."""
        with self.connection() as conn:
            cursor = conn.execute(
                "UPDATE investigations SET status = ? WHERE id = ?",
                (status, investigation_id),
            )
            return cursor.rowcount > 0

    def vacuum(self) -> None:
        """Reclaim space after large soft-delete or ledger cleanups."""
        conn = self._get_connection()
        try:
            conn.execute("VACUUM")
        finally:
            if not self.is_memory:
                conn.close()
