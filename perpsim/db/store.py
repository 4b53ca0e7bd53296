"""SQLite ledger store for perpsim."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from perpsim.errors import NotFoundError, StorageError, UserExistsError
from perpsim.ledger.validation import normalize_positions, normalize_wallet, parse_json
from perpsim.models import DEFAULT_WALLET, LedgerRecord, Position, UserSummary, Wallet

logger = logging.getLogger(__name__)


def _dump_positions(positions: list[Position]) -> str:
    return json.dumps([position.to_record() for position in positions])


class LedgerStore:
    """SQLite-based ledger store.

    Each user row holds the wallet and the open positions as JSON, plus a
    ``version`` counter. Writes go through :meth:`compare_and_swap` or
    :meth:`transfer_and_swap`, which only apply when the row versions still
    match what was read, so two requests racing on one user cannot
    silently overwrite each other.

    The store must be :meth:`initialize`-d once before use.
    """

    REQUIRED_TABLES = ["users", "transfers"]

    def __init__(self, db_path: Path, timeout: float = 5.0):
        """Initialize the ledger store.

        Args:
            db_path: Path to the SQLite database file.
            timeout: Seconds to wait for a database lock.
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    # ==================== Setup ====================

    def initialize(self) -> None:
        """Create the database directory and schema.

        Safe to call repeatedly; the schema is only ensured once per store.
        """
        with self._schema_lock:
            if self._schema_ready:
                return
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._init_schema()
            except (OSError, sqlite3.Error) as exc:
                raise StorageError(f"Unable to initialize ledger store: {exc}") from exc
            self._schema_ready = True
            logger.debug("Ledger schema ready at %s", self.db_path)

    @property
    def is_initialized(self) -> bool:
        return self._schema_ready

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection, refusing if the schema was never ensured."""
        if not self._schema_ready:
            raise StorageError("Ledger store is not initialized.")
        return self._open_connection()

    def _init_schema(self) -> None:
        default_wallet = json.dumps(DEFAULT_WALLET.to_record())
        conn = self._open_connection()
        try:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    wallet_json TEXT DEFAULT '{default_wallet}',
                    positions_json TEXT DEFAULT '[]',
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS transfers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    sender_id INTEGER NOT NULL REFERENCES users(id),
                    recipient_id INTEGER NOT NULL REFERENCES users(id),
                    amount REAL NOT NULL,
                    note TEXT,
                    created_at TEXT NOT NULL
                )
            """)
        finally:
            conn.close()

    def get_tables(self) -> list[str]:
        """Get list of all tables in the database."""
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
            )
            return [row["name"] for row in cursor.fetchall()]
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to list tables: {exc}") from exc
        finally:
            conn.close()

    # ==================== Users ====================

    def create_user(self, name: str, email: str) -> int:
        """Register a user with the default wallet and no positions.

        Args:
            name: Display name.
            email: Unique email address.

        Returns:
            The new user id.

        Raises:
            UserExistsError: If the email is already registered.
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, email, created_at) VALUES (?, ?, ?)",
                (name.strip(), email.strip().lower(), datetime.now(timezone.utc).isoformat()),
            )
            return cursor.lastrowid or 0
        except sqlite3.IntegrityError as exc:
            raise UserExistsError("An account with this email already exists.") from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to create user: {exc}") from exc
        finally:
            conn.close()

    def get_user(self, user_id: int) -> Optional[UserSummary]:
        """Get a user's public identity, or None if unknown."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT id, name, email FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to load user: {exc}") from exc
        finally:
            conn.close()

        if row is None:
            return None
        return UserSummary(id=row["id"], name=row["name"], email=row["email"])

    def search_users(self, query: str, exclude_id: Optional[int] = None, limit: int = 8) -> list[UserSummary]:
        """Find users whose name or email contains ``query``.

        Args:
            query: Case-insensitive substring.
            exclude_id: User to leave out (usually the searcher).
            limit: Maximum number of results.

        Returns:
            Matching users ordered by name.
        """
        query = query.strip()
        if not query:
            return []

        pattern = "%" + query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, name, email FROM users
                WHERE id <> ?
                AND (name LIKE ? ESCAPE '\\' OR email LIKE ? ESCAPE '\\')
                ORDER BY name COLLATE NOCASE ASC
                LIMIT ?
                """,
                (exclude_id if exclude_id is not None else -1, pattern, pattern, limit),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to search users: {exc}") from exc
        finally:
            conn.close()

        return [UserSummary(id=row["id"], name=row["name"], email=row["email"]) for row in rows]

    # ==================== Ledger ====================

    def _record_from_row(self, row: sqlite3.Row) -> LedgerRecord:
        wallet, wallet_repaired = normalize_wallet(parse_json(row["wallet_json"], None))
        positions, positions_repaired = normalize_positions(parse_json(row["positions_json"], []))
        if wallet_repaired or positions_repaired:
            logger.info("Repaired malformed ledger data for user %s", row["id"])
        return LedgerRecord(
            user_id=row["id"],
            name=row["name"],
            wallet=wallet,
            positions=positions,
            version=row["version"],
            repaired=wallet_repaired or positions_repaired,
        )

    def load(self, user_id: int) -> Optional[LedgerRecord]:
        """Load a user's ledger row with lenient repair applied.

        Args:
            user_id: User id.

        Returns:
            The ledger record, or None if the user does not exist.
        """
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT id, name, wallet_json, positions_json, version FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to load ledger: {exc}") from exc
        finally:
            conn.close()

        return self._record_from_row(row) if row is not None else None

    def require(self, user_id: int) -> LedgerRecord:
        """Load a ledger record, raising if the user is unknown.

        Raises:
            NotFoundError: If no user has this id.
        """
        record = self.load(user_id)
        if record is None:
            raise NotFoundError("User not found.")
        return record

    def compare_and_swap(
        self, record: LedgerRecord, wallet: Wallet, positions: list[Position]
    ) -> bool:
        """Write a new wallet and position list if the row is unchanged.

        Both columns are written together and the version is bumped.

        Args:
            record: The record the new state was computed from.
            wallet: New wallet.
            positions: New position list.

        Returns:
            True if written, False if another write got there first.
        """
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                UPDATE users
                SET wallet_json = ?, positions_json = ?, version = version + 1
                WHERE id = ? AND version = ?
                """,
                (
                    json.dumps(wallet.to_record()),
                    _dump_positions(positions),
                    record.user_id,
                    record.version,
                ),
            )
            return cursor.rowcount == 1
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to save ledger: {exc}") from exc
        finally:
            conn.close()

    def transfer_and_swap(
        self,
        sender: LedgerRecord,
        recipient: LedgerRecord,
        sender_wallet: Wallet,
        recipient_wallet: Wallet,
        amount: float,
        note: Optional[str] = None,
    ) -> bool:
        """Write both sides of a transfer in one transaction.

        Rows are updated in ascending user-id order. If either row changed
        since it was read, nothing is written.

        Returns:
            True if committed, False on a version conflict.
        """
        updates = sorted(
            [(sender, sender_wallet), (recipient, recipient_wallet)],
            key=lambda item: item[0].user_id,
        )
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for record, wallet in updates:
                    cursor = conn.execute(
                        """
                        UPDATE users
                        SET wallet_json = ?, version = version + 1
                        WHERE id = ? AND version = ?
                        """,
                        (json.dumps(wallet.to_record()), record.user_id, record.version),
                    )
                    if cursor.rowcount != 1:
                        conn.execute("ROLLBACK")
                        return False

                conn.execute(
                    """
                    INSERT INTO transfers (sender_id, recipient_id, amount, note, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        sender.user_id,
                        recipient.user_id,
                        amount,
                        note,
                        datetime.now(timezone.utc).isoformat(),
                    ),
                )
                conn.execute("COMMIT")
                return True
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to save transfer: {exc}") from exc
        finally:
            conn.close()

    def get_transfers(self, user_id: int, limit: int = 50) -> list[dict]:
        """Get a user's sent and received transfers, newest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT id, sender_id, recipient_id, amount, note, created_at
                FROM transfers
                WHERE sender_id = ? OR recipient_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, user_id, limit),
            ).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to load transfers: {exc}") from exc
        finally:
            conn.close()

        return [
            {
                "id": row["id"],
                "senderId": row["sender_id"],
                "recipientId": row["recipient_id"],
                "amount": row["amount"],
                "note": row["note"],
                "createdAt": row["created_at"],
            }
            for row in rows
        ]

    def list_wallets(self) -> list[tuple[int, str, Wallet]]:
        """Get ``(id, name, wallet)`` for every user, wallets normalized."""
        conn = self._get_connection()
        try:
            rows = conn.execute("SELECT id, name, wallet_json FROM users").fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to load wallets: {exc}") from exc
        finally:
            conn.close()

        return [
            (row["id"], row["name"], normalize_wallet(parse_json(row["wallet_json"], None)).value)
            for row in rows
        ]

    # ==================== Stats ====================

    def get_stats(self) -> dict:
        """Get database statistics.

        Returns:
            Dictionary with table record counts.
        """
        conn = self._get_connection()
        try:
            stats = {}
            for table in self.REQUIRED_TABLES:
                row = conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
                stats[table] = row["count"]
            return stats
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to read stats: {exc}") from exc
        finally:
            conn.close()
