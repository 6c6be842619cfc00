"""SQLite ledger store for stream-stage.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory, foreign keys on).

Every balance change is one SQLite transaction that touches a single
account row and appends exactly one transactions row, so the balance
column always equals SUM(transactions.amount) for that account.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from pathlib import Path


class LedgerError(Exception):
    """Base class for rejected ledger operations."""


class InvalidAmountError(LedgerError, ValueError):
    """Raised for zero or negative award/spend amounts."""


class AccountNotFoundError(LedgerError):
    """Raised when the target account does not exist."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"Account not found: {user_id}")
        self.user_id = user_id


class InsufficientPointsError(LedgerError):
    """Raised when a spend exceeds the current balance."""

    def __init__(self, user_id: str, balance: int, amount: int) -> None:
        super().__init__(f"Insufficient points for {user_id}: balance {balance}, needed {amount}")
        self.user_id = user_id
        self.balance = balance
        self.amount = amount


class TransactionNotFoundError(LedgerError):
    """Raised when a refund targets an unknown or non-refundable row."""


class LedgerDatabase:
    """SQLite-backed persistence for viewer accounts and the transaction log."""

    def __init__(self, db_path: str, logger: logging.Logger | None = None) -> None:
        self._db_path = db_path
        self._logger = logger or logging.getLogger("stage.database")

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        parent = Path(self._db_path).parent
        if str(parent) not in ("", "."):
            parent.mkdir(parents=True, exist_ok=True)

        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    display_name TEXT NOT NULL,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    refunded BOOLEAN DEFAULT 0,
                    FOREIGN KEY (user_id) REFERENCES accounts(id)
                )
            """)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_user_transactions "
                "ON transactions(user_id, timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_timestamp "
                "ON transactions(timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_refunded "
                "ON transactions(refunded)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_accounts_last_seen "
                "ON accounts(last_seen)"
            )

            conn.commit()
            self._logger.info("Ledger tables created/verified")
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def get_account(self, user_id: str) -> dict | None:
        """Return account row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM accounts WHERE id = ?", (user_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def create_account(self, user_id: str, display_name: str) -> bool:
        """Insert an empty account. Returns False if it already existed."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO accounts (id, display_name) VALUES (?, ?)",
                    (user_id, display_name),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_or_create_account(self, user_id: str, display_name: str) -> dict:
        """Return account row as dict. Creates with zero balance if not exists."""
        await self.create_account(user_id, display_name)
        account = await self.get_account(user_id)
        return account or {}

    async def get_balance(self, user_id: str) -> int:
        """Return balance integer, 0 if account doesn't exist."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (user_id,),
                ).fetchone()
                return row["balance"] if row else 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def touch_account(self, user_id: str, display_name: str | None = None) -> bool:
        """Refresh last_seen (and display name). Returns False for unknown users."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET last_seen = CURRENT_TIMESTAMP, "
                    "display_name = COALESCE(?, display_name) WHERE id = ?",
                    (display_name, user_id),
                )
                conn.commit()
                return cursor.rowcount > 0
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Balance Operations
    # ══════════════════════════════════════════════════════════

    async def award(self, user_id: str, amount: int, reason: str) -> int:
        """Atomically credit points and log the transaction. Returns new balance.

        Raises InvalidAmountError for amount <= 0 and AccountNotFoundError
        when the account has not been created.
        """
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive for awarding points")
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET balance = balance + ?, last_seen = CURRENT_TIMESTAMP "
                    "WHERE id = ?",
                    (amount, user_id),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise AccountNotFoundError(user_id)
                conn.execute(
                    "INSERT INTO transactions (user_id, amount, reason) VALUES (?, ?, ?)",
                    (user_id, amount, reason),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (user_id,),
                ).fetchone()
                return row["balance"]
            finally:
                conn.close()

        balance = await loop.run_in_executor(None, _sync)
        self._logger.debug("Points awarded: %s +%d (%s)", user_id, amount, reason)
        return balance

    async def spend(self, user_id: str, amount: int, reason: str) -> int:
        """Atomically check-and-debit points and log the transaction.

        Returns the new balance. Raises InvalidAmountError,
        AccountNotFoundError or InsufficientPointsError; on failure neither
        the balance nor the transaction log changes.
        """
        if amount <= 0:
            raise InvalidAmountError("Amount must be positive for spending points")
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE accounts SET balance = balance - ?, last_seen = CURRENT_TIMESTAMP "
                    "WHERE id = ? AND balance >= ?",
                    (amount, user_id, amount),
                )
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT balance FROM accounts WHERE id = ?", (user_id,),
                    ).fetchone()
                    conn.rollback()
                    if row is None:
                        raise AccountNotFoundError(user_id)
                    raise InsufficientPointsError(user_id, row["balance"], amount)
                conn.execute(
                    "INSERT INTO transactions (user_id, amount, reason) VALUES (?, ?, ?)",
                    (user_id, -amount, reason),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (user_id,),
                ).fetchone()
                return row["balance"]
            finally:
                conn.close()

        balance = await loop.run_in_executor(None, _sync)
        self._logger.debug("Points spent: %s -%d (%s)", user_id, amount, reason)
        return balance

    async def refund_transaction(self, transaction_id: int) -> int:
        """Reverse a spend: flag it refunded and log a compensating credit.

        Returns the account's new balance. Only negative, not-yet-refunded
        rows qualify; anything else raises TransactionNotFoundError.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    "UPDATE transactions SET refunded = 1 "
                    "WHERE id = ? AND amount < 0 AND refunded = 0",
                    (transaction_id,),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise TransactionNotFoundError(
                        f"No refundable transaction with id {transaction_id}"
                    )
                row = conn.execute(
                    "SELECT * FROM transactions WHERE id = ?", (transaction_id,),
                ).fetchone()
                credit = -row["amount"]
                conn.execute(
                    "UPDATE accounts SET balance = balance + ? WHERE id = ?",
                    (credit, row["user_id"]),
                )
                conn.execute(
                    "INSERT INTO transactions (user_id, amount, reason) VALUES (?, ?, ?)",
                    (row["user_id"], credit, f"refund:{row['reason']}"),
                )
                conn.commit()
                balance = conn.execute(
                    "SELECT balance FROM accounts WHERE id = ?", (row["user_id"],),
                ).fetchone()
                return balance["balance"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Queries
    # ══════════════════════════════════════════════════════════

    async def get_transactions(self, user_id: str, limit: int = 50) -> list[dict]:
        """Return a user's transactions, newest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE user_id = ? "
                    "ORDER BY timestamp DESC, id DESC LIMIT ?",
                    (user_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_transaction_sum(self, user_id: str) -> int:
        """SUM(amount) over a user's transaction log."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COALESCE(SUM(amount), 0) AS total FROM transactions WHERE user_id = ?",
                    (user_id,),
                ).fetchone()
                return row["total"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_seen_since(self, minutes: float) -> int:
        """COUNT of accounts whose last_seen falls within the last *minutes*."""
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM accounts "
                    "WHERE last_seen >= datetime('now', ?)",
                    (f"-{minutes * 60:.0f} seconds",),
                ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_stats(self) -> dict:
        """Return {users, transactions, total_points}."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                users = conn.execute("SELECT COUNT(*) AS cnt FROM accounts").fetchone()["cnt"]
                txs = conn.execute("SELECT COUNT(*) AS cnt FROM transactions").fetchone()["cnt"]
                total = conn.execute(
                    "SELECT COALESCE(SUM(balance), 0) AS total FROM accounts"
                ).fetchone()["total"]
                return {"users": users, "transactions": txs, "total_points": total}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
