"""
Storage Backend Module

Provides the abstract durable store interface and its SQLite implementation.
Accounts, per-(account, currency) balances and the append-only transaction
log live in relational tables. All monetary values are stored as Decimal
strings; every multi-statement mutation runs in one explicit transaction.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Union
from decimal import Decimal
from datetime import datetime
import sqlite3
import threading
import time
import re
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager

from .currency import Currency, SAFETY_CEILING
from .errors import (
    BalanceOutOfBoundsError, ErrorCode, InsufficientFundsError, LedgerError,
    OverflowAmountError, StoreError
)
from .logging_config import get_logger


BACKUP_PREFIX = "economy_"
BACKUP_SUFFIX = ".db"
# Backup stem: timestamp plus an optional collision counter
BACKUP_STEM = re.compile(r"^(?P<stamp>.*?)(?:_(?P<counter>\d+))?$")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class BalanceEntry:
    """One row of a leaderboard query"""
    account_id: str
    username: str
    balance: Decimal


@dataclass(frozen=True)
class TransactionRecord:
    """Append-only transaction log entry; from_account None means system credit"""
    id: int
    from_account: Optional[str]
    to_account: str
    currency_id: str
    amount: Decimal
    tax: Decimal
    type: str
    timestamp: int

    @property
    def timestamp_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp / 1000)


@dataclass(frozen=True)
class TransferReceipt:
    """Committed outcome of a two-account transfer"""
    from_account: str
    to_account: str
    currency_id: str
    amount: Decimal
    tax: Decimal
    from_balance: Decimal
    to_balance: Decimal
    transaction_id: int

    @property
    def total(self) -> Decimal:
        return self.amount + self.tax


class StorageInterface(ABC):
    """Abstract interface for durable ledger stores"""

    @abstractmethod
    def get_balance(self, account_id: str, currency_id: str) -> Optional[Decimal]:
        """Stored balance, or None when no row exists (NotSet)"""
        pass

    @abstractmethod
    def set_balance(self, account_id: str, username: str, currency: Currency,
                    amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        """Upsert a balance, creating the account in the same transaction"""
        pass

    @abstractmethod
    def grant_starter(self, account_id: str, username: str, currency: Currency,
                      transaction_type: str) -> Optional[Decimal]:
        """Insert the starter balance only when no row exists; None when one already did"""
        pass

    @abstractmethod
    def add_balance(self, account_id: str, username: str, currency: Currency,
                    amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        """Credit an account; NotSet counts as the starter balance"""
        pass

    @abstractmethod
    def remove_balance(self, account_id: str, username: str, currency: Currency,
                       amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        """Debit an account; fails without writing when funds are insufficient"""
        pass

    @abstractmethod
    def transfer(self, from_id: str, from_name: str, to_id: str, to_name: str,
                 currency: Currency, amount: Decimal, tax: Decimal,
                 transaction_type: str) -> TransferReceipt:
        """Atomically move ``amount`` to the receiver, debiting ``amount + tax``"""
        pass

    @abstractmethod
    def record_transaction(self, from_id: Optional[str], to_id: str, currency_id: str,
                           amount: Decimal, transaction_type: str,
                           tax: Decimal = Decimal("0")) -> int:
        """Append a transaction record, returning its id"""
        pass

    @abstractmethod
    def has_account(self, account_id: str) -> bool:
        pass

    @abstractmethod
    def create_account(self, account_id: str, username: str) -> bool:
        """Idempotent; True when the account exists afterwards"""
        pass

    @abstractmethod
    def touch_account(self, account_id: str, username: str) -> None:
        """Create the account or refresh its last-seen username"""
        pass

    @abstractmethod
    def get_username(self, account_id: str) -> Optional[str]:
        pass

    @abstractmethod
    def find_account(self, username: str) -> Optional[str]:
        pass

    @abstractmethod
    def top_balances(self, currency_id: str, limit: Optional[int] = None,
                     offset: int = 0) -> List[BalanceEntry]:
        pass

    @abstractmethod
    def total_accounts(self) -> int:
        pass

    @abstractmethod
    def all_account_ids(self) -> List[str]:
        pass

    @abstractmethod
    def transactions(self, account_id: Optional[str] = None,
                     currency_id: Optional[str] = None,
                     limit: int = 50) -> List[TransactionRecord]:
        pass

    @abstractmethod
    def snapshot(self, backup_dir: Union[str, Path], keep: int) -> Path:
        """Write a consistent point-in-time copy of the store"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite durable store.

    One connection is shared by all threads and guarded by an RLock. Every
    mutation opens ``BEGIN IMMEDIATE`` so SQLite's write lock is held from
    the balance read to the commit; concurrent writers in other processes
    sharing the file wait on ``busy_timeout`` instead of reading stale rows.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", busy_timeout_ms: int = 5000):
        self.db_path = str(db_path)
        self.logger = get_logger("economy.storage")
        # isolation_level=None: we issue BEGIN/COMMIT ourselves
        self._connection = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level=None,
            timeout=busy_timeout_ms / 1000,
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0

        with self._lock:
            self._connection.execute("PRAGMA foreign_keys = ON")
            self._connection.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
            if not self.is_memory:
                # economy.db-wal and economy.db-shm next to the database are expected
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._create_tables()

        self.logger.info("Database initialized at %s", self.db_path)

    @property
    def is_memory(self) -> bool:
        return self.db_path == ":memory:" or self.db_path.startswith("file::memory:")

    def _create_tables(self) -> None:
        self._connection.executescript("""
            CREATE TABLE IF NOT EXISTS players (
                uuid TEXT PRIMARY KEY NOT NULL,
                username TEXT NOT NULL,
                last_updated INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS balances (
                uuid TEXT NOT NULL,
                currency TEXT NOT NULL,
                balance TEXT NOT NULL,
                PRIMARY KEY (uuid, currency),
                FOREIGN KEY (uuid) REFERENCES players(uuid) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                from_uuid TEXT,
                to_uuid TEXT NOT NULL,
                currency TEXT NOT NULL,
                amount TEXT NOT NULL,
                tax TEXT NOT NULL DEFAULT '0',
                type TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                FOREIGN KEY (from_uuid) REFERENCES players(uuid),
                FOREIGN KEY (to_uuid) REFERENCES players(uuid)
            );

            CREATE INDEX IF NOT EXISTS idx_balances_currency ON balances(currency);
            CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions(timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_players_username ON players(username COLLATE NOCASE);
        """)

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """
        Run the enclosed statements as one transaction.

        Nested use joins the outer transaction. Any exception rolls back
        every write made inside the outermost block and is re-raised;
        sqlite errors surface as StoreError.
        """
        with self._lock:
            if self._connection is None:
                raise StoreError("Storage is closed")
            if self._depth:
                self._depth += 1
                try:
                    yield self._connection
                finally:
                    self._depth -= 1
                return

            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreError(f"Cannot start transaction: {e}") from e

            self._depth = 1
            try:
                yield self._connection
            except sqlite3.Error as e:
                self._depth = 0
                self._rollback()
                raise StoreError(f"Transaction failed: {e}") from e
            except BaseException:
                self._depth = 0
                self._rollback()
                raise

            self._depth = 0
            try:
                self._connection.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback()
                raise StoreError(f"Commit failed: {e}") from e

    def _rollback(self) -> None:
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error:
            self.logger.error("Failed to rollback transaction", exc_info=True)

    @contextmanager
    def _reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._connection is None:
                raise StoreError("Storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    # Statement helpers, always called inside atomic()

    def _ensure_account(self, conn: sqlite3.Connection, account_id: str, username: str) -> None:
        conn.execute("""
            INSERT INTO players (uuid, username, last_updated)
            VALUES (?, ?, ?)
            ON CONFLICT(uuid) DO UPDATE SET
                username = excluded.username,
                last_updated = excluded.last_updated
        """, (account_id, username, _now_ms()))

    def _read_balance(self, conn: sqlite3.Connection, account_id: str,
                      currency_id: str) -> Optional[Decimal]:
        row = conn.execute(
            "SELECT balance FROM balances WHERE uuid = ? AND currency = ?",
            (account_id, currency_id),
        ).fetchone()
        return Decimal(row["balance"]) if row else None

    def _write_balance(self, conn: sqlite3.Connection, account_id: str,
                       currency_id: str, amount: Decimal) -> None:
        conn.execute("""
            INSERT INTO balances (uuid, currency, balance)
            VALUES (?, ?, ?)
            ON CONFLICT(uuid, currency) DO UPDATE SET balance = excluded.balance
        """, (account_id, currency_id, str(amount)))

    def _insert_transaction(self, conn: sqlite3.Connection, from_id: Optional[str],
                            to_id: str, currency_id: str, amount: Decimal,
                            tax: Decimal, transaction_type: str) -> int:
        cursor = conn.execute("""
            INSERT INTO transactions (from_uuid, to_uuid, currency, amount, tax, type, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (from_id, to_id, currency_id, str(amount), str(tax), transaction_type, _now_ms()))
        return cursor.lastrowid

    @staticmethod
    def _check_upper_bound(currency: Currency, new_balance: Decimal) -> None:
        if new_balance > SAFETY_CEILING:
            raise OverflowAmountError(f"Balance would exceed the safety ceiling for {currency.id}")
        if currency.has_max_balance and new_balance > currency.max_balance:
            raise BalanceOutOfBoundsError(
                f"Balance {new_balance} would exceed maximum {currency.max_balance} for {currency.id}"
            )

    @staticmethod
    def _check_funds(currency: Currency, current: Decimal, debit: Decimal) -> Decimal:
        new_balance = current - debit
        if new_balance < currency.min_balance:
            raise InsufficientFundsError(debit, current - currency.min_balance)
        return new_balance

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def get_balance(self, account_id: str, currency_id: str) -> Optional[Decimal]:
        with self._reading() as conn:
            return self._read_balance(conn, account_id, currency_id)

    def set_balance(self, account_id: str, username: str, currency: Currency,
                    amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        if not currency.is_valid_balance(amount):
            raise BalanceOutOfBoundsError(
                f"Balance {amount} is outside the bounds of {currency.id}"
            )
        with self.atomic() as conn:
            self._ensure_account(conn, account_id, username)
            self._write_balance(conn, account_id, currency.id, amount)
            if transaction_type:
                # Set-style records carry the resulting balance
                self._insert_transaction(conn, None, account_id, currency.id,
                                         amount, Decimal("0"), transaction_type)
        return amount

    def grant_starter(self, account_id: str, username: str, currency: Currency,
                      transaction_type: str) -> Optional[Decimal]:
        amount = currency.starter_balance
        if not currency.is_valid_balance(amount):
            raise BalanceOutOfBoundsError(
                f"Starter balance {amount} is outside the bounds of {currency.id}"
            )
        with self.atomic() as conn:
            self._ensure_account(conn, account_id, username)
            cursor = conn.execute("""
                INSERT INTO balances (uuid, currency, balance)
                VALUES (?, ?, ?)
                ON CONFLICT(uuid, currency) DO NOTHING
            """, (account_id, currency.id, str(amount)))
            if cursor.rowcount == 0:
                # A credit or an earlier grant already created the row
                return None
            self._insert_transaction(conn, None, account_id, currency.id,
                                     amount, Decimal("0"), transaction_type)
        return amount

    def add_balance(self, account_id: str, username: str, currency: Currency,
                    amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        with self.atomic() as conn:
            current = self._read_balance(conn, account_id, currency.id)
            if current is None:
                current = currency.starter_balance
            new_balance = current + amount
            self._check_upper_bound(currency, new_balance)
            self._ensure_account(conn, account_id, username)
            self._write_balance(conn, account_id, currency.id, new_balance)
            if transaction_type:
                self._insert_transaction(conn, None, account_id, currency.id,
                                         amount, Decimal("0"), transaction_type)
        return new_balance

    def remove_balance(self, account_id: str, username: str, currency: Currency,
                       amount: Decimal, transaction_type: Optional[str] = None) -> Decimal:
        with self.atomic() as conn:
            current = self._read_balance(conn, account_id, currency.id)
            if current is None:
                raise InsufficientFundsError(amount, Decimal("0"))
            new_balance = self._check_funds(currency, current, amount)
            self._ensure_account(conn, account_id, username)
            self._write_balance(conn, account_id, currency.id, new_balance)
            if transaction_type:
                self._insert_transaction(conn, None, account_id, currency.id,
                                         -amount, Decimal("0"), transaction_type)
        return new_balance

    def transfer(self, from_id: str, from_name: str, to_id: str, to_name: str,
                 currency: Currency, amount: Decimal, tax: Decimal,
                 transaction_type: str) -> TransferReceipt:
        if from_id == to_id:
            raise LedgerError("Cannot transfer to the same account", ErrorCode.SELF_TRANSFER)

        total = amount + tax
        with self.atomic() as conn:
            # Both balances are read under the write lock taken by BEGIN IMMEDIATE
            from_current = self._read_balance(conn, from_id, currency.id)
            if from_current is None:
                from_current = currency.starter_balance
            from_new = self._check_funds(currency, from_current, total)

            to_current = self._read_balance(conn, to_id, currency.id)
            if to_current is None:
                to_current = currency.starter_balance
            to_new = to_current + amount
            self._check_upper_bound(currency, to_new)

            self._ensure_account(conn, from_id, from_name)
            self._ensure_account(conn, to_id, to_name)
            self._write_balance(conn, from_id, currency.id, from_new)
            self._write_balance(conn, to_id, currency.id, to_new)
            transaction_id = self._insert_transaction(
                conn, from_id, to_id, currency.id, amount, tax, transaction_type
            )

        return TransferReceipt(
            from_account=from_id,
            to_account=to_id,
            currency_id=currency.id,
            amount=amount,
            tax=tax,
            from_balance=from_new,
            to_balance=to_new,
            transaction_id=transaction_id,
        )

    def record_transaction(self, from_id: Optional[str], to_id: str, currency_id: str,
                           amount: Decimal, transaction_type: str,
                           tax: Decimal = Decimal("0")) -> int:
        with self.atomic() as conn:
            return self._insert_transaction(conn, from_id, to_id, currency_id,
                                            amount, tax, transaction_type)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def has_account(self, account_id: str) -> bool:
        with self._reading() as conn:
            row = conn.execute("SELECT 1 FROM players WHERE uuid = ? LIMIT 1",
                               (account_id,)).fetchone()
            return row is not None

    def create_account(self, account_id: str, username: str) -> bool:
        with self.atomic() as conn:
            conn.execute("""
                INSERT INTO players (uuid, username, last_updated)
                VALUES (?, ?, ?)
                ON CONFLICT(uuid) DO NOTHING
            """, (account_id, username, _now_ms()))
        return True

    def touch_account(self, account_id: str, username: str) -> None:
        with self.atomic() as conn:
            self._ensure_account(conn, account_id, username)

    def get_username(self, account_id: str) -> Optional[str]:
        with self._reading() as conn:
            row = conn.execute("SELECT username FROM players WHERE uuid = ?",
                               (account_id,)).fetchone()
            return row["username"] if row else None

    def find_account(self, username: str) -> Optional[str]:
        """Most recently seen account using ``username`` (case-insensitive)"""
        with self._reading() as conn:
            row = conn.execute("""
                SELECT uuid FROM players
                WHERE username = ? COLLATE NOCASE
                ORDER BY last_updated DESC
                LIMIT 1
            """, (username,)).fetchone()
            return row["uuid"] if row else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def top_balances(self, currency_id: str, limit: Optional[int] = None,
                     offset: int = 0) -> List[BalanceEntry]:
        """Balances for a currency ordered descending, ties broken by account id"""
        with self._reading() as conn:
            rows = conn.execute("""
                SELECT p.uuid, p.username, b.balance
                FROM balances b
                JOIN players p ON b.uuid = p.uuid
                WHERE b.currency = ?
                ORDER BY CAST(b.balance AS REAL) DESC, b.uuid ASC
                LIMIT ? OFFSET ?
            """, (currency_id, -1 if limit is None else limit, offset)).fetchall()
        return [BalanceEntry(row["uuid"], row["username"], Decimal(row["balance"]))
                for row in rows]

    def total_accounts(self) -> int:
        with self._reading() as conn:
            return conn.execute("SELECT COUNT(*) AS count FROM players").fetchone()["count"]

    def all_account_ids(self) -> List[str]:
        with self._reading() as conn:
            rows = conn.execute("SELECT uuid FROM players ORDER BY uuid").fetchall()
        return [row["uuid"] for row in rows]

    def transactions(self, account_id: Optional[str] = None,
                     currency_id: Optional[str] = None,
                     limit: int = 50) -> List[TransactionRecord]:
        """Transaction history, newest first"""
        conditions = []
        params: List[object] = []
        if account_id is not None:
            conditions.append("(from_uuid = ? OR to_uuid = ?)")
            params.extend([account_id, account_id])
        if currency_id is not None:
            conditions.append("currency = ?")
            params.append(currency_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit)

        with self._reading() as conn:
            rows = conn.execute(f"""
                SELECT id, from_uuid, to_uuid, currency, amount, tax, type, timestamp
                FROM transactions
                {where}
                ORDER BY id DESC
                LIMIT ?
            """, params).fetchall()
        return [
            TransactionRecord(
                id=row["id"],
                from_account=row["from_uuid"],
                to_account=row["to_uuid"],
                currency_id=row["currency"],
                amount=Decimal(row["amount"]),
                tax=Decimal(row["tax"]),
                type=row["type"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def counts(self) -> Dict[str, int]:
        """Row counts per table, for diagnostics"""
        with self._reading() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()["count"]
                for table in ("players", "balances", "transactions")
            }

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def snapshot(self, backup_dir: Union[str, Path], keep: int) -> Path:
        """
        Copy the database into ``backup_dir`` as economy_<timestamp>.db.

        The WAL is checkpointed first; the copy itself uses SQLite's online
        backup from a separate read connection so writers are only held up
        for the checkpoint. Snapshots beyond ``keep`` are deleted, oldest
        first.
        """
        backup_dir = Path(backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        target = self._next_backup_path(backup_dir)

        if self._connection is None:
            raise StoreError("Storage is closed")

        try:
            if self.is_memory:
                with self._lock:
                    destination = sqlite3.connect(str(target))
                    try:
                        self._connection.backup(destination)
                    finally:
                        destination.close()
            else:
                with self._lock:
                    self._connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                source = sqlite3.connect(self.db_path)
                destination = sqlite3.connect(str(target))
                try:
                    source.backup(destination)
                finally:
                    destination.close()
                    source.close()
        except sqlite3.Error as e:
            self.logger.warning("Failed to create database backup", exc_info=True)
            target.unlink(missing_ok=True)
            raise StoreError(f"Snapshot failed: {e}") from e

        self.logger.info("Database backup created: %s", target.name)
        self._prune_backups(backup_dir, keep)
        return target

    @staticmethod
    def _next_backup_path(backup_dir: Path) -> Path:
        stamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
        target = backup_dir / f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"
        counter = 1
        while target.exists():
            target = backup_dir / f"{BACKUP_PREFIX}{stamp}_{counter}{BACKUP_SUFFIX}"
            counter += 1
        return target

    @staticmethod
    def _backup_order(path: Path):
        """Sort key: timestamp, then collision counter as a number"""
        stem = path.name[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
        match = BACKUP_STEM.match(stem)
        return match.group("stamp"), int(match.group("counter") or 0)

    def _prune_backups(self, backup_dir: Path, keep: int) -> None:
        backups = sorted(
            backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"),
            key=self._backup_order,
            reverse=True,
        )
        for old in backups[max(keep, 1):]:
            try:
                old.unlink()
                self.logger.info("Deleted old backup: %s", old.name)
            except OSError:
                self.logger.warning("Could not delete old backup %s", old.name, exc_info=True)

    def close(self) -> None:
        """Checkpoint the WAL and close the connection"""
        with self._lock:
            if self._connection is None:
                return
            try:
                if not self.is_memory:
                    self._connection.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                self._connection.execute("PRAGMA optimize")
            except sqlite3.Error:
                self.logger.warning("Failed to checkpoint database on close", exc_info=True)
            finally:
                self._connection.close()
                self._connection = None
            self.logger.info("Database connection closed")
