"""Database management module for the society ledger engine.

``DatabaseManager`` is the persistence port handed to every service. It owns a
single sqlite3 connection, exposes model-scoped CRUD that returns plain dict
rows, and provides ``transaction()``, the only atomicity primitive the
services rely on.
"""
import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime

import pandas as pd

from society_ledger.config import (
    DATE_FORMAT_STORAGE,
    DATETIME_FORMAT_STORAGE,
    DB_BUSY_TIMEOUT_SECONDS,
)
from society_ledger.data_structures import LoanStatus, MaturityStatus, MemberStatus
from society_ledger.exceptions import ConcurrentUpdateError, DatabaseError, TransactionError

logger = logging.getLogger(__name__)

ENTRY_UPDATABLE = {
    'deposit_amount', 'loan_installment', 'interest_auto', 'fine_auto',
    'mode', 'description', 'transaction_date', 'loan_id',
}

MATURITY_UPDATABLE = {
    'total_deposit', 'start_date', 'maturity_date', 'months_completed',
    'remaining_months', 'monthly_interest_rate', 'current_interest',
    'full_interest', 'adjusted_interest', 'adjustment_reason',
    'loan_adjustment', 'manual_override', 'status', 'payout_entry_id',
}


def to_db_timestamp(value):
    """Format a date/datetime for a TEXT column; strings pass through."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.strftime(DATETIME_FORMAT_STORAGE)
    if isinstance(value, date):
        return value.strftime(DATE_FORMAT_STORAGE)
    return str(value)


def parse_timestamp(value):
    """Parse a stored timestamp or date string back into a datetime."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    text = str(value).strip()
    for fmt in (DATETIME_FORMAT_STORAGE, DATE_FORMAT_STORAGE):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return datetime.fromisoformat(text)


def to_db_datetime(value):
    """Format a point in time as a full timestamp; dates become midnight.

    Columns compared as TEXT need one width, or "2024-03-01" sorts before
    "2024-03-01 00:00:00".
    """
    if value is None:
        return None
    return parse_timestamp(value).strftime(DATETIME_FORMAT_STORAGE)


def _now_str():
    return datetime.now().strftime(DATETIME_FORMAT_STORAGE)


class DatabaseManager:
    """Handles all SQLite database operations."""

    def __init__(self, db_name=":memory:"):
        self.db_name = db_name
        self._closed = False
        self._tx_depth = 0
        # isolation_level=None: the manager issues BEGIN/COMMIT itself
        self.conn = sqlite3.connect(
            db_name, timeout=DB_BUSY_TIMEOUT_SECONDS, isolation_level=None
        )
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.create_tables()

    def close(self):
        """Close the database connection."""
        if getattr(self, 'conn', None) and not self._closed:
            self.conn.close()
            self._closed = True

    def __del__(self):
        """Ensure connection is closed on garbage collection."""
        self.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit with proper cleanup."""
        self.close()
        return False

    @property
    def in_transaction(self):
        return self._tx_depth > 0

    @contextmanager
    def transaction(self):
        """Context manager for database transactions with automatic rollback on failure.

        The outermost call opens the transaction with ``BEGIN IMMEDIATE`` so the
        write lock is held from the first read, serializing competing writers
        for the whole read-modify-write. Nested calls run inside a savepoint
        of the outer transaction: a failing inner scope is rolled back on its
        own, and the outer transaction may still commit.

        Usage:
            with db.transaction():
                loan = db.get_loan(loan_id)
                db.update_loan_balance(loan_id, loan['remaining_balance'], 0, 'closed')

        If any exception occurs, the transaction is rolled back and the
        exception re-raised (sqlite errors wrapped in ``TransactionError``).
        """
        if self._tx_depth:
            savepoint = f"sp_{self._tx_depth}"
            self.conn.execute(f"SAVEPOINT {savepoint}")
            self._tx_depth += 1
            try:
                yield self
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            except Exception:
                logger.debug(f"Rolling back to savepoint {savepoint} on {self.db_name}")
                self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            finally:
                self._tx_depth -= 1
            return

        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise TransactionError(f"Could not start transaction: {str(e)}")

        self._tx_depth = 1
        try:
            yield self
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise TransactionError(f"Transaction failed: {str(e)}")
        except Exception:
            self._rollback()
            raise
        finally:
            self._tx_depth = 0

    def _rollback(self):
        if self.conn.in_transaction:
            logger.debug(f"Rolling back transaction on {self.db_name}")
            self.conn.execute("ROLLBACK")

    def create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                phone TEXT,
                email TEXT,
                address TEXT,
                status TEXT DEFAULT 'active',
                joining_date TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                loan_amount REAL NOT NULL,
                remaining_balance REAL NOT NULL,
                interest_rate REAL DEFAULT 1.0,
                status TEXT DEFAULT 'active',
                next_due_date TEXT,
                override_enabled INTEGER DEFAULT 0,
                description TEXT,
                loan_date TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(member_id) REFERENCES members(id)
            )
        """)
        # Migrations for administrative close
        try:
            cursor.execute("ALTER TABLE loans ADD COLUMN closed_at TEXT")
        except sqlite3.OperationalError:
            pass
        try:
            cursor.execute("ALTER TABLE loans ADD COLUMN closed_reason TEXT")
        except sqlite3.OperationalError:
            pass

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS ledger_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                transaction_date TEXT,
                entry_type TEXT,
                deposit_amount REAL DEFAULT 0,
                loan_installment REAL DEFAULT 0,
                interest_auto REAL DEFAULT 0,
                fine_auto REAL DEFAULT 0,
                mode TEXT DEFAULT 'CASH',
                loan_id INTEGER,
                description TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(member_id) REFERENCES members(id),
                FOREIGN KEY(loan_id) REFERENCES loans(id)
            )
        """)
        cursor.execute(
            "CREATE INDEX IF NOT EXISTS idx_ledger_member ON ledger_entries (member_id, transaction_date)"
        )

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS maturity_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL UNIQUE,
                total_deposit REAL DEFAULT 0,
                start_date TEXT,
                maturity_date TEXT,
                months_completed INTEGER DEFAULT 0,
                remaining_months INTEGER DEFAULT 0,
                monthly_interest_rate REAL DEFAULT 0,
                current_interest REAL DEFAULT 0,
                full_interest REAL DEFAULT 0,
                adjusted_interest REAL,
                adjustment_reason TEXT,
                loan_adjustment REAL DEFAULT 0,
                manual_override INTEGER DEFAULT 0,
                status TEXT DEFAULT 'active',
                claimed_at TEXT,
                created_at TEXT,
                updated_at TEXT,
                FOREIGN KEY(member_id) REFERENCES members(id)
            )
        """)
        # Payout reconciliation link
        try:
            cursor.execute("ALTER TABLE maturity_records ADD COLUMN payout_entry_id INTEGER")
        except sqlite3.OperationalError:
            pass

        # Settings Table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

    # Row helpers
    def _fetchone_dict(self, query, params=()):
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        row = cursor.fetchone()
        if row:
            cols = [description[0] for description in cursor.description]
            return dict(zip(cols, row))
        return None

    def _fetchall_dicts(self, query, params=()):
        cursor = self.conn.cursor()
        cursor.execute(query, params)
        cols = [description[0] for description in cursor.description]
        return [dict(zip(cols, row)) for row in cursor.fetchall()]

    def _update_fields(self, table, allowed, row_id, fields):
        """Update whitelisted columns with parameterized queries (SQL injection safe)."""
        unknown = set(fields) - allowed
        if unknown:
            raise DatabaseError(f"Cannot update columns on {table}: {sorted(unknown)}")
        if not fields:
            return 0

        set_clauses = [f"{column}=?" for column in fields]
        params = [to_db_timestamp(v) if isinstance(v, (date, datetime)) else v
                  for v in fields.values()]
        set_clauses.append("updated_at=?")
        params.append(_now_str())
        params.append(row_id)

        query = f"UPDATE {table} SET {', '.join(set_clauses)} WHERE id=?"
        cursor = self.conn.cursor()
        cursor.execute(query, tuple(params))
        return cursor.rowcount

    # Member operations
    def add_member(self, name, phone=None, email=None, joining_date=None, address=None,
                   status=MemberStatus.ACTIVE):
        now = _now_str()
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO members (name, phone, email, address, status, joining_date, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (name, phone, email, address, status,
              to_db_timestamp(joining_date) or now, now, now))
        return cursor.lastrowid

    def get_member(self, member_id):
        return self._fetchone_dict("SELECT * FROM members WHERE id=?", (member_id,))

    def get_members(self, status=None):
        if status:
            return self._fetchall_dicts(
                "SELECT * FROM members WHERE status=? ORDER BY id", (status,)
            )
        return self._fetchall_dicts("SELECT * FROM members ORDER BY id")

    def update_member_status(self, member_id, status):
        cursor = self.conn.cursor()
        cursor.execute("UPDATE members SET status=?, updated_at=? WHERE id=?",
                       (status, _now_str(), member_id))

    # Ledger operations
    def add_entry(self, member_id, transaction_date, entry_type, deposit_amount=0,
                  loan_installment=0, interest_auto=0, fine_auto=0, mode="CASH",
                  loan_id=None, description=None):
        now = _now_str()
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO ledger_entries (
                member_id, transaction_date, entry_type, deposit_amount, loan_installment,
                interest_auto, fine_auto, mode, loan_id, description, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (member_id, to_db_datetime(transaction_date) or now, entry_type,
              deposit_amount, loan_installment, interest_auto, fine_auto, mode,
              loan_id, description, now, now))
        return cursor.lastrowid

    def get_entry(self, entry_id):
        return self._fetchone_dict("SELECT * FROM ledger_entries WHERE id=?", (entry_id,))

    def get_member_entry(self, entry_id, member_id):
        return self._fetchone_dict(
            "SELECT * FROM ledger_entries WHERE id=? AND member_id=?", (entry_id, member_id)
        )

    def update_entry(self, entry_id, **fields):
        if fields.get('transaction_date') is not None:
            fields['transaction_date'] = to_db_datetime(fields['transaction_date'])
        return self._update_fields('ledger_entries', ENTRY_UPDATABLE, entry_id, fields)

    def delete_entry(self, entry_id):
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM ledger_entries WHERE id=?", (entry_id,))
        return cursor.rowcount

    def sum_positive(self, member_id, column):
        """Sum a monetary column over a member's entries, counting positive values only."""
        if column not in ('deposit_amount', 'loan_installment', 'fine_auto', 'interest_auto'):
            raise DatabaseError(f"Cannot aggregate column {column}")
        cursor = self.conn.cursor()
        cursor.execute(
            f"SELECT COALESCE(SUM({column}), 0) FROM ledger_entries WHERE member_id=? AND {column} > 0",
            (member_id,)
        )
        return float(cursor.fetchone()[0])

    def get_entries(self, member_id, limit=None):
        """Member entries newest first, by transaction date then creation time."""
        query = """
            SELECT * FROM ledger_entries WHERE member_id=?
            ORDER BY transaction_date DESC, created_at DESC, id DESC
        """
        params = [member_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return self._fetchall_dicts(query, tuple(params))

    def get_loan_entries(self, loan_id):
        return self._fetchall_dicts("""
            SELECT * FROM ledger_entries WHERE loan_id=?
            ORDER BY transaction_date DESC, created_at DESC, id DESC
        """, (loan_id,))

    def get_ledger(self, member_id):
        """Member ledger as a DataFrame, oldest first."""
        query = """
            SELECT * FROM ledger_entries WHERE member_id = ?
            ORDER BY transaction_date, created_at, id
        """
        return pd.read_sql_query(query, self.conn, params=(member_id,))

    # Loan operations
    def add_loan(self, member_id, loan_amount, interest_rate, next_due_date,
                 override_enabled=False, description=None, loan_date=None):
        now = _now_str()
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO loans (
                member_id, loan_amount, remaining_balance, interest_rate, status,
                next_due_date, override_enabled, description, loan_date, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (member_id, loan_amount, loan_amount, interest_rate, LoanStatus.ACTIVE,
              to_db_timestamp(next_due_date), 1 if override_enabled else 0, description,
              to_db_timestamp(loan_date) or now, now, now))
        return cursor.lastrowid

    def get_loan(self, loan_id):
        return self._fetchone_dict("SELECT * FROM loans WHERE id=?", (loan_id,))

    def get_loans(self, member_id, include_closed=True):
        query = "SELECT * FROM loans WHERE member_id=?"
        params = [member_id]
        if not include_closed:
            query += " AND status=?"
            params.append(LoanStatus.ACTIVE)
        query += " ORDER BY created_at DESC, id DESC"
        return self._fetchall_dicts(query, tuple(params))

    def get_active_loans(self, member_id):
        return self.get_loans(member_id, include_closed=False)

    def get_latest_active_loan(self, member_id):
        return self._fetchone_dict("""
            SELECT * FROM loans WHERE member_id=? AND status=?
            ORDER BY created_at DESC, id DESC LIMIT 1
        """, (member_id, LoanStatus.ACTIVE))

    def get_all_active_loans(self):
        return self._fetchall_dicts("""
            SELECT l.*, m.name AS member_name, m.phone AS member_phone
            FROM loans l JOIN members m ON m.id = l.member_id
            WHERE l.status=?
            ORDER BY l.next_due_date ASC, l.id ASC
        """, (LoanStatus.ACTIVE,))

    def get_overdue_loans(self, as_of):
        return self._fetchall_dicts("""
            SELECT l.*, m.name AS member_name, m.phone AS member_phone
            FROM loans l JOIN members m ON m.id = l.member_id
            WHERE l.status=? AND l.next_due_date < ?
            ORDER BY l.next_due_date ASC, l.id ASC
        """, (LoanStatus.ACTIVE, to_db_timestamp(as_of)))

    def update_loan_balance(self, loan_id, expected_balance, new_balance, status, next_due_date=None):
        """Compare-and-set write of a loan balance.

        The row is only written if ``remaining_balance`` still equals the value
        the caller read; otherwise another writer got there first and
        ``ConcurrentUpdateError`` is raised so the transaction rolls back.
        """
        set_clauses = ["remaining_balance=?", "status=?", "updated_at=?"]
        params = [new_balance, status, _now_str()]
        if next_due_date is not None:
            set_clauses.append("next_due_date=?")
            params.append(to_db_timestamp(next_due_date))
        params.extend([loan_id, expected_balance])

        cursor = self.conn.cursor()
        cursor.execute(
            f"UPDATE loans SET {', '.join(set_clauses)} WHERE id=? AND remaining_balance=?",
            tuple(params)
        )
        if cursor.rowcount != 1:
            raise ConcurrentUpdateError('loans', loan_id)

    def close_loan(self, loan_id, reason, closed_at):
        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE loans
            SET status=?, remaining_balance=0, description=?, closed_reason=?, closed_at=?, updated_at=?
            WHERE id=? AND status=?
        """, (LoanStatus.CLOSED, reason, reason, to_db_timestamp(closed_at), _now_str(),
              loan_id, LoanStatus.ACTIVE))
        if cursor.rowcount != 1:
            raise ConcurrentUpdateError('loans', loan_id)

    def get_member_loan_payments(self, member_id):
        """Installments per loan for a member as a DataFrame (one row per loan)."""
        query = """
            SELECT l.id AS loan_id, COALESCE(SUM(e.loan_installment), 0) AS total_paid
            FROM loans l LEFT JOIN ledger_entries e ON e.loan_id = l.id
            WHERE l.member_id = ?
            GROUP BY l.id
        """
        return pd.read_sql_query(query, self.conn, params=(member_id,))

    # Maturity operations
    def add_maturity_record(self, member_id, **fields):
        unknown = set(fields) - MATURITY_UPDATABLE
        if unknown:
            raise DatabaseError(f"Cannot set columns on maturity_records: {sorted(unknown)}")
        now = _now_str()
        columns = ['member_id'] + list(fields) + ['created_at', 'updated_at']
        values = [member_id] + [to_db_timestamp(v) if isinstance(v, (date, datetime)) else v
                                for v in fields.values()] + [now, now]
        placeholders = ", ".join("?" for _ in columns)

        cursor = self.conn.cursor()
        cursor.execute(
            f"INSERT INTO maturity_records ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(values)
        )
        return cursor.lastrowid

    def get_maturity_record(self, record_id):
        return self._fetchone_dict("SELECT * FROM maturity_records WHERE id=?", (record_id,))

    def get_maturity_record_by_member(self, member_id):
        return self._fetchone_dict(
            "SELECT * FROM maturity_records WHERE member_id=?", (member_id,)
        )

    def update_maturity_record(self, record_id, **fields):
        return self._update_fields('maturity_records', MATURITY_UPDATABLE, record_id, fields)

    def mark_maturity_claimed(self, record_id, claimed_at):
        """Flip matured -> claimed; the status guard makes a retried claim a no-op."""
        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE maturity_records SET status=?, claimed_at=?, updated_at=?
            WHERE id=? AND status=?
        """, (MaturityStatus.CLAIMED, to_db_timestamp(claimed_at), _now_str(),
              record_id, MaturityStatus.MATURED))
        return cursor.rowcount == 1

    def get_maturity_records(self, status=None, maturity_before=None):
        query = """
            SELECT r.*, m.name AS member_name, m.phone AS member_phone,
                   m.email AS member_email, m.address AS member_address
            FROM maturity_records r JOIN members m ON m.id = r.member_id
            WHERE 1=1
        """
        params = []
        if status:
            query += " AND r.status=?"
            params.append(status)
        if maturity_before is not None:
            query += " AND r.maturity_date <= ?"
            params.append(to_db_timestamp(maturity_before))
        query += " ORDER BY r.maturity_date ASC, r.id ASC"
        return self._fetchall_dicts(query, tuple(params))

    def get_maturity_records_df(self):
        return pd.read_sql_query("SELECT * FROM maturity_records", self.conn)

    # Settings
    def get_setting(self, key, default=None):
        cursor = self.conn.cursor()
        cursor.execute("SELECT value FROM settings WHERE key=?", (key,))
        row = cursor.fetchone()
        return row[0] if row else default

    def set_setting(self, key, value):
        cursor = self.conn.cursor()
        cursor.execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, str(value)))
