"""
Order persistence stores.

Two implementations of the OrderStore interface:
- InMemoryOrderStore: a SortedDict keyed by order id, guarded by a lock
- SqliteOrderStore: a single `orders` table, state stored as TEXT

Both store the state by its symbolic name and support a conditional save
(expected_state) so a write only lands if the stored state is still the one
the caller rehydrated from.
"""

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date
from typing import List, Optional

from sortedcontainers import SortedDict

from fsm import ConfigurationError
from order_fsm import OrderState, parse_order_state

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderRecord:
    """Persisted order row."""
    id: Optional[int]
    creation_date: date
    state: str  # OrderState name, never a numeric code

    @property
    def order_state(self) -> OrderState:
        try:
            return parse_order_state(self.state)
        except ValueError as e:
            raise PersistenceError(f"Order {self.id} has corrupt state: {e}", retryable=False) from e

    def with_state(self, state: OrderState) -> "OrderRecord":
        return replace(self, state=state.name)


class OrderStore(ABC):
    """
    Interface for the persistence collaborator.

    Implementations raise EntityNotFound for missing ids and PersistenceError
    (or a subclass) for anything that went wrong talking to storage.
    """

    @abstractmethod
    def load(self, order_id: int) -> OrderRecord:
        pass

    @abstractmethod
    def save(self, record: OrderRecord, expected_state: Optional[str] = None) -> OrderRecord:
        """
        Write record.state for an existing order.

        If expected_state is given the write only succeeds when the stored
        state still equals it; otherwise WriteConflictError is raised.
        """
        pass

    @abstractmethod
    def create(self, record: OrderRecord) -> OrderRecord:
        """Insert a new order. Returns the record with its assigned id."""
        pass

    @abstractmethod
    def all(self) -> List[OrderRecord]:
        """All orders, ordered by id."""
        pass

    def close(self) -> None:
        pass


class InMemoryOrderStore(OrderStore):
    """Process-local store. Ids are assigned sequentially from 1."""

    def __init__(self):
        self._orders: SortedDict = SortedDict()  # order_id -> OrderRecord
        self._next_id = 1
        self._lock = threading.Lock()

    def load(self, order_id: int) -> OrderRecord:
        with self._lock:
            record = self._orders.get(order_id)
        if record is None:
            raise EntityNotFound(order_id)
        return record

    def save(self, record: OrderRecord, expected_state: Optional[str] = None) -> OrderRecord:
        _check_state_name(record.state)
        with self._lock:
            stored = self._orders.get(record.id)
            if stored is None:
                raise EntityNotFound(record.id)
            if expected_state is not None and stored.state != expected_state:
                raise WriteConflictError(
                    f"Order {record.id} is {stored.state}, expected {expected_state}"
                )
            self._orders[record.id] = record
        return record

    def create(self, record: OrderRecord) -> OrderRecord:
        _check_state_name(record.state)
        with self._lock:
            created = replace(record, id=self._next_id)
            self._orders[created.id] = created
            self._next_id += 1
        logger.debug(f"Created order {created.id} in state {created.state}")
        return created

    def all(self) -> List[OrderRecord]:
        with self._lock:
            return list(self._orders.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)


class SqliteOrderStore(OrderStore):
    """
    SQLite-backed store.

    Each call opens its own connection so the store can be shared across
    threads. `timeout` bounds how long a call waits on a locked database;
    exceeding it raises PersistenceTimeout. A path of ":memory:" is not
    supported because every connection would see a different database.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            creation_date TEXT NOT NULL,
            state TEXT NOT NULL
        )
    """

    def __init__(self, path: str, timeout: float = 5.0):
        if path == ":memory:":
            raise ConfigurationError("SqliteOrderStore needs a file path; use InMemoryOrderStore instead")
        self.path = path
        self.timeout = timeout
        with self._connect() as conn:
            self._execute(conn, self.SCHEMA)

    def _connect(self) -> "_Connection":
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open database {self.path}: {e}") from e
        return _Connection(conn)

    @staticmethod
    def _execute(conn: sqlite3.Connection, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, params)
        except sqlite3.OperationalError as e:
            if "locked" in str(e) or "busy" in str(e):
                raise PersistenceTimeout(f"Database busy: {e}") from e
            raise PersistenceError(f"Database error: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Database error: {e}") from e

    @staticmethod
    def _to_record(row: tuple) -> OrderRecord:
        order_id, creation_date, state = row
        return OrderRecord(id=order_id, creation_date=date.fromisoformat(creation_date), state=state)

    def load(self, order_id: int) -> OrderRecord:
        with self._connect() as conn:
            row = self._execute(
                conn, "SELECT id, creation_date, state FROM orders WHERE id = ?", (order_id,)
            ).fetchone()
        if row is None:
            raise EntityNotFound(order_id)
        return self._to_record(row)

    def save(self, record: OrderRecord, expected_state: Optional[str] = None) -> OrderRecord:
        _check_state_name(record.state)
        with self._connect() as conn:
            if expected_state is None:
                cursor = self._execute(
                    conn, "UPDATE orders SET state = ? WHERE id = ?", (record.state, record.id)
                )
            else:
                cursor = self._execute(
                    conn, "UPDATE orders SET state = ? WHERE id = ? AND state = ?",
                    (record.state, record.id, expected_state)
                )
            if cursor.rowcount == 0:
                exists = self._execute(
                    conn, "SELECT state FROM orders WHERE id = ?", (record.id,)
                ).fetchone()
                if exists is None:
                    raise EntityNotFound(record.id)
                raise WriteConflictError(
                    f"Order {record.id} is {exists[0]}, expected {expected_state}"
                )
        return record

    def create(self, record: OrderRecord) -> OrderRecord:
        _check_state_name(record.state)
        with self._connect() as conn:
            cursor = self._execute(
                conn, "INSERT INTO orders (creation_date, state) VALUES (?, ?)",
                (record.creation_date.isoformat(), record.state)
            )
            created = replace(record, id=cursor.lastrowid)
        logger.debug(f"Created order {created.id} in state {created.state}")
        return created

    def all(self) -> List[OrderRecord]:
        with self._connect() as conn:
            rows = self._execute(
                conn, "SELECT id, creation_date, state FROM orders ORDER BY id"
            ).fetchall()
        return [self._to_record(row) for row in rows]


class _Connection:
    """Commit on success, roll back on error, always close."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def __enter__(self) -> sqlite3.Connection:
        return self._conn

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                self._conn.rollback()
        except sqlite3.OperationalError as e:
            raise PersistenceTimeout(f"Commit failed: {e}") from e
        except sqlite3.Error as e:
            raise PersistenceError(f"Commit failed: {e}") from e
        finally:
            self._conn.close()


def _check_state_name(state: str) -> None:
    if state not in OrderState.__members__:
        raise PersistenceError(f"Refusing to store unknown state {state!r}", retryable=False)


class OrderServiceError(Exception):
    """Base class for errors surfaced to callers of the order service."""
    retryable = False


class EntityNotFound(OrderServiceError):
    """Raised when an order id is not in the store."""

    def __init__(self, entity_id):
        super().__init__(f"Order {entity_id} not found")
        self.entity_id = entity_id


class PersistenceError(OrderServiceError):
    """Raised when the store cannot be read or written. Retryable by default."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class PersistenceTimeout(PersistenceError):
    """Raised when storage did not answer within the configured timeout."""
    pass


class WriteConflictError(PersistenceError):
    """Raised when a conditional save finds a different stored state."""
    pass
