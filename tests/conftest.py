"""
Shared pytest fixtures.
"""
import os
import sys
from datetime import date

import pytest

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fsm import StateMachineFactory
from order_fsm import build_order_transition_table
from order_store import InMemoryOrderStore, OrderRecord, SqliteOrderStore
from persistence_bridge import StateMachinePersister


@pytest.fixture
def memory_store():
    return InMemoryOrderStore()


@pytest.fixture
def sqlite_store(tmp_path):
    store = SqliteOrderStore(str(tmp_path / "orders.db"), timeout=1.0)
    yield store
    store.close()


@pytest.fixture
def order_table():
    return build_order_transition_table()


@pytest.fixture
def factory(order_table):
    return StateMachineFactory(order_table)


@pytest.fixture
def persister(memory_store, factory):
    return StateMachinePersister(memory_store, factory, lock_timeout=1.0)


@pytest.fixture
def make_record():
    """Factory for unsaved order records."""
    def _make(state: str = "SUBMITTED", creation_date: date = date(2024, 1, 15)) -> OrderRecord:
        return OrderRecord(id=None, creation_date=creation_date, state=state)
    return _make
