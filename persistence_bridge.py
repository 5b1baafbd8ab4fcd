"""
Persistence bridge between stateless state machines and the order store.

For every event: lock the entity, load its record, build a machine forced
into the stored state, apply the event, and save the new state if the event
was accepted. This is the only code path that changes a stored state.
"""

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from config import DEFAULT_LOCK_TIMEOUT_SECONDS
from fsm import StateMachineFactory, TransitionResult
from order_store import OrderServiceError, OrderStore, PersistenceError

logger = logging.getLogger(__name__)


class EntityLockRegistry:
    """
    One exclusive lock per entity id.

    Entries are reference counted and dropped when no caller holds or waits
    on them, so the registry does not grow with the number of orders seen.
    """

    def __init__(self):
        self._locks: Dict[Any, threading.Lock] = {}
        self._waiters: Dict[Any, int] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def hold(self, entity_id: Any, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the lock for entity_id. Raises LockTimeoutError after timeout seconds."""
        with self._registry_lock:
            lock = self._locks.setdefault(entity_id, threading.Lock())
            self._waiters[entity_id] = self._waiters.get(entity_id, 0) + 1

        acquired = False
        try:
            acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise LockTimeoutError(
                    f"Timed out after {timeout}s waiting for order {entity_id}"
                )
            yield
        finally:
            if acquired:
                lock.release()
            with self._registry_lock:
                self._waiters[entity_id] -= 1
                if self._waiters[entity_id] == 0:
                    del self._waiters[entity_id]
                    del self._locks[entity_id]

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)


class StateMachinePersister:
    """
    Runs one event for one entity against the store.

    The store never decides whether a transition is legal; it only supplies
    the starting state and receives the result.
    """

    def __init__(self, store: OrderStore, factory: StateMachineFactory,
                 locks: Optional[EntityLockRegistry] = None,
                 lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT_SECONDS):
        self._store = store
        self._factory = factory
        self._locks = locks if locks is not None else EntityLockRegistry()
        self._lock_timeout = lock_timeout

    def process_entity_event(self, entity_id: Any, event: Enum,
                             payload: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """
        Load, rehydrate, apply, persist.

        Raises:
            EntityNotFound: entity_id is not in the store
            PersistenceError: the store failed, or the lock could not be taken
            TransitionActionError: an action failed; nothing was written
        """
        with self._locks.hold(entity_id, self._lock_timeout):
            record = self._store.load(entity_id)
            machine = self._factory.get_state_machine(entity_id, state=record.order_state)
            logger.debug(f"Rehydrated order {entity_id} in state {machine.current_state.name}")

            result = machine.send_event(event, payload)
            if not result.accepted:
                logger.info(
                    f"Order {entity_id}: event {event.name} rejected in state "
                    f"{result.state.name} ({result.reason.value})"
                )
                return result

            try:
                self._store.save(record.with_state(result.state), expected_state=record.state)
            except OrderServiceError:
                logger.error(
                    f"Order {entity_id}: failed to persist {result.previous_state.name} -> "
                    f"{result.state.name}"
                )
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to persist order {entity_id}: {e}") from e

            logger.debug(f"Persisted order {entity_id} in state {result.state.name}")
            return result

    @property
    def store(self) -> OrderStore:
        return self._store

    @property
    def factory(self) -> StateMachineFactory:
        return self._factory


class LockTimeoutError(PersistenceError):
    """Raised when another request holds the entity lock for too long."""
    pass
