"""
Order Lifecycle Service

Facade over the state machine engine and the order store. Each drive
operation (pay/fulfill/cancel) is one call to the persistence bridge and
returns its TransitionResult unchanged; errors propagate as raised.
"""

import logging
from datetime import date
from typing import Iterable, List, Optional

from config import ServiceConfig
from fsm import StateChangeListener, StateMachineFactory, TransitionResult
from order_fsm import (
    INITIAL_STATE,
    PAYMENT_CONFIRMATION_KEY,
    OrderEvent,
    order_state_machine_factory,
)
from order_store import InMemoryOrderStore, OrderRecord, OrderStore, SqliteOrderStore
from persistence_bridge import StateMachinePersister

logger = logging.getLogger(__name__)


class OrderService:
    """
    Usage:
        service = build_order_service(ServiceConfig())
        order = service.create_order()
        service.pay_order(order.id, "conf-1")
        service.fulfill_order(order.id)
    """

    def __init__(self, store: OrderStore, persister: StateMachinePersister,
                 factory: StateMachineFactory):
        self._store = store
        self._persister = persister
        self._factory = factory

    def create_order(self, creation_date: Optional[date] = None) -> OrderRecord:
        """Persist a new order in the initial state and run its entry action."""
        record = self._store.create(OrderRecord(
            id=None,
            creation_date=creation_date or date.today(),
            state=INITIAL_STATE.name,
        ))
        self._factory.get_state_machine(record.id).start()
        logger.debug(f"Created order {record.id} in state {record.state}")
        return record

    def get_order(self, order_id: int) -> OrderRecord:
        return self._store.load(order_id)

    def list_orders(self) -> List[OrderRecord]:
        return self._store.all()

    def pay_order(self, order_id: int, confirmation_ref: str) -> TransitionResult:
        return self._persister.process_entity_event(
            order_id, OrderEvent.PAY, {PAYMENT_CONFIRMATION_KEY: confirmation_ref}
        )

    def fulfill_order(self, order_id: int) -> TransitionResult:
        return self._persister.process_entity_event(order_id, OrderEvent.FULFILL)

    def cancel_order(self, order_id: int) -> TransitionResult:
        return self._persister.process_entity_event(order_id, OrderEvent.CANCEL)

    @property
    def store(self) -> OrderStore:
        return self._store

    @property
    def factory(self) -> StateMachineFactory:
        return self._factory

    def close(self) -> None:
        self._store.close()


def build_order_service(config: ServiceConfig,
                        listeners: Iterable[StateChangeListener] = ()) -> OrderService:
    """Wire store, factory and persister from config."""
    if config.database_path:
        store: OrderStore = SqliteOrderStore(config.database_path, timeout=config.store_timeout)
    else:
        store = InMemoryOrderStore()

    factory = order_state_machine_factory(
        require_payment_confirmation=config.require_payment_confirmation,
        listeners=listeners,
    )
    persister = StateMachinePersister(store, factory, lock_timeout=config.lock_timeout)
    logger.debug(f"Order service built with {type(store).__name__} and {factory.table!r}")
    return OrderService(store, persister, factory)
