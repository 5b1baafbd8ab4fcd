"""
Order State Machine Definition

States, events and the transition table for the order lifecycle:

    SUBMITTED --PAY--> PAID --FULFILL--> FULFILLED
        |               |
        +----CANCEL-----+----CANCEL----> CANCELLED

FULFILLED and CANCELLED are terminal. States are stored by name, so the
enum values equal the member names.
"""

import logging
from enum import Enum
from typing import Iterable, Optional

from fsm import (
    StateChangeListener,
    StateMachineFactory,
    TransitionContext,
    TransitionTable,
)

logger = logging.getLogger(__name__)

ORDER_ID_KEY = "order_id"
PAYMENT_CONFIRMATION_KEY = "payment_confirmation_number"


class OrderState(str, Enum):
    """Order lifecycle states."""
    SUBMITTED = "SUBMITTED"
    PAID = "PAID"
    FULFILLED = "FULFILLED"
    CANCELLED = "CANCELLED"


class OrderEvent(str, Enum):
    """Events that trigger order state transitions."""
    PAY = "PAY"            # SUBMITTED -> PAID
    FULFILL = "FULFILL"    # PAID -> FULFILLED
    CANCEL = "CANCEL"      # SUBMITTED/PAID -> CANCELLED


INITIAL_STATE = OrderState.SUBMITTED


# --- Actions and guards ---

def on_submitted(context: TransitionContext) -> None:
    """Entry action for SUBMITTED."""
    logger.info(f"Order id: {context.entity_id} submitted")
    context.extended_state[ORDER_ID_KEY] = context.entity_id


def record_payment_processing(context: TransitionContext) -> None:
    """PAID -> FULFILLED"""
    logger.info(f"Processing payment for order id: {context.entity_id}")
    context.extended_state[ORDER_ID_KEY] = context.entity_id


def has_payment_confirmation(context: TransitionContext) -> bool:
    confirmation = context.payload.get(PAYMENT_CONFIRMATION_KEY)
    return isinstance(confirmation, str) and bool(confirmation.strip())


# --- Table construction ---

def build_order_transition_table(require_payment_confirmation: bool = False) -> TransitionTable:
    """
    Build and freeze the order transition table.

    Args:
        require_payment_confirmation: Guard PAY on a non-blank confirmation number
    """
    table = TransitionTable(OrderState, OrderEvent)
    table.set_initial(INITIAL_STATE)
    table.register_entry_action(OrderState.SUBMITTED, on_submitted)

    pay_guard = has_payment_confirmation if require_payment_confirmation else None
    table.register(OrderState.SUBMITTED, OrderEvent.PAY, OrderState.PAID,
                   guard=pay_guard)
    table.register(OrderState.PAID, OrderEvent.FULFILL, OrderState.FULFILLED,
                   action=record_payment_processing)
    table.register(OrderState.SUBMITTED, OrderEvent.CANCEL, OrderState.CANCELLED)
    table.register(OrderState.PAID, OrderEvent.CANCEL, OrderState.CANCELLED)

    return table.freeze()


def order_state_machine_factory(require_payment_confirmation: bool = False,
                                listeners: Optional[Iterable[StateChangeListener]] = None
                                ) -> StateMachineFactory:
    table = build_order_transition_table(require_payment_confirmation)
    return StateMachineFactory(table, listeners or ())


def parse_order_state(name: str) -> OrderState:
    """Parse a stored state name. Raises ValueError for unknown names."""
    try:
        return OrderState[name]
    except KeyError:
        raise ValueError(f"Unknown order state: {name!r}") from None
