#!/usr/bin/env python3
"""
Unit tests for the order state machine definition.

Tests cover:
1. State and event vocabularies
2. The declared order transitions
3. Order actions and the optional payment guard
"""

import logging
import unittest

from fsm import RejectionReason, StateMachineFactory, TransitionContext
from order_fsm import (
    INITIAL_STATE,
    ORDER_ID_KEY,
    PAYMENT_CONFIRMATION_KEY,
    OrderEvent,
    OrderState,
    build_order_transition_table,
    has_payment_confirmation,
    on_submitted,
    order_state_machine_factory,
    parse_order_state,
    record_payment_processing,
)


# =============================================================================
# Part 1: Vocabulary
# =============================================================================

class TestVocabulary(unittest.TestCase):

    def test_state_values_are_names(self):
        for state in OrderState:
            self.assertEqual(state.value, state.name)

    def test_event_values_are_names(self):
        for event in OrderEvent:
            self.assertEqual(event.value, event.name)

    def test_initial_and_terminal(self):
        self.assertEqual(INITIAL_STATE, OrderState.SUBMITTED)
        self.assertEqual(build_order_transition_table().terminal_states,
                         {OrderState.FULFILLED, OrderState.CANCELLED})

    def test_parse_order_state(self):
        self.assertEqual(parse_order_state("PAID"), OrderState.PAID)

    def test_parse_unknown_state(self):
        with self.assertRaises(ValueError):
            parse_order_state("SHIPPED")
        with self.assertRaises(ValueError):
            parse_order_state("paid")


# =============================================================================
# Part 2: Declared transitions
# =============================================================================

class TestOrderTransitions(unittest.TestCase):

    def setUp(self):
        self.factory = order_state_machine_factory()

    def machine(self, state=None):
        return self.factory.get_state_machine(1, state=state)

    def test_pay_from_submitted(self):
        result = self.machine(OrderState.SUBMITTED).send_event(
            OrderEvent.PAY, {PAYMENT_CONFIRMATION_KEY: "conf-1"})
        self.assertTrue(result.accepted)
        self.assertEqual(result.state, OrderState.PAID)

    def test_fulfill_from_paid(self):
        result = self.machine(OrderState.PAID).send_event(OrderEvent.FULFILL)
        self.assertTrue(result.accepted)
        self.assertEqual(result.state, OrderState.FULFILLED)
        self.assertEqual(result.extended_state[ORDER_ID_KEY], 1)

    def test_cancel_from_submitted(self):
        result = self.machine(OrderState.SUBMITTED).send_event(OrderEvent.CANCEL)
        self.assertEqual(result.state, OrderState.CANCELLED)

    def test_cancel_from_paid(self):
        result = self.machine(OrderState.PAID).send_event(OrderEvent.CANCEL)
        self.assertEqual(result.state, OrderState.CANCELLED)

    def test_fulfill_from_submitted_rejected(self):
        result = self.machine(OrderState.SUBMITTED).send_event(OrderEvent.FULFILL)
        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, RejectionReason.NO_MATCHING_TRANSITION)

    def test_pay_twice_rejected(self):
        result = self.machine(OrderState.PAID).send_event(OrderEvent.PAY)
        self.assertFalse(result.accepted)
        self.assertEqual(result.state, OrderState.PAID)

    def test_terminal_states_reject_everything(self):
        for state in build_order_transition_table().terminal_states:
            for event in OrderEvent:
                result = self.machine(state).send_event(event)
                self.assertFalse(result.accepted, f"{event.name} accepted in {state.name}")
                self.assertEqual(result.state, state)

    def test_no_self_transitions(self):
        table = build_order_transition_table()
        for entry in table.entries():
            self.assertNotEqual(entry.source, entry.target)


# =============================================================================
# Part 3: Actions and guards
# =============================================================================

class TestOrderActions(unittest.TestCase):

    def test_on_submitted_records_order_id(self):
        ctx = TransitionContext(entity_id=5, event=None)
        with self.assertLogs("order_fsm", level=logging.INFO) as logs:
            on_submitted(ctx)
        self.assertEqual(ctx.extended_state[ORDER_ID_KEY], 5)
        self.assertIn("Order id: 5 submitted", logs.output[0])

    def test_record_payment_processing(self):
        ctx = TransitionContext(entity_id=8, event=OrderEvent.FULFILL)
        with self.assertLogs("order_fsm", level=logging.INFO) as logs:
            record_payment_processing(ctx)
        self.assertEqual(ctx.extended_state[ORDER_ID_KEY], 8)
        self.assertIn("Processing payment for order id: 8", logs.output[0])

    def test_has_payment_confirmation(self):
        def ctx(payload):
            return TransitionContext(entity_id=1, event=OrderEvent.PAY, payload=payload)

        self.assertTrue(has_payment_confirmation(ctx({PAYMENT_CONFIRMATION_KEY: "abc"})))
        self.assertFalse(has_payment_confirmation(ctx({PAYMENT_CONFIRMATION_KEY: "  "})))
        self.assertFalse(has_payment_confirmation(ctx({PAYMENT_CONFIRMATION_KEY: None})))
        self.assertFalse(has_payment_confirmation(ctx({})))

    def test_pay_unguarded_by_default(self):
        table = build_order_transition_table()
        self.assertIsNone(table.lookup(OrderState.SUBMITTED, OrderEvent.PAY).guard)

    def test_pay_guarded_when_required(self):
        factory = order_state_machine_factory(require_payment_confirmation=True)
        machine = factory.get_state_machine(1)
        result = machine.send_event(OrderEvent.PAY, {PAYMENT_CONFIRMATION_KEY: ""})
        self.assertEqual(result.reason, RejectionReason.GUARD_FAILED)
        self.assertEqual(machine.current_state, OrderState.SUBMITTED)

        result = machine.send_event(OrderEvent.PAY, {PAYMENT_CONFIRMATION_KEY: "conf-9"})
        self.assertTrue(result.accepted)
        self.assertEqual(machine.current_state, OrderState.PAID)

    def test_factory_type(self):
        self.assertIsInstance(order_state_machine_factory(), StateMachineFactory)


if __name__ == "__main__":
    unittest.main()
