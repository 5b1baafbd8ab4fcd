"""
Finite State Machine Engine

A table-driven state machine for entities whose state lives in a persistence
store. The transition table is declared once at startup and frozen; machine
instances are cheap, built per request, forced into the persisted state and
then discarded.

The only way to change state is through send_event() (or apply_event() for
callers that do not need a machine object). Rejections are returned as a
TransitionResult rather than raised, so callers branch on result.accepted.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_current_entity: ContextVar = ContextVar("current_entity", default=None)


def current_entity() -> Any:
    """Entity id of the machine whose listeners are running, else None."""
    return _current_entity.get()


class RejectionReason(Enum):
    """Why an event did not produce a transition."""
    NO_MATCHING_TRANSITION = "NoMatchingTransition"
    GUARD_FAILED = "GuardFailed"


@dataclass
class TransitionContext:
    """Data visible to guards and actions while an event is processed."""
    entity_id: Any
    event: Optional[Enum]
    payload: Dict[str, Any] = field(default_factory=dict)
    extended_state: Dict[str, Any] = field(default_factory=dict)


Guard = Callable[[TransitionContext], bool]
Action = Callable[[TransitionContext], None]
StateChangeListener = Callable[[Optional[Enum], Enum, Optional[Enum]], None]


@dataclass(frozen=True)
class TransitionEntry:
    """One row of the transition table: (source, event) -> target."""
    source: Enum
    event: Enum
    target: Enum
    guard: Optional[Guard] = None
    action: Optional[Action] = None


@dataclass(frozen=True)
class RejectedEvent:
    """An event that was not applied, and why."""
    reason: RejectionReason
    state: Enum
    event: Enum
    message: str = ""


@dataclass(frozen=True)
class TransitionResult:
    """
    Outcome of applying one event.

    Attributes:
        accepted: True if the transition was committed
        state: State after the call (unchanged on rejection)
        previous_state: State before the call
        event: The event that was applied
        rejection: Details when accepted is False
        extended_state: Snapshot of the machine's extended state
    """
    accepted: bool
    state: Enum
    previous_state: Enum
    event: Enum
    rejection: Optional[RejectedEvent] = None
    extended_state: Dict[str, Any] = field(default_factory=dict)

    @property
    def reason(self) -> Optional[RejectionReason]:
        return self.rejection.reason if self.rejection else None

    def raise_for_rejection(self) -> "TransitionResult":
        """Raise InvalidTransitionError if the event was rejected."""
        if self.rejection is not None:
            raise InvalidTransitionError(self.rejection)
        return self


class TransitionTable:
    """
    Static declaration of the legal transitions between a closed set of states.

    Built once at startup from two Enum classes (states and events). Every
    registration is validated against those vocabularies; a malformed table
    raises ConfigurationError before any request is served.
    """

    def __init__(self, states: type, events: type):
        if not (isinstance(states, type) and issubclass(states, Enum)):
            raise ConfigurationError(f"State vocabulary must be an Enum class, got {states!r}")
        if not (isinstance(events, type) and issubclass(events, Enum)):
            raise ConfigurationError(f"Event vocabulary must be an Enum class, got {events!r}")
        self._states = states
        self._events = events
        self._entries: Dict[Tuple[Enum, Enum], TransitionEntry] = {}
        self._entry_actions: Dict[Enum, Action] = {}
        self._initial_state: Optional[Enum] = None
        self._frozen = False

    # --- Startup registration ---

    def register(self, source: Enum, event: Enum, target: Enum,
                 guard: Optional[Guard] = None,
                 action: Optional[Action] = None) -> TransitionEntry:
        """Declare source --event--> target. Fails fast on a malformed entry."""
        self._check_mutable()
        self._check_state(source, "source")
        self._check_state(target, "target")
        self._check_event(event)
        self._check_callable(guard, "guard")
        self._check_callable(action, "action")

        key = (source, event)
        if key in self._entries:
            raise ConfigurationError(
                f"Duplicate transition for state {source.name} and event {event.name}"
            )

        entry = TransitionEntry(source, event, target, guard, action)
        self._entries[key] = entry
        return entry

    def register_entry_action(self, state: Enum, action: Action) -> None:
        """Run action every time state is entered."""
        self._check_mutable()
        self._check_state(state, "entry")
        if not callable(action):
            raise ConfigurationError(f"Entry action for {state.name} is not callable")
        if state in self._entry_actions:
            raise ConfigurationError(f"Duplicate entry action for state {state.name}")
        self._entry_actions[state] = action

    def set_initial(self, state: Enum) -> None:
        self._check_mutable()
        self._check_state(state, "initial")
        self._initial_state = state

    def freeze(self) -> "TransitionTable":
        """Make the table immutable. Requires an initial state."""
        if self._initial_state is None:
            raise ConfigurationError("Transition table has no initial state")
        self._frozen = True
        return self

    # --- Lookup (pure) ---

    def lookup(self, source: Enum, event: Enum) -> Optional[TransitionEntry]:
        return self._entries.get((source, event))

    def entry_action(self, state: Enum) -> Optional[Action]:
        return self._entry_actions.get(state)

    def allowed_events(self, state: Enum) -> List[Enum]:
        """Events with an outgoing entry from state, in vocabulary order."""
        return [event for event in self._events if (state, event) in self._entries]

    def is_terminal(self, state: Enum) -> bool:
        return not self.allowed_events(state)

    @property
    def terminal_states(self) -> FrozenSet[Enum]:
        return frozenset(state for state in self._states if self.is_terminal(state))

    @property
    def initial_state(self) -> Optional[Enum]:
        return self._initial_state

    @property
    def states(self) -> type:
        return self._states

    @property
    def events(self) -> type:
        return self._events

    @property
    def frozen(self) -> bool:
        return self._frozen

    def entries(self) -> List[TransitionEntry]:
        return list(self._entries.values())

    def __contains__(self, key: Tuple[Enum, Enum]) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # --- Validation helpers ---

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError("Transition table is frozen")

    def _check_state(self, state: Any, role: str) -> None:
        if not isinstance(state, self._states):
            raise ConfigurationError(
                f"{role.capitalize()} state {state!r} is not a member of {self._states.__name__}"
            )

    def _check_event(self, event: Any) -> None:
        if not isinstance(event, self._events):
            raise ConfigurationError(
                f"Event {event!r} is not a member of {self._events.__name__}"
            )

    @staticmethod
    def _check_callable(func: Any, role: str) -> None:
        if func is not None and not callable(func):
            raise ConfigurationError(f"Transition {role} {func!r} is not callable")

    def __repr__(self) -> str:
        return (f"TransitionTable(states={self._states.__name__}, "
                f"events={self._events.__name__}, entries={len(self._entries)}, "
                f"frozen={self._frozen})")


def _run_action(action: Optional[Action], context: TransitionContext, label: str) -> None:
    if action is None:
        return
    try:
        action(context)
    except Exception as e:
        raise TransitionActionError(label, e) from e


def notify_listeners(listeners: Iterable[StateChangeListener],
                     previous_state: Optional[Enum], new_state: Enum,
                     event: Optional[Enum]) -> None:
    """Call each listener in order. A failing listener is logged and skipped."""
    for listener in listeners:
        try:
            listener(previous_state, new_state, event)
        except Exception:
            logger.exception(f"State change listener {listener!r} failed")


def apply_event(table: TransitionTable, current_state: Enum, event: Enum,
                context: TransitionContext,
                listeners: Iterable[StateChangeListener] = ()) -> TransitionResult:
    """
    Evaluate one event against the table.

    Order of operations: lookup, guard, transition action, entry action of the
    target, commit, listeners. Nothing runs past a failed lookup or guard.
    """
    entry = table.lookup(current_state, event)
    if entry is None:
        logger.debug(f"No transition for event {event.name} in state {current_state.name}")
        return TransitionResult(
            accepted=False,
            state=current_state,
            previous_state=current_state,
            event=event,
            rejection=RejectedEvent(
                RejectionReason.NO_MATCHING_TRANSITION, current_state, event,
                f"Event {event.name} not allowed in state {current_state.name}"
            ),
            extended_state=dict(context.extended_state),
        )

    if entry.guard is not None and not entry.guard(context):
        logger.debug(f"Guard denied event {event.name} in state {current_state.name}")
        return TransitionResult(
            accepted=False,
            state=current_state,
            previous_state=current_state,
            event=event,
            rejection=RejectedEvent(
                RejectionReason.GUARD_FAILED, current_state, event,
                f"Guard denied event {event.name} in state {current_state.name}"
            ),
            extended_state=dict(context.extended_state),
        )

    _run_action(entry.action, context, f"{current_state.name} --{event.name}--> {entry.target.name}")
    _run_action(table.entry_action(entry.target), context, f"entry of {entry.target.name}")

    notify_listeners(listeners, current_state, entry.target, event)

    return TransitionResult(
        accepted=True,
        state=entry.target,
        previous_state=current_state,
        event=event,
        extended_state=dict(context.extended_state),
    )


class StateMachine:
    """
    A machine bound to one entity id for the duration of one request.

    Usage:
        machine = factory.get_state_machine(order_id, state=OrderState.PAID)
        result = machine.send_event(OrderEvent.FULFILL)
    """

    def __init__(self, entity_id: Any, table: TransitionTable,
                 listeners: Iterable[StateChangeListener] = ()):
        if not table.frozen:
            raise ConfigurationError("State machines require a frozen transition table")
        self._entity_id = entity_id
        self._table = table
        self._listeners = tuple(listeners)
        self._current_state: Enum = table.initial_state
        self._extended_state: Dict[str, Any] = {}

    def reset(self, state: Enum) -> None:
        """Force the machine into state without running actions or listeners."""
        if not isinstance(state, self._table.states):
            raise ValueError(f"{state!r} is not a member of {self._table.states.__name__}")
        self._current_state = state

    def start(self, payload: Optional[Dict[str, Any]] = None) -> Enum:
        """Enter the initial state: run its entry action and notify listeners."""
        initial = self._table.initial_state
        context = self._context(None, payload)
        token = _current_entity.set(self._entity_id)
        try:
            _run_action(self._table.entry_action(initial), context, f"entry of {initial.name}")
            self._current_state = initial
            notify_listeners(self._listeners, None, initial, None)
        finally:
            _current_entity.reset(token)
        return initial

    def send_event(self, event: Enum, payload: Optional[Dict[str, Any]] = None) -> TransitionResult:
        """Apply event to the current state. The only public way to transition."""
        if not isinstance(event, self._table.events):
            raise ValueError(f"{event!r} is not a member of {self._table.events.__name__}")
        token = _current_entity.set(self._entity_id)
        try:
            result = apply_event(self._table, self._current_state, event,
                                 self._context(event, payload), self._listeners)
        finally:
            _current_entity.reset(token)
        self._current_state = result.state
        return result

    def _context(self, event: Optional[Enum], payload: Optional[Dict[str, Any]]) -> TransitionContext:
        return TransitionContext(
            entity_id=self._entity_id,
            event=event,
            payload=dict(payload or {}),
            extended_state=self._extended_state,
        )

    @property
    def entity_id(self) -> Any:
        return self._entity_id

    @property
    def current_state(self) -> Enum:
        """Return the current state (read-only)."""
        return self._current_state

    @property
    def extended_state(self) -> Dict[str, Any]:
        return self._extended_state

    def is_terminal_state(self) -> bool:
        return self._table.is_terminal(self._current_state)

    def __repr__(self) -> str:
        return (f"StateMachine(entity_id={self._entity_id!r}, "
                f"state={self._current_state.name})")


class StateMachineFactory:
    """Builds a fresh StateMachine per call. Holds no per-entity state."""

    def __init__(self, table: TransitionTable,
                 listeners: Iterable[StateChangeListener] = ()):
        if not table.frozen:
            table.freeze()
        self._table = table
        self._listeners: List[StateChangeListener] = list(listeners)

    def add_listener(self, listener: StateChangeListener) -> None:
        self._listeners.append(listener)

    def get_state_machine(self, entity_id: Any, state: Optional[Enum] = None) -> StateMachine:
        machine = StateMachine(entity_id, self._table, self._listeners)
        if state is not None:
            machine.reset(state)
        return machine

    @property
    def table(self) -> TransitionTable:
        return self._table

    @property
    def listeners(self) -> Tuple[StateChangeListener, ...]:
        return tuple(self._listeners)


class ConfigurationError(Exception):
    """Raised when the transition table or service configuration is malformed."""
    pass


class TransitionActionError(Exception):
    """Raised when a transition or entry action fails. The state is not committed."""

    def __init__(self, label: str, cause: Exception):
        super().__init__(f"Action failed during {label}: {cause}")
        self.label = label
        self.cause = cause


class InvalidTransitionError(Exception):
    """Raised by TransitionResult.raise_for_rejection() for a rejected event."""

    def __init__(self, rejection: RejectedEvent):
        super().__init__(rejection.message or rejection.reason.value)
        self.rejection = rejection
