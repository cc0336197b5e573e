"""Booking state machine.

``transition`` is a pure function: it never touches storage, the clock or the
network. Callers hand it an immutable ``BookingContext`` snapshot and supply
timestamps through ``payload["occurred_at"]``. Side effects are described in
the result and executed by the caller once the new state is persisted.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from app.core.exceptions import IllegalTransition, MissingPrerequisite


class BookingState(str, Enum):
    IDLE = "IDLE"
    SESSION_TYPE_SELECTED = "SESSION_TYPE_SELECTED"
    CALENDLY_SCHEDULING_INITIATED = "CALENDLY_SCHEDULING_INITIATED"
    CALENDLY_EVENT_SCHEDULED = "CALENDLY_EVENT_SCHEDULED"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    CANCELLATION_REQUESTED = "CANCELLATION_REQUESTED"
    CANCELLED = "CANCELLED"


class BookingEvent(str, Enum):
    SELECT_SESSION_TYPE = "SELECT_SESSION_TYPE"
    INITIATE_SCHEDULING = "INITIATE_SCHEDULING"
    SCHEDULE_EVENT = "SCHEDULE_EVENT"
    INITIATE_PAYMENT = "INITIATE_PAYMENT"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_PROCESSING = "PAYMENT_PROCESSING"
    PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REQUEST_CANCELLATION = "REQUEST_CANCELLATION"
    CONFIRM_CANCELLATION = "CONFIRM_CANCELLATION"
    RESCHEDULE_EVENT = "RESCHEDULE_EVENT"
    RESET = "RESET"


class Effect(str, Enum):
    """Work the caller performs after a transition is committed."""

    SEND_BOOKING_CONFIRMATION = "SEND_BOOKING_CONFIRMATION"
    SEND_CANCELLATION_NOTICE = "SEND_CANCELLATION_NOTICE"
    SEND_PAYMENT_FAILED_NOTICE = "SEND_PAYMENT_FAILED_NOTICE"
    CANCEL_SCHEDULED_EVENT = "CANCEL_SCHEDULED_EVENT"
    REFUND_PAYMENT = "REFUND_PAYMENT"


# Cancellations reported by the scheduling provider need no outbound cancel call
SOURCE_SCHEDULING_PROVIDER = "scheduling_provider"

PAID_STATES = frozenset({BookingState.PAYMENT_SUCCEEDED, BookingState.BOOKING_CONFIRMED})
TERMINAL_STATES = frozenset({BookingState.BOOKING_CONFIRMED, BookingState.CANCELLED})
RETRYABLE_STATES = frozenset({BookingState.PAYMENT_FAILED})
PAYMENT_IN_FLIGHT_STATES = frozenset({BookingState.PAYMENT_PENDING, BookingState.PAYMENT_PROCESSING})

# Booking columns that tie a flow to its provider objects and outcome
RESET_CLEARED_FIELDS = (
    "scheduling_event_uri",
    "scheduling_invitee_uri",
    "start_time",
    "end_time",
    "rescheduled_from",
    "payment_session_id",
    "payment_intent_id",
    "refund_id",
    "last_error_code",
    "last_error_message",
    "last_error_at",
    "cancellation_reason",
    "cancelled_at",
)

# Events a browser may send through the public transition endpoint, with the
# payload fields each one may carry. Payment outcomes, cancellation
# confirmations and reschedules only arrive from provider webhooks.
CLIENT_EVENT_FIELDS: dict[BookingEvent, tuple[str, ...]] = {
    BookingEvent.SELECT_SESSION_TYPE: ("builder_id", "session_type_id", "client_id"),
    BookingEvent.INITIATE_SCHEDULING: (),
    BookingEvent.SCHEDULE_EVENT: (
        "scheduling_event_uri",
        "scheduling_invitee_uri",
        "start_time",
        "end_time",
    ),
    BookingEvent.INITIATE_PAYMENT: (),
    BookingEvent.REQUEST_CANCELLATION: ("reason",),
    BookingEvent.RESET: ("reason",),
}

# Flow states a client can abandon; eligible for the reconciliation sweep
INTERMEDIATE_STATES = frozenset(
    {
        BookingState.SESSION_TYPE_SELECTED,
        BookingState.CALENDLY_SCHEDULING_INITIATED,
        BookingState.CALENDLY_EVENT_SCHEDULED,
        BookingState.PAYMENT_REQUIRED,
        BookingState.PAYMENT_PENDING,
        BookingState.PAYMENT_PROCESSING,
        BookingState.PAYMENT_FAILED,
    }
)

_CANCELLABLE_STATES = frozenset(BookingState) - {
    BookingState.IDLE,
    BookingState.CANCELLATION_REQUESTED,
    BookingState.CANCELLED,
}

_RESCHEDULABLE_STATES = frozenset(
    {
        BookingState.CALENDLY_EVENT_SCHEDULED,
        BookingState.PAYMENT_REQUIRED,
        BookingState.PAYMENT_PENDING,
        BookingState.PAYMENT_PROCESSING,
        BookingState.PAYMENT_SUCCEEDED,
        BookingState.PAYMENT_FAILED,
        BookingState.BOOKING_CONFIRMED,
    }
)


def _build_transitions() -> dict[BookingState, dict[BookingEvent, BookingState]]:
    table: dict[BookingState, dict[BookingEvent, BookingState]] = {
        BookingState.IDLE: {
            BookingEvent.SELECT_SESSION_TYPE: BookingState.SESSION_TYPE_SELECTED,
        },
        BookingState.SESSION_TYPE_SELECTED: {
            BookingEvent.INITIATE_SCHEDULING: BookingState.CALENDLY_SCHEDULING_INITIATED,
        },
        BookingState.CALENDLY_SCHEDULING_INITIATED: {
            BookingEvent.SCHEDULE_EVENT: BookingState.CALENDLY_EVENT_SCHEDULED,
        },
        BookingState.CALENDLY_EVENT_SCHEDULED: {
            BookingEvent.INITIATE_PAYMENT: BookingState.PAYMENT_REQUIRED,
        },
        BookingState.PAYMENT_REQUIRED: {
            BookingEvent.PAYMENT_PENDING: BookingState.PAYMENT_PENDING,
        },
        BookingState.PAYMENT_PENDING: {
            BookingEvent.PAYMENT_PROCESSING: BookingState.PAYMENT_PROCESSING,
            BookingEvent.PAYMENT_FAILED: BookingState.PAYMENT_FAILED,
        },
        BookingState.PAYMENT_PROCESSING: {
            BookingEvent.PAYMENT_SUCCEEDED: BookingState.PAYMENT_SUCCEEDED,
            BookingEvent.PAYMENT_FAILED: BookingState.PAYMENT_FAILED,
        },
        BookingState.PAYMENT_SUCCEEDED: {},
        BookingState.PAYMENT_FAILED: {
            BookingEvent.INITIATE_PAYMENT: BookingState.PAYMENT_REQUIRED,
        },
        BookingState.BOOKING_CONFIRMED: {},
        BookingState.CANCELLATION_REQUESTED: {
            BookingEvent.CONFIRM_CANCELLATION: BookingState.CANCELLED,
        },
        BookingState.CANCELLED: {},
    }
    for state in _CANCELLABLE_STATES:
        table[state][BookingEvent.REQUEST_CANCELLATION] = BookingState.CANCELLATION_REQUESTED
    for state in _RESCHEDULABLE_STATES:
        table[state][BookingEvent.RESCHEDULE_EVENT] = state
    for state in BookingState:
        table[state][BookingEvent.RESET] = BookingState.IDLE
    return table


BOOKING_TRANSITIONS = _build_transitions()

# Payload fields that identify an applied event; a replay must agree on them
REPLAY_IDENTITY_FIELDS: dict[BookingEvent, tuple[str, ...]] = {
    BookingEvent.SELECT_SESSION_TYPE: ("builder_id", "session_type_id"),
    BookingEvent.SCHEDULE_EVENT: ("scheduling_event_uri", "scheduling_invitee_uri"),
    BookingEvent.PAYMENT_PENDING: ("payment_session_id",),
    BookingEvent.PAYMENT_PROCESSING: ("payment_intent_id",),
    BookingEvent.PAYMENT_SUCCEEDED: ("payment_session_id", "payment_intent_id"),
    BookingEvent.PAYMENT_FAILED: ("error_code",),
    BookingEvent.RESCHEDULE_EVENT: ("scheduling_event_uri",),
}


@dataclass(frozen=True)
class BookingContext:
    """Read-only snapshot of the booking fields guards depend on."""

    booking_id: str | None = None
    amount: int = 0
    currency: str = "usd"
    scheduling_event_uri: str | None = None
    start_time: datetime | None = None
    payment_session_id: str | None = None
    payment_intent_id: str | None = None

    @property
    def is_free(self) -> bool:
        return self.amount <= 0


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one event, including any automatic follow-up steps.

    ``path`` lists every state entered in order; ``state`` is the last one.
    ``updates`` holds booking fields to persist alongside the new state.
    """

    from_state: BookingState
    state: BookingState
    path: tuple[BookingState, ...]
    effects: tuple[Effect, ...] = ()
    updates: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Step:
    path: list[BookingState]
    effects: list[Effect] = field(default_factory=list)
    updates: dict[str, Any] = field(default_factory=dict)


def _require(payload: Mapping[str, Any], *names: str) -> None:
    missing = [name for name in names if not payload.get(name)]
    if missing:
        raise MissingPrerequisite(f"Missing required fields: {', '.join(missing)}", missing)


def _pick(payload: Mapping[str, Any], *names: str) -> dict[str, Any]:
    return {name: payload[name] for name in names if payload.get(name) is not None}


def _select_session_type(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    _require(payload, "builder_id", "session_type_id")
    booking_id = payload.get("booking_id") or ctx.booking_id
    if not booking_id:
        raise MissingPrerequisite("Missing required fields: booking_id", ["booking_id"])
    updates = {"id": booking_id}
    updates.update(_pick(payload, "builder_id", "session_type_id", "client_id", "amount", "currency"))
    return _Step([target], updates=updates)


def _initiate_scheduling(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    if not ctx.booking_id:
        raise MissingPrerequisite("Booking has no id", ["booking_id"])
    return _Step([target])


def _schedule_event(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    _require(payload, "scheduling_event_uri", "scheduling_invitee_uri")
    updates = _pick(
        payload,
        "scheduling_event_uri",
        "scheduling_invitee_uri",
        "start_time",
        "end_time",
        "client_email",
    )
    if ctx.is_free:
        # Free sessions never enter the payment branch
        return _Step(
            [target, BookingState.BOOKING_CONFIRMED],
            effects=[Effect.SEND_BOOKING_CONFIRMATION],
            updates=updates,
        )
    return _Step([target], updates=updates)


def _initiate_payment(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    if ctx.is_free:
        raise MissingPrerequisite("Session type is free and takes no payment", ["amount"])
    return _Step([target])


def _payment_pending(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    _require(payload, "payment_session_id")
    return _Step([target], updates=_pick(payload, "payment_session_id"))


def _payment_processing(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    return _Step([target], updates=_pick(payload, "payment_intent_id"))


def _payment_succeeded(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    if not ctx.scheduling_event_uri:
        raise MissingPrerequisite(
            "Payment cannot succeed for a booking without a scheduled event",
            ["scheduling_event_uri"],
        )
    return _Step(
        [target, BookingState.BOOKING_CONFIRMED],
        effects=[Effect.SEND_BOOKING_CONFIRMATION],
        updates=_pick(payload, "payment_intent_id"),
    )


def _payment_failed(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    _require(payload, "error_code", "error_message")
    updates = {
        "last_error_code": payload["error_code"],
        "last_error_message": payload["error_message"],
        "last_error_at": payload.get("occurred_at"),
    }
    updates.update(_pick(payload, "payment_intent_id"))
    return _Step([target], effects=[Effect.SEND_PAYMENT_FAILED_NOTICE], updates=updates)


def _request_cancellation(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    effects: list[Effect] = []
    if state in PAID_STATES:
        effects.append(Effect.REFUND_PAYMENT)
    updates = _pick(payload, "reason")
    if "reason" in updates:
        updates["cancellation_reason"] = updates.pop("reason")

    provider_cancelled = payload.get("source") == SOURCE_SCHEDULING_PROVIDER
    if ctx.scheduling_event_uri and not provider_cancelled:
        effects.append(Effect.CANCEL_SCHEDULED_EVENT)
        return _Step([target], effects=effects, updates=updates)

    # Nothing left to cancel externally
    effects.append(Effect.SEND_CANCELLATION_NOTICE)
    updates["cancelled_at"] = payload.get("occurred_at")
    return _Step([target, BookingState.CANCELLED], effects=effects, updates=updates)


def _confirm_cancellation(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    return _Step(
        [target],
        effects=[Effect.SEND_CANCELLATION_NOTICE],
        updates={"cancelled_at": payload.get("occurred_at")},
    )


def _reschedule_event(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    _require(payload, "scheduling_event_uri", "start_time")
    updates = _pick(
        payload, "scheduling_event_uri", "scheduling_invitee_uri", "start_time", "end_time"
    )
    updates["rescheduled_from"] = payload.get("previous_start_time") or ctx.start_time
    return _Step([target], updates=updates)


def _reset(
    state: BookingState, target: BookingState, payload: Mapping[str, Any], ctx: BookingContext
) -> _Step:
    effects = [Effect.REFUND_PAYMENT] if state in PAID_STATES else []
    # A restarted flow must not match the previous flow's provider events
    updates = {name: None for name in RESET_CLEARED_FIELDS}
    return _Step([target], effects=effects, updates=updates)



_Handler = Callable[[BookingState, BookingState, Mapping[str, Any], BookingContext], _Step]

_HANDLERS: dict[BookingEvent, _Handler] = {
    BookingEvent.SELECT_SESSION_TYPE: _select_session_type,
    BookingEvent.INITIATE_SCHEDULING: _initiate_scheduling,
    BookingEvent.SCHEDULE_EVENT: _schedule_event,
    BookingEvent.INITIATE_PAYMENT: _initiate_payment,
    BookingEvent.PAYMENT_PENDING: _payment_pending,
    BookingEvent.PAYMENT_PROCESSING: _payment_processing,
    BookingEvent.PAYMENT_SUCCEEDED: _payment_succeeded,
    BookingEvent.PAYMENT_FAILED: _payment_failed,
    BookingEvent.REQUEST_CANCELLATION: _request_cancellation,
    BookingEvent.CONFIRM_CANCELLATION: _confirm_cancellation,
    BookingEvent.RESCHEDULE_EVENT: _reschedule_event,
    BookingEvent.RESET: _reset,
}


def transition(
    state: BookingState | str,
    event: BookingEvent | str,
    payload: Mapping[str, Any] | None = None,
    context: BookingContext | None = None,
) -> TransitionResult:
    """Apply one event to a state.

    Raises:
        IllegalTransition: the pair is not in the transition table
        MissingPrerequisite: the payload or booking lacks required data
    """
    try:
        state = BookingState(state)
        event = BookingEvent(event)
    except ValueError:
        raise IllegalTransition(str(getattr(state, "value", state)), str(getattr(event, "value", event)))

    target = BOOKING_TRANSITIONS[state].get(event)
    if target is None:
        raise IllegalTransition(state.value, event.value)

    step = _HANDLERS[event](state, target, payload or {}, context or BookingContext())
    return TransitionResult(
        from_state=state,
        state=step.path[-1],
        path=tuple(step.path),
        effects=tuple(step.effects),
        updates=step.updates,
    )


def allowed_events(state: BookingState | str) -> frozenset[BookingEvent]:
    return frozenset(BOOKING_TRANSITIONS[BookingState(state)])


def is_terminal(state: BookingState | str) -> bool:
    return BookingState(state) in TERMINAL_STATES


def is_retryable(state: BookingState | str) -> bool:
    """Whether the flow can continue from a failure state."""
    return BookingState(state) in RETRYABLE_STATES
