from enum import Enum


class TicketState(str, Enum):
    NONE = "none"
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    DENIED = "denied"
    EXPIRED = "expired"
    TOPIC_CHANGED = "topic_changed"
    ABANDONED = "abandoned"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {
        TicketState.CONFIRMED,
        TicketState.DENIED,
        TicketState.EXPIRED,
        TicketState.TOPIC_CHANGED,
        TicketState.ABANDONED,
        TicketState.FAILED,
    }
)

VALID_TRANSITIONS = {
    TicketState.NONE: [TicketState.PROPOSED],
    TicketState.PROPOSED: [
        TicketState.CONFIRMED,
        TicketState.DENIED,
        TicketState.EXPIRED,
        TicketState.TOPIC_CHANGED,
        TicketState.ABANDONED,
        TicketState.FAILED,
    ],
    **{state: [TicketState.NONE] for state in TERMINAL_STATES},
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: TicketState, to_state: TicketState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: TicketState, to_state: TicketState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: TicketState, to_state: TicketState) -> TicketState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def propose(current_state: TicketState) -> TicketState:
    """Ticket payload extracted, waiting for the resident's yes/no."""
    return transition(current_state, TicketState.PROPOSED)


def confirm(current_state: TicketState) -> TicketState:
    return transition(current_state, TicketState.CONFIRMED)


def deny(current_state: TicketState) -> TicketState:
    return transition(current_state, TicketState.DENIED)


def expire(current_state: TicketState) -> TicketState:
    return transition(current_state, TicketState.EXPIRED)


def change_topic(current_state: TicketState) -> TicketState:
    return transition(current_state, TicketState.TOPIC_CHANGED)


def abandon(current_state: TicketState) -> TicketState:
    """Operator took over, conversation muted or reset."""
    return transition(current_state, TicketState.ABANDONED)


def fail(current_state: TicketState) -> TicketState:
    """Dispatch to the human channel failed."""
    return transition(current_state, TicketState.FAILED)


def settle(current_state: TicketState) -> TicketState:
    """Return a finished ticket flow to NONE."""
    return transition(current_state, TicketState.NONE)
