from frontdesk.services.result import Result
from frontdesk.services.state_machine import (
    InvalidTransitionError,
    TicketState,
    can_transition,
    transition,
)

__all__ = [
    "Result",
    "TicketState",
    "InvalidTransitionError",
    "can_transition",
    "transition",
]
