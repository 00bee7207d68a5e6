from enum import Enum


class ConversationStatus(str, Enum):
    AWAITING_RESPONSE = "awaiting_response"
    ACTIVE = "active"
    CLOSED = "closed"
    ERROR = "error"


VALID_TRANSITIONS = {
    ConversationStatus.AWAITING_RESPONSE: frozenset({ConversationStatus.ACTIVE, ConversationStatus.CLOSED}),
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.CLOSED, ConversationStatus.ERROR}),
    ConversationStatus.ERROR: frozenset({ConversationStatus.ACTIVE, ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset(),
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationStatus, to_state: ConversationStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationStatus, to_state: ConversationStatus) -> bool:
    """Check if transition is valid."""
    return to_state in VALID_TRANSITIONS[from_state]


def transition(from_state: ConversationStatus, to_state: ConversationStatus) -> ConversationStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: ConversationStatus) -> bool:
    return not VALID_TRANSITIONS[state]


def activate(current_state: ConversationStatus) -> ConversationStatus:
    """Customer replied (or conversation recovered from an error)."""
    return transition(current_state, ConversationStatus.ACTIVE)


def close(current_state: ConversationStatus) -> ConversationStatus:
    return transition(current_state, ConversationStatus.CLOSED)


def mark_error(current_state: ConversationStatus) -> ConversationStatus:
    return transition(current_state, ConversationStatus.ERROR)
