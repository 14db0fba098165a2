"""Client authentication state machine.

Tracks where one client is in the login flow. ``transition`` is a pure
function over a fixed table; ``AuthStateMachine`` holds the current state
for one client and only moves it through ``transition``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class AuthState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    TWO_FACTOR_PENDING = "two_factor_pending"
    AUTHENTICATED = "authenticated"


class AuthEvent(Enum):
    LOGIN_SUCCEEDED = "login_succeeded"
    TWO_FACTOR_REQUIRED = "two_factor_required"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    TWO_FACTOR_FAILED = "two_factor_failed"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SESSION_EXPIRED = "session_expired"


@dataclass(frozen=True)
class TransitionResult:
    """Result of a state transition attempt.

    Attributes:
        success: Whether the transition was valid
        from_state: The state before the transition attempt
        to_state: The state after transition (None if failed)
        error: Error message if transition failed
    """

    success: bool
    from_state: AuthState
    to_state: AuthState | None
    error: str | None = None


# Valid transitions: (current_state, event) → next_state
_TRANSITIONS: dict[tuple[AuthState, AuthEvent], AuthState] = {
    # From UNAUTHENTICATED
    (AuthState.UNAUTHENTICATED, AuthEvent.LOGIN_SUCCEEDED): AuthState.AUTHENTICATED,
    (AuthState.UNAUTHENTICATED, AuthEvent.TWO_FACTOR_REQUIRED): AuthState.TWO_FACTOR_PENDING,
    (AuthState.UNAUTHENTICATED, AuthEvent.LOGIN_FAILED): AuthState.UNAUTHENTICATED,
    (AuthState.UNAUTHENTICATED, AuthEvent.LOGOUT): AuthState.UNAUTHENTICATED,
    (AuthState.UNAUTHENTICATED, AuthEvent.SESSION_EXPIRED): AuthState.UNAUTHENTICATED,
    # From TWO_FACTOR_PENDING
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.TWO_FACTOR_VERIFIED): AuthState.AUTHENTICATED,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.TWO_FACTOR_FAILED): AuthState.TWO_FACTOR_PENDING,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.TWO_FACTOR_REQUIRED): AuthState.TWO_FACTOR_PENDING,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.LOGIN_SUCCEEDED): AuthState.AUTHENTICATED,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.LOGIN_FAILED): AuthState.UNAUTHENTICATED,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.LOGOUT): AuthState.UNAUTHENTICATED,
    (AuthState.TWO_FACTOR_PENDING, AuthEvent.SESSION_EXPIRED): AuthState.UNAUTHENTICATED,
    # From AUTHENTICATED
    (AuthState.AUTHENTICATED, AuthEvent.LOGIN_SUCCEEDED): AuthState.AUTHENTICATED,
    (AuthState.AUTHENTICATED, AuthEvent.TWO_FACTOR_REQUIRED): AuthState.TWO_FACTOR_PENDING,
    (AuthState.AUTHENTICATED, AuthEvent.LOGIN_FAILED): AuthState.UNAUTHENTICATED,
    (AuthState.AUTHENTICATED, AuthEvent.LOGOUT): AuthState.UNAUTHENTICATED,
    (AuthState.AUTHENTICATED, AuthEvent.SESSION_EXPIRED): AuthState.UNAUTHENTICATED,
}


def transition(state: AuthState, event: AuthEvent) -> TransitionResult:
    """Compute the next state for ``event`` without side effects."""
    to_state = _TRANSITIONS.get((state, event))
    if to_state is None:
        return TransitionResult(
            success=False,
            from_state=state,
            to_state=None,
            error=f"Event {event.name} not valid in state {state.name}",
        )
    return TransitionResult(success=True, from_state=state, to_state=to_state)


class AuthStateMachine:
    """Holds one client's AuthState."""

    def __init__(self, initial_state: AuthState = AuthState.UNAUTHENTICATED) -> None:
        self._state = initial_state

    @property
    def current_state(self) -> AuthState:
        return self._state

    def can_accept(self, event: AuthEvent) -> bool:
        return (self._state, event) in _TRANSITIONS

    def send(self, event: AuthEvent) -> TransitionResult:
        """Apply ``event``; the state is unchanged when the transition is invalid."""
        result = transition(self._state, event)
        if result.success and result.to_state is not None:
            self._state = result.to_state
        return result
