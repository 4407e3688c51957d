"""Reconnect state machine for a single socket connection attempt.

The machine is a pure function over an immutable :class:`ReconnectState`.
The socket connector feeds it :class:`SocketEvent` values and carries out
the returned :class:`Action`; timers and sockets stay outside, so the
transitions can be exercised without either.

States: ``closed → connecting → awaiting_auth → authenticated`` and back to
``closed`` on any close/error.  ``retry_count`` counts attempts since the
last ``auth_ok`` and drives the quadratic delay
``base + retry_count² × unit``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace


class SocketState(enum.StrEnum):
    CLOSED = "closed"
    CONNECTING = "connecting"
    AWAITING_AUTH = "awaiting_auth"
    AUTHENTICATED = "authenticated"


class SocketEvent(enum.StrEnum):
    ATTEMPT = "attempt"
    OPENED = "opened"
    AUTH_OK = "auth_ok"
    AUTH_INVALID = "auth_invalid"
    CLOSED = "closed"


class Action(enum.StrEnum):
    NONE = "none"
    OPEN_SOCKET = "open_socket"
    SEND_AUTH = "send_auth"
    RESOLVE = "resolve"
    REJECT = "reject"
    SCHEDULE_RETRY = "schedule_retry"


@dataclass(frozen=True)
class Backoff:
    """Quadratic reconnect delay in seconds."""

    base: float = 0.0
    unit: float = 1.0

    def delay(self, retry_count: int) -> float:
        return self.base + retry_count * retry_count * self.unit


@dataclass(frozen=True)
class ReconnectState:
    state: SocketState = SocketState.CLOSED
    retry_count: int = 0
    invalid_auth: bool = False


@dataclass(frozen=True)
class Transition:
    state: ReconnectState
    action: Action
    delay: float | None = None


_OPEN_STATES = (SocketState.CONNECTING, SocketState.AWAITING_AUTH)


def transition(current: ReconnectState, event: SocketEvent, backoff: Backoff) -> Transition:
    """Return the next state and the side effect the connector must perform."""
    if event is SocketEvent.ATTEMPT:
        if current.state is SocketState.CLOSED and not current.invalid_auth:
            return Transition(
                replace(current, state=SocketState.CONNECTING, retry_count=current.retry_count + 1),
                Action.OPEN_SOCKET,
            )
        return Transition(current, Action.NONE)

    if event is SocketEvent.OPENED:
        if current.state is SocketState.CONNECTING:
            return Transition(replace(current, state=SocketState.AWAITING_AUTH), Action.SEND_AUTH)
        return Transition(current, Action.NONE)

    if event is SocketEvent.AUTH_OK:
        if current.state is SocketState.AWAITING_AUTH:
            return Transition(
                replace(
                    current, state=SocketState.AUTHENTICATED, retry_count=0, invalid_auth=False
                ),
                Action.RESOLVE,
            )
        return Transition(current, Action.NONE)

    if event is SocketEvent.AUTH_INVALID:
        if current.state in _OPEN_STATES:
            return Transition(
                replace(current, state=SocketState.CLOSED, invalid_auth=True), Action.REJECT
            )
        return Transition(current, Action.NONE)

    # SocketEvent.CLOSED
    if current.state in _OPEN_STATES:
        closed = replace(current, state=SocketState.CLOSED)
        if current.invalid_auth:
            return Transition(closed, Action.REJECT)
        return Transition(closed, Action.SCHEDULE_RETRY, backoff.delay(current.retry_count))
    if current.state is SocketState.AUTHENTICATED:
        # The socket belongs to the connection now; its closure is not ours to handle.
        return Transition(replace(current, state=SocketState.CLOSED), Action.NONE)
    return Transition(current, Action.NONE)
