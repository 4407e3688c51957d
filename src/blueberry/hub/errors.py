"""Exception taxonomy for talking to the hub."""

from __future__ import annotations

from typing import Any


class HubError(Exception):
    """Base class for every hub communication failure."""


class InvalidAuthError(HubError):
    """The hub rejected the supplied credentials (``auth_invalid``).

    Fatal for the connection attempt: it is never retried automatically.
    """


class NoCredentialsError(HubError):
    """A (re)authentication was requested but no access token is available."""


class NotConnectedError(HubError):
    """A command was issued while no authenticated socket is open."""


class ConnectionLostError(HubError):
    """The socket closed while a command was awaiting its result."""


class CommandError(HubError):
    """The hub answered a command with ``success: false``."""

    def __init__(self, command_id: int, code: Any, message: Any) -> None:
        self.command_id = command_id
        self.code = code
        super().__init__(f"Command {command_id} failed: {code!r} ({message!r})")
