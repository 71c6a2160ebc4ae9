"""Core types shared by the controller and the fluid layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

__all__ = [
    "State",
    "RunAsUser",
    "INDEFINITE",
]

# Value of ``ProcessController.paused_until`` while paused with no timer.
INDEFINITE = datetime.max.replace(tzinfo=timezone.utc)


class State(str, Enum):
    """Logical state of a ProcessController.

    This is the state of the controller, not a live view of the OS process:
    STARTED does not guarantee the process is still alive, and ABORTED does
    not guarantee it has already died.
    """

    NOT_STARTED = "not_started"
    STARTED = "started"
    EXITED = "exited"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (State.EXITED, State.ABORTED)


@dataclass(frozen=True)
class RunAsUser:
    """Credentials used to run the command as a different user.

    Attributes:
        username: Account to run as (required)
        password: Password for the account
        load_profile: Whether the user profile should be loaded
        domain: Account domain
    """

    username: str
    password: str = field(default="", repr=False)
    load_profile: bool = False
    domain: str | None = None

    def __post_init__(self) -> None:
        if not self.username:
            raise ValueError("username is required")
