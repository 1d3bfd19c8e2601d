"""
Result of a single transport operation, and the rule that decides
whether a failure keeps or destroys the socket involved.
"""

import enum
from dataclasses import dataclass
from typing import Any

from .exceptions import IPCError, IPCInterruptedError, IPCMessageSizeError


class Status(enum.Enum):
    OK = "ok"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """What happened to one send or receive.

    ``payload`` is the operation's return value on success (``None``
    for a receive that timed out); ``error`` is the exception on
    failure.
    """

    status: Status
    payload: Any = None
    error: BaseException | None = None

    @classmethod
    def success(cls, payload: Any = None) -> "Outcome":
        return cls(Status.OK, payload=payload)

    @classmethod
    def failure(cls, error: BaseException) -> "Outcome":
        return cls(classify(error), error=error)

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    @property
    def fatal(self) -> bool:
        return self.status is Status.FATAL


def classify(error: BaseException) -> Status:
    """Interruptions and oversized frames leave the socket usable;
    every other transport failure is fatal for it."""
    if isinstance(error, (IPCInterruptedError, InterruptedError, IPCMessageSizeError)):
        return Status.TRANSIENT
    return Status.FATAL


def attempt(operation, *args) -> Outcome:
    """Run ``operation(*args)`` and capture transport failures.

    Only :class:`~farm_ipc.exceptions.IPCError` and :class:`OSError`
    are captured; anything else is a bug and propagates.
    """
    try:
        return Outcome.success(operation(*args))
    except (IPCError, OSError) as exc:
        return Outcome.failure(exc)
