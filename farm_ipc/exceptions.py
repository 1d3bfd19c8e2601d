"""
Custom exceptions for the farm_ipc library.

All exceptions inherit from IPCError so callers can catch
everything with a single except clause if needed.  The channel
registry never lets any of them escape; they are raised by the
transport layer and classified by :mod:`farm_ipc.outcome`.
"""


class IPCError(Exception):
    """Base exception for all farm_ipc errors."""


class IPCConnectionError(IPCError):
    """Raised when a shared memory segment cannot be created or attached,
    or when a bound segment was taken over by another process.

    Example::

        try:
            sock.bind("farm-state")
        except IPCConnectionError as e:
            print(f"Cannot bind: {e}")
    """


class IPCTimeoutError(IPCError):
    """Raised when a cross-process lock cannot be acquired in time."""


class IPCMessageSizeError(IPCError, ValueError):
    """Raised when a frame does not fit into a ring-buffer slot.

    Example::

        try:
            sock.send(b"x" * 100_000)
        except IPCMessageSizeError:
            print("Frame too large for this channel")
    """


class IPCInterruptedError(IPCError):
    """Raised when a blocking receive is interrupted by
    :meth:`~farm_ipc.transport.Transport.interrupt`.

    The socket stays usable; the caller may retry immediately.
    """


class IPCTerminatedError(IPCError):
    """Raised when the transport is stopped, or not running, while a
    socket operation is attempted or in progress."""


class IPCClosedError(IPCError):
    """Raised when an operation is attempted on a closed socket."""
