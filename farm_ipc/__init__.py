"""
farm_ipc: Farm Process Messaging
================================

Lightweight messaging between the worker processes of a data-acquisition
farm and their collector, over shared memory on one host.

Three channels are used: workers push lifecycle *state* and runtime
*statistics* to the collector, and the collector pushes *commands* to
the workers.  There are no delivery guarantees; every operation
degrades to a silent no-op or an empty result when the transport is
unavailable.

Quick start::

    from farm_ipc import ChannelRegistry, State, Transport

    # Worker
    with Transport() as transport, ChannelRegistry(transport) as ipc:
        ipc.update_state(State.RUNNING)
        ipc.send_statistics("EventsProcessed", "1024")
        ipc.send_error_message("L1 trigger timeout")
        command = ipc.get_next_command()     # blocks until one arrives

    # Collector
    with Transport() as transport, ChannelRegistry(transport, timeout=1.0) as ipc:
        ipc.send_command("REBOOT")
        state = ipc.try_to_receive_state()          # State.TIMEOUT if none
        stats = ipc.try_to_receive_statistics()     # "" if none
"""

__version__ = "1.0.0"

from .config import ChannelAddresses
from .registry import ChannelRegistry, Handle
from .state import State
from .messages import ERROR_MESSAGE_TAG, parse_statistics, is_error_message
from .transport import Transport, Socket, SocketType
from .outcome import Outcome, Status
from .exceptions import (
    IPCError,
    IPCConnectionError,
    IPCTimeoutError,
    IPCMessageSizeError,
    IPCInterruptedError,
    IPCTerminatedError,
    IPCClosedError,
)
from .core import force_unlink
from .utils import list_segments, segment_name

__all__ = [
    # Channels
    "ChannelRegistry",
    "ChannelAddresses",
    "Handle",
    "State",
    "ERROR_MESSAGE_TAG",
    "parse_statistics",
    "is_error_message",
    # Transport
    "Transport",
    "Socket",
    "SocketType",
    "Outcome",
    "Status",
    # Exceptions
    "IPCError",
    "IPCConnectionError",
    "IPCTimeoutError",
    "IPCMessageSizeError",
    "IPCInterruptedError",
    "IPCTerminatedError",
    "IPCClosedError",
    # Utilities
    "force_unlink",
    "list_segments",
    "segment_name",
]
