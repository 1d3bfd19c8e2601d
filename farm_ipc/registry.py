"""
Channel registry: state, statistics and command channels of a farm
process.

A worker reports its lifecycle state and runtime statistics and waits
for commands; the collector receives state and statistics and issues
commands.  Both use the same :class:`ChannelRegistry`.  Which sockets a
process needs is decided by the first operation it performs:

    ==========  ====================================  ====================
    Role        Sockets                               Established by
    ==========  ====================================  ====================
    client      state sender, statistics sender,      update_state,
                command receiver (all connect)        send_statistics,
                                                      get_next_command
    server      state receiver, statistics receiver,  try_to_receive_*,
                command sender (all bind)             send_command,
                                                      set_timeout
    ==========  ====================================  ====================

A process may hold both roles.  Nothing here raises on transport
trouble: sends report ``False``, receives return ``""`` or
``State.TIMEOUT``.  A socket that fails fatally is destroyed and
re-created by the next operation that needs it.

Usage::

    # Worker
    with Transport() as transport, ChannelRegistry(transport) as ipc:
        ipc.update_state(State.RUNNING)
        ipc.send_statistics("EventsProcessed", "1024")
        command = ipc.get_next_command()      # blocks

    # Collector
    with Transport() as transport, ChannelRegistry(transport) as ipc:
        ipc.set_timeout(1.0)
        ipc.send_command("REBOOT")
        state = ipc.try_to_receive_state()
"""

import enum
import logging
import threading

from .config import ChannelAddresses
from .exceptions import IPCError
from .messages import (
    ERROR_MESSAGE_TAG,
    encode_statistics,
    encode_command,
    decode_text,
    decode_command,
)
from .outcome import Outcome, Status, attempt
from .state import State, encode_state, decode_state
from .transport import Socket, SocketType, Transport

logger = logging.getLogger("farmipc.registry")


class Handle(enum.Enum):
    STATE_SENDER = "state-sender"
    STATISTICS_SENDER = "statistics-sender"
    COMMAND_RECEIVER = "command-receiver"
    STATE_RECEIVER = "state-receiver"
    STATISTICS_RECEIVER = "statistics-receiver"
    COMMAND_SENDER = "command-sender"


CLIENT_HANDLES = (Handle.COMMAND_RECEIVER, Handle.STATE_SENDER, Handle.STATISTICS_SENDER)
SERVER_HANDLES = (Handle.STATE_RECEIVER, Handle.STATISTICS_RECEIVER, Handle.COMMAND_SENDER)

# handle -> (socket type, channel, binds)
_LAYOUT = {
    Handle.STATE_SENDER: (SocketType.PUSH, "state", False),
    Handle.STATISTICS_SENDER: (SocketType.PUSH, "statistics", False),
    Handle.COMMAND_RECEIVER: (SocketType.PULL, "command", False),
    Handle.STATE_RECEIVER: (SocketType.PULL, "state", True),
    Handle.STATISTICS_RECEIVER: (SocketType.PULL, "statistics", True),
    Handle.COMMAND_SENDER: (SocketType.PUSH, "command", True),
}

# Only these receivers honour the configured receive timeout.
_TIMED_HANDLES = (Handle.STATISTICS_RECEIVER, Handle.STATE_RECEIVER)


class ChannelRegistry:
    """The six channel sockets of one process plus its current state.

    Create one per process and pass it to whatever needs channel
    access.  Sockets are opened lazily and released by
    :meth:`shutdown`; after a shutdown the registry behaves like a new
    one.  Calls into the same channel from several threads must be
    serialised by the caller.

    Args:
        transport: A :class:`~farm_ipc.transport.Transport` (or any object
                   with ``is_running``, ``socket()`` and
                   ``destroy_socket()``).
        addresses: Channel addresses; defaults to the well-known ones.
        timeout:   Receive timeout in seconds for the state and
                   statistics receivers.  ``None`` blocks indefinitely.
    """

    def __init__(
        self,
        transport: Transport,
        addresses: ChannelAddresses | None = None,
        timeout: float | None = None,
    ):
        self._transport = transport
        self._addresses = addresses or ChannelAddresses()
        self._timeout = timeout
        self._current_state = State.OFF
        self._sockets: dict[Handle, Socket | None] = dict.fromkeys(Handle)
        self._client_ready = False
        self._server_ready = False
        self._role_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def addresses(self) -> ChannelAddresses:
        return self._addresses

    @property
    def current_state(self) -> State:
        """The last state passed to :meth:`update_state`."""
        return self._current_state

    @property
    def timeout(self) -> float | None:
        return self._timeout

    @property
    def has_client_role(self) -> bool:
        return self._client_ready

    @property
    def has_server_role(self) -> bool:
        return self._server_ready

    def handles(self) -> frozenset:
        """Return the handles that currently hold an open socket."""
        return frozenset(h for h, sock in self._sockets.items() if sock is not None)

    # ------------------------------------------------------------------
    # Roles and lifecycle
    # ------------------------------------------------------------------

    def ensure_client_role(self) -> bool:
        """Open whichever client sockets are missing and connect them.

        Returns ``False`` if the transport is not running or a socket
        could not be opened.  A no-op once the role is established.
        """
        with self._role_lock:
            if not self._client_ready:
                self._client_ready = self._establish(CLIENT_HANDLES)
                if self._client_ready:
                    logger.info("Client role established on %s", self._addresses)
            return self._client_ready

    def ensure_server_role(self) -> bool:
        """Open whichever server sockets are missing and bind them.

        Returns ``False`` if the transport is not running or a socket
        could not be opened.  A no-op once the role is established.
        """
        with self._role_lock:
            if not self._server_ready:
                self._server_ready = self._establish(SERVER_HANDLES)
                if self._server_ready:
                    logger.info("Server role established on %s", self._addresses)
            return self._server_ready

    def set_timeout(self, seconds: float | None) -> bool:
        """Apply a receive timeout to the state and statistics receivers.

        The value is remembered and also applied to receivers opened
        later.  Returns ``False`` if the server role is needed and could
        not be established.
        """
        self._timeout = seconds
        if (
            self._sockets[Handle.STATISTICS_RECEIVER] is None
            and not self.ensure_server_role()
        ):
            return False
        for handle in _TIMED_HANDLES:
            sock = self._sockets[handle]
            if sock is not None:
                sock.set_timeout(seconds)
        return True

    def shutdown(self) -> None:
        """Destroy all six sockets.  Absent ones are skipped."""
        for handle in Handle:
            self._destroy(handle)
        self._client_ready = self._server_ready = False
        logger.info("Channel registry shut down")

    # ------------------------------------------------------------------
    # State channel
    # ------------------------------------------------------------------

    def update_state(self, state: State) -> bool:
        """Record *state* locally, then report it to the collector.

        The local state is updated even when the report cannot be sent.
        ``State.TIMEOUT`` and unknown ordinals are not lifecycle states:
        they are logged and dropped, and the local state stays as it was.
        """
        try:
            state = State(state)
        except (ValueError, TypeError):
            logger.warning("Ignoring unknown state %r", state)
            return False
        if state is State.TIMEOUT:
            logger.warning("Ignoring State.TIMEOUT, it is only ever received")
            return False
        self._current_state = state
        if not self._transport.is_running or not self.ensure_client_role():
            return False
        return self._delivered(self._send(Handle.STATE_SENDER, encode_state(state)))

    def try_to_receive_state(self) -> State:
        """Receive one state report, or ``State.TIMEOUT`` if none arrived."""
        if not self._transport.is_running or not self.ensure_server_role():
            return State.TIMEOUT
        outcome = self._receive(Handle.STATE_RECEIVER)
        if not outcome.ok or outcome.payload is None:
            return State.TIMEOUT
        return decode_state(outcome.payload)

    # ------------------------------------------------------------------
    # Statistics channel
    # ------------------------------------------------------------------

    def send_statistics(self, name: str, value: str) -> bool:
        """Send ``name:value`` to the collector, fire-and-forget.

        Empty *name* or *value* is rejected without touching the
        transport.
        """
        if not name or not value:
            return False
        try:
            frame = encode_statistics(name, value)
        except UnicodeEncodeError as exc:
            logger.warning("Dropping statistics entry %r: %s", name, exc)
            return False
        if not self._transport.is_running or not self.ensure_client_role():
            return False
        return self._delivered(self._send(Handle.STATISTICS_SENDER, frame))

    def send_error_message(self, text: str) -> bool:
        return self.send_statistics(ERROR_MESSAGE_TAG, text)

    def try_to_receive_statistics(self) -> str:
        """Receive one ``name:value`` frame, or ``""`` if none arrived."""
        if not self._transport.is_running or not self.ensure_server_role():
            return ""
        outcome = self._receive(Handle.STATISTICS_RECEIVER)
        if not outcome.ok or outcome.payload is None:
            return ""
        return decode_text(outcome.payload)

    # ------------------------------------------------------------------
    # Command channel
    # ------------------------------------------------------------------

    def send_command(self, command: str) -> bool:
        """Push *command* to the next worker waiting in
        :meth:`get_next_command`."""
        if not command:
            return False
        try:
            frame = encode_command(command)
        except UnicodeEncodeError as exc:
            logger.warning("Dropping command %r: %s", command, exc)
            return False
        if not self._transport.is_running or not self.ensure_server_role():
            return False
        return self._delivered(self._send(Handle.COMMAND_SENDER, frame))

    def get_next_command(self) -> str:
        """Block until a command arrives.

        Ignores the configured timeout.  Returns ``""`` if the transport
        is unavailable or the receive failed; after an interruption the
        caller may simply call again.
        """
        if not self._transport.is_running or not self.ensure_client_role():
            return ""
        outcome = self._receive(Handle.COMMAND_RECEIVER)
        if not outcome.ok or outcome.payload is None:
            return ""
        return decode_command(outcome.payload)

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "ChannelRegistry":
        return self

    def __exit__(self, *_) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _establish(self, handles) -> bool:
        if not self._transport.is_running:
            return False
        for handle in handles:
            if self._sockets[handle] is not None:
                continue
            try:
                self._sockets[handle] = self._open(handle)
            except (IPCError, OSError) as exc:
                logger.warning("Could not open %s: %s", handle.value, exc)
                return False
        return True

    def _open(self, handle: Handle) -> Socket:
        kind, channel, binds = _LAYOUT[handle]
        address = getattr(self._addresses, channel)
        sock = self._transport.socket(kind)
        try:
            if binds:
                sock.bind(address)
            else:
                sock.connect(address)
            if handle in _TIMED_HANDLES and self._timeout is not None:
                sock.set_timeout(self._timeout)
        except BaseException:
            self._transport.destroy_socket(sock)
            raise
        logger.debug("Opened %s on '%s'", handle.value, address)
        return sock

    def _destroy(self, handle: Handle) -> None:
        sock, self._sockets[handle] = self._sockets[handle], None
        if sock is None:
            return
        if handle in CLIENT_HANDLES:
            self._client_ready = False
        else:
            self._server_ready = False
        self._transport.destroy_socket(sock)

    def _send(self, handle: Handle, frame: bytes) -> Outcome:
        return self._recover(handle, attempt(self._sockets[handle].send, frame))

    def _receive(self, handle: Handle) -> Outcome:
        return self._recover(handle, attempt(self._sockets[handle].recv))

    def _recover(self, handle: Handle, outcome: Outcome) -> Outcome:
        if outcome.status is Status.FATAL:
            logger.warning(
                "Fatal error on %s, socket dropped: %s", handle.value, outcome.error
            )
            self._destroy(handle)
        elif outcome.status is Status.TRANSIENT:
            logger.debug("Transient error on %s: %s", handle.value, outcome.error)
        return outcome

    @staticmethod
    def _delivered(outcome: Outcome) -> bool:
        return outcome.ok and bool(outcome.payload)

    def __repr__(self) -> str:
        present = ", ".join(sorted(h.value for h in self.handles()))
        return f"ChannelRegistry(state={self._current_state.name}, sockets=[{present}])"
