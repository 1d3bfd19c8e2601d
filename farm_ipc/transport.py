"""
Push / pull sockets over shared memory for farm_ipc.

Each channel address is backed by one ring-buffer segment.  The side
that *binds* an address creates the segment and owns it; the side
that *connects* attaches lazily, so connecting never fails because
the peer is not up yet.  Several processes may push into one bound
pull socket (workers reporting to a collector) or pull from one bound
push socket (workers taking commands); a per-address
:class:`~farm_ipc.sync.ChannelLock` serialises every pointer update.

Usage::

    # Collector
    with Transport() as transport:
        pull = transport.socket(SocketType.PULL)
        pull.bind("farm-statistics")
        pull.set_timeout(1.0)
        frame = pull.recv()          # None on timeout

    # Worker
    with Transport() as transport:
        push = transport.socket(SocketType.PUSH)
        push.connect("farm-statistics")
        push.send(b"EventBuilder:42")
"""

import atexit
import enum
import logging
from multiprocessing import shared_memory

from .core import create_segment, try_attach_segment, close_segment, is_closed
from .buffer import write_message, read_message, get_stats
from .sync import ChannelLock
from .utils import segment_name, poll_until
from .exceptions import (
    IPCError,
    IPCConnectionError,
    IPCInterruptedError,
    IPCTerminatedError,
    IPCClosedError,
)

logger = logging.getLogger("farmipc.transport")

_DEFAULT_NUM_SLOTS = 128
_DEFAULT_SLOT_SIZE = 4096
_RECV_POLL_INTERVAL = 0.001


class SocketType(enum.Enum):
    PUSH = "push"
    PULL = "pull"


class Socket:
    """One end of a push/pull channel.

    Sockets are created by :meth:`Transport.socket` and must be bound
    or connected to exactly one address before use.

    Args:
        transport: The owning transport.
        kind:      :attr:`SocketType.PUSH` (send only) or
                   :attr:`SocketType.PULL` (receive only).
    """

    def __init__(self, transport: "Transport", kind: SocketType):
        self._transport = transport
        self._kind = kind
        self._address: str | None = None
        self._bound = False
        self._shm: shared_memory.SharedMemory | None = None
        self._lock: ChannelLock | None = None
        self._timeout: float | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def kind(self) -> SocketType:
        return self._kind

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def bound(self) -> bool:
        return self._bound

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def timeout(self) -> float | None:
        return self._timeout

    # ------------------------------------------------------------------
    # Addressing
    # ------------------------------------------------------------------

    def bind(self, address: str) -> None:
        """Create and own the segment for *address*.

        An existing segment of the same name is flagged closed and
        replaced, which makes its connected peers move over to this one.

        Raises:
            IPCConnectionError: If the segment cannot be created or the
                socket is already in use.
        """
        self._check_usable()
        self._check_unassigned(address)
        name = segment_name(address)
        lock = ChannelLock(name)
        try:
            with lock:
                self._shm = create_segment(
                    name, self._transport.num_slots, self._transport.slot_size
                )
        except BaseException:
            lock.close()
            raise
        self._lock = lock
        self._address = address
        self._bound = True
        logger.info("%s socket bound to '%s'", self._kind.value, address)

    def connect(self, address: str) -> None:
        """Attach to *address*, now if it is bound, otherwise on first use."""
        self._check_usable()
        self._check_unassigned(address)
        self._lock = ChannelLock(segment_name(address))
        self._address = address
        attached = self._attach()
        logger.info(
            "%s socket connected to '%s'%s",
            self._kind.value,
            address,
            "" if attached else " (peer not bound yet)",
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_timeout(self, seconds: float | None) -> None:
        """Bound :meth:`recv` to *seconds*.  ``None`` or a negative
        value means block indefinitely."""
        if seconds is not None and seconds < 0:
            seconds = None
        self._timeout = seconds

    def send(self, payload: bytes) -> bool:
        """Append one frame to the channel without blocking.

        Returns:
            ``True`` if the frame was queued, ``False`` if it was dropped
            because the ring is full or no peer has bound the address.

        Raises:
            IPCMessageSizeError: If the frame does not fit into a slot.
            IPCConnectionError:  If this socket's bound segment was taken
                over by another process.
            IPCClosedError:      If the socket was closed.
            IPCTerminatedError:  If the transport is not running.
        """
        self._check_usable()
        if self._kind is not SocketType.PUSH:
            raise IPCError("send() is not supported on a pull socket")
        self._check_assigned()
        with self._lock:
            if self._closed:
                raise IPCClosedError(f"Socket on '{self._address}' was closed")
            if not self._attach():
                logger.debug("No peer bound on '%s'; frame dropped", self._address)
                return False
            return write_message(self._shm, bytes(payload))

    def recv(self) -> bytes | None:
        """Block until a frame arrives or the socket timeout expires.

        Returns:
            The frame, or ``None`` on timeout.

        Raises:
            IPCInterruptedError: If :meth:`Transport.interrupt` was
                called while waiting.  The socket stays usable.
            IPCTerminatedError:  If the transport stopped while waiting.
            IPCClosedError:      If the socket was closed while waiting.
            IPCConnectionError:  If this socket's bound segment was taken
                over by another process.
        """
        self._check_usable()
        if self._kind is not SocketType.PULL:
            raise IPCError("recv() is not supported on a push socket")
        self._check_assigned()
        generation = self._transport.interrupt_generation

        def abort():
            self._transport.check_wait(generation)
            if self._closed:
                raise IPCClosedError(f"Socket on '{self._address}' was closed")

        return poll_until(
            self._try_claim,
            timeout=self._timeout,
            poll_interval=_RECV_POLL_INTERVAL,
            abort_fn=abort,
        )

    def stats(self) -> dict:
        """Return ring-buffer statistics, or ``{}`` when not attached."""
        if self._shm is None:
            return {}
        return get_stats(self._shm)

    def close(self) -> None:
        """Release the segment.  Bound sockets also destroy it, unless
        another process has already replaced it."""
        if self._closed:
            return
        if self._lock is None:
            self._closed = True
        else:
            # waits for a send or claim in progress on another thread
            with self._lock:
                self._closed = True
                self._release_segment()
            self._lock.close()
        self._transport._forget(self)
        logger.debug("%s socket on '%s' closed", self._kind.value, self._address)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _check_usable(self) -> None:
        if self._closed:
            raise IPCClosedError(f"Socket on '{self._address}' is closed")
        if not self._transport.is_running:
            raise IPCTerminatedError("Transport is not running")

    def _check_unassigned(self, address: str) -> None:
        if self._address is not None:
            raise IPCConnectionError(
                f"Socket already in use on '{self._address}', "
                f"cannot also use '{address}'"
            )

    def _check_assigned(self) -> None:
        if self._address is None:
            raise IPCError("Socket is neither bound nor connected")

    def _attach(self) -> bool:
        """Make sure a live segment is mapped; return whether one is."""
        if self._shm is not None and not is_closed(self._shm):
            return True
        if self._shm is not None:
            if self._bound:
                raise IPCConnectionError(
                    f"Address '{self._address}' was bound by another process"
                )
            logger.info("Peer on '%s' went away; re-attaching", self._address)
            close_segment(self._shm)
            self._shm = None
        self._shm = try_attach_segment(segment_name(self._address))
        return self._shm is not None

    def _release_segment(self) -> None:
        if self._shm is not None:
            destroy = self._bound and not is_closed(self._shm)
            close_segment(self._shm, destroy=destroy)
            self._shm = None

    def _try_claim(self) -> bytes | None:
        with self._lock:
            if self._closed:
                raise IPCClosedError(f"Socket on '{self._address}' was closed")
            if not self._attach():
                return None
            return read_message(self._shm)

    def __repr__(self) -> str:
        return (
            f"Socket(kind={self._kind.value!r}, address={self._address!r}, "
            f"bound={self._bound})"
        )


class Transport:
    """Factory and lifecycle owner for :class:`Socket` objects.

    A transport must be started before sockets can be created or used.
    Stopping it closes every socket it created and makes blocked
    receives raise :class:`~farm_ipc.exceptions.IPCTerminatedError`.

    Args:
        num_slots: Ring-buffer depth of segments created by ``bind``.
        slot_size: Max bytes per frame slot (including a 4-byte prefix).

    Example::

        transport = Transport()
        transport.start()
        signal.signal(signal.SIGUSR1, transport.interrupt)
        ...
        transport.stop()
    """

    def __init__(
        self,
        num_slots: int = _DEFAULT_NUM_SLOTS,
        slot_size: int = _DEFAULT_SLOT_SIZE,
    ):
        self.num_slots = num_slots
        self.slot_size = slot_size
        self._running = False
        self._interrupts = 0
        self._sockets: set[Socket] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def interrupt_generation(self) -> int:
        return self._interrupts

    def start(self) -> None:
        if not self._running:
            self._running = True
            atexit.register(self._atexit_stop)
            logger.info(
                "Transport started, %d slots × %d bytes",
                self.num_slots,
                self.slot_size,
            )

    def stop(self) -> None:
        """Stop the transport and close all of its sockets."""
        if not self._running and not self._sockets:
            return
        self._running = False
        atexit.unregister(self._atexit_stop)
        for sock in list(self._sockets):
            sock.close()
        logger.info("Transport stopped")

    def socket(self, kind: SocketType | str) -> Socket:
        """Create a new, unassigned socket.

        Raises:
            IPCTerminatedError: If the transport is not running.
        """
        if not self._running:
            raise IPCTerminatedError("Transport is not running")
        sock = Socket(self, SocketType(kind))
        self._sockets.add(sock)
        return sock

    def destroy_socket(self, sock: Socket | None) -> None:
        """Close *sock*; ``None`` is ignored."""
        if sock is not None:
            sock.close()

    def interrupt(self, *_) -> None:
        """Wake every receive that is currently blocked on this transport
        with :class:`~farm_ipc.exceptions.IPCInterruptedError`.

        Receives started afterwards are not affected.  The signature
        accepts ``(signum, frame)`` so it can be installed directly with
        :func:`signal.signal`.
        """
        self._interrupts += 1

    def check_wait(self, generation: int) -> None:
        """Raise if a receive that started at *generation* must stop waiting."""
        if not self._running:
            raise IPCTerminatedError("Transport stopped while waiting")
        if self._interrupts != generation:
            raise IPCInterruptedError("Receive interrupted")

    def _forget(self, sock: Socket) -> None:
        self._sockets.discard(sock)

    def _atexit_stop(self) -> None:
        if self._sockets:
            self.stop()

    def __enter__(self) -> "Transport":
        self.start()
        return self

    def __exit__(self, *_) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"Transport(running={self._running}, sockets={len(self._sockets)})"
