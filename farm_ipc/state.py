"""
Process lifecycle states and their wire encoding.

A state travels as the little-endian signed 32-bit ordinal of the
enum member.  The receiver must agree on the ordering; there is no
versioning or self-description in the frame.
"""

import enum
import struct
import logging

logger = logging.getLogger("farmipc.state")

_STATE_STRUCT = struct.Struct("<i")

STATE_FRAME_SIZE: int = _STATE_STRUCT.size


class State(enum.IntEnum):
    """Lifecycle of a farm process.

    ``TIMEOUT`` is a receiver-side sentinel meaning "nothing received";
    it is never transmitted.
    """

    OFF = 0
    INITIALIZING = 1
    INITIALIZED = 2
    RUNNING = 3
    ERROR = 4
    TIMEOUT = 5


def encode_state(state: State) -> bytes:
    """Return the wire frame for *state*.

    Raises:
        ValueError: If *state* is the ``TIMEOUT`` sentinel or not a
            known state ordinal.
    """
    state = State(state)
    if state is State.TIMEOUT:
        raise ValueError("State.TIMEOUT is a receive sentinel and cannot be sent")
    return _STATE_STRUCT.pack(int(state))


def decode_state(frame: bytes) -> State:
    """Decode a state frame.  Undecodable frames map to ``TIMEOUT``."""
    if len(frame) != STATE_FRAME_SIZE:
        logger.warning(
            "Discarding state frame of %d bytes (expected %d)",
            len(frame),
            STATE_FRAME_SIZE,
        )
        return State.TIMEOUT
    (ordinal,) = _STATE_STRUCT.unpack(frame)
    try:
        return State(ordinal)
    except ValueError:
        logger.warning("Discarding unknown state ordinal %d", ordinal)
        return State.TIMEOUT
