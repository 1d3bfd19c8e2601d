"""
Ring buffer operations for farm_ipc.

No Python-level locks are taken here.  Every channel may have several
writers (many workers pushing state to one collector) or several
readers (many workers pulling commands from one collector), so the
caller must hold the channel's :class:`~farm_ipc.sync.ChannelLock` around
each call.  Individual numpy ``int64`` header reads and writes are
single machine instructions on 64-bit platforms.

Layout recap (see core.py for the full header description):
    Head pointer : advanced by writers after the slot is filled.
    Tail pointer : advanced by readers after the slot is copied out.
    Slot format  : [ payload_size : uint32 (4 bytes) ]
                   [ payload      : bytes (slot_size - 4 bytes) ]
"""

import struct
import logging
import numpy as np
from multiprocessing import shared_memory

from .core import (
    HEADER_SIZE,
    SLOT_PREFIX_SIZE,
    IDX_HEAD,
    IDX_TAIL,
    IDX_MSG_COUNT,
    IDX_DROP_COUNT,
    IDX_NUM_SLOTS,
    IDX_SLOT_SIZE,
    get_header,
)
from .exceptions import IPCMessageSizeError

logger = logging.getLogger("farmipc.buffer")

_SIZE_STRUCT = struct.Struct("<I")  # little-endian unsigned 32-bit int


# ── Low-level slot I/O ────────────────────────────────────────────────────────

def _slot_offset(slot_index: int, slot_size: int) -> int:
    return HEADER_SIZE + slot_index * slot_size


def _write_slot(
    shm: shared_memory.SharedMemory,
    slot_index: int,
    slot_size: int,
    payload: bytes,
) -> None:
    """Write *payload* into a single slot.  Does NOT advance any pointer."""
    offset = _slot_offset(slot_index, slot_size)
    _SIZE_STRUCT.pack_into(shm.buf, offset, len(payload))
    end = offset + SLOT_PREFIX_SIZE + len(payload)
    shm.buf[offset + SLOT_PREFIX_SIZE : end] = payload


def _read_slot(
    shm: shared_memory.SharedMemory,
    slot_index: int,
    slot_size: int,
) -> bytes:
    offset = _slot_offset(slot_index, slot_size)
    (payload_size,) = _SIZE_STRUCT.unpack_from(shm.buf, offset)
    start = offset + SLOT_PREFIX_SIZE
    return bytes(shm.buf[start : start + payload_size])


def max_payload_size(shm: shared_memory.SharedMemory) -> int:
    """Largest frame, in bytes, that fits into one slot of *shm*."""
    return int(get_header(shm)[IDX_SLOT_SIZE]) - SLOT_PREFIX_SIZE


# ── Producer (write) side ─────────────────────────────────────────────────────

def write_message(shm: shared_memory.SharedMemory, payload: bytes) -> bool:
    """Append *payload* to the ring buffer without blocking.

    Algorithm:
        1. Read the current head and the shared tail.
        2. If ``(head + 1) % num_slots == tail`` the buffer is full:
           count a drop and return ``False``.
        3. Write payload into slot[head].
        4. Advance head, which commits the frame to readers.

    Args:
        shm:     Open shared memory segment.
        payload: Raw frame (max ``slot_size - 4`` bytes).

    Returns:
        ``True`` on success, ``False`` if the buffer was full.

    Raises:
        IPCMessageSizeError: If *payload* is larger than a slot.

    Example::

        with lock:
            ok = write_message(shm, b"EventBuilder:42")
    """
    hdr = get_header(shm)
    num_slots = int(hdr[IDX_NUM_SLOTS])
    slot_size = int(hdr[IDX_SLOT_SIZE])
    max_payload = slot_size - SLOT_PREFIX_SIZE

    if len(payload) > max_payload:
        raise IPCMessageSizeError(
            f"Frame size {len(payload)} exceeds slot capacity {max_payload} "
            f"on segment '{shm.name}'."
        )

    head = int(hdr[IDX_HEAD])
    tail = int(hdr[IDX_TAIL])
    next_head = (head + 1) % num_slots

    if next_head == tail:
        hdr[IDX_DROP_COUNT] += 1
        logger.debug("Ring buffer '%s' full; frame dropped", shm.name)
        return False

    _write_slot(shm, head, slot_size, payload)

    # Commit: advance head AFTER writing data.
    hdr[IDX_HEAD] = np.int64(next_head)
    hdr[IDX_MSG_COUNT] += 1

    logger.debug(
        "Wrote %d bytes to slot %d (head→%d)", len(payload), head, next_head
    )
    return True


# ── Consumer (read) side ──────────────────────────────────────────────────────

def read_message(shm: shared_memory.SharedMemory) -> bytes | None:
    """Claim the oldest frame in the ring buffer without blocking.

    Returns:
        Payload bytes if a frame was claimed, or ``None`` if empty.
    """
    hdr = get_header(shm)
    head = int(hdr[IDX_HEAD])
    tail = int(hdr[IDX_TAIL])
    num_slots = int(hdr[IDX_NUM_SLOTS])
    slot_size = int(hdr[IDX_SLOT_SIZE])

    if tail == head:
        return None

    payload = _read_slot(shm, tail, slot_size)
    hdr[IDX_TAIL] = np.int64((tail + 1) % num_slots)

    logger.debug("Claimed slot %d (%d bytes)", tail, len(payload))
    return payload


# ── Stats helper ──────────────────────────────────────────────────────────────

def get_stats(shm: shared_memory.SharedMemory) -> dict:
    """Return a snapshot of the ring buffer statistics.

    Returns a dict with keys:
    ``head``, ``tail``, ``num_slots``, ``slot_size``,
    ``msg_count``, ``drop_count``, ``used_slots``, ``free_slots``.
    """
    hdr = get_header(shm)
    head = int(hdr[IDX_HEAD])
    tail = int(hdr[IDX_TAIL])
    num_slots = int(hdr[IDX_NUM_SLOTS])
    used = (head - tail) % num_slots

    return {
        "head": head,
        "tail": tail,
        "num_slots": num_slots,
        "slot_size": int(hdr[IDX_SLOT_SIZE]),
        "msg_count": int(hdr[IDX_MSG_COUNT]),
        "drop_count": int(hdr[IDX_DROP_COUNT]),
        "used_slots": used,
        "free_slots": num_slots - used - 1,
    }
