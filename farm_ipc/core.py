"""
Shared memory segment lifecycle management for farm_ipc.

This module owns the low-level create / attach / destroy operations
for the named shared memory segments that back every channel address,
and defines the binary header layout that all ring buffers share.

Header layout (128 bytes, little-endian int64 values):
    Index  Offset  Field
    0      0       MAGIC  -- 0x4641524D49504331  ("FARMIPC1")
    1      8       VERSION
    2      16      HEAD   -- next write slot (advanced under the channel lock)
    3      24      TAIL   -- next read slot  (advanced under the channel lock)
    4      32      MSG_COUNT
    5      40      DROP_COUNT
    6      48      NUM_SLOTS
    7      56      SLOT_SIZE
    8      64      CLOSED -- set to 1 by the binding side before it unlinks
    9      72      OWNER_PID
    10-15  80-127  RESERVED (zeros)

Data area starts at byte offset 128.
Each slot: first 4 bytes = payload size (little-endian uint32),
           remaining bytes = payload.
"""

import os
import sys
import logging
import numpy as np
from multiprocessing import shared_memory, resource_tracker
from .exceptions import IPCConnectionError

logger = logging.getLogger("farmipc.core")

# ── Constants ────────────────────────────────────────────────────────────────

MAGIC: int = 0x4641524D49504331  # b"FARMIPC1" as little-endian int64
VERSION: int = 1
HEADER_SIZE: int = 128  # bytes

# Header field indices in the int64 array
_IDX_MAGIC = 0
_IDX_VERSION = 1
_IDX_HEAD = 2
_IDX_TAIL = 3
_IDX_MSG_COUNT = 4
_IDX_DROP_COUNT = 5
_IDX_NUM_SLOTS = 6
_IDX_SLOT_SIZE = 7
_IDX_CLOSED = 8
_IDX_OWNER_PID = 9

# Each ring-buffer slot begins with a uint32 size prefix.
SLOT_PREFIX_SIZE: int = 4


# ── Segment size helper ───────────────────────────────────────────────────────

def segment_size(num_slots: int, slot_size: int) -> int:
    """Return the total shared memory size in bytes for the given geometry.

    Args:
        num_slots: Number of ring-buffer slots.
        slot_size: Bytes per slot (including the 4-byte size prefix).
    """
    return HEADER_SIZE + num_slots * slot_size


# ── Header helpers ────────────────────────────────────────────────────────────

def _make_header_array(shm: shared_memory.SharedMemory) -> np.ndarray:
    """Return a numpy int64 view of the 128-byte header region.

    Reads and writes to individual int64 elements are atomic on all
    64-bit platforms (single-instruction store/load).
    """
    return np.ndarray((16,), dtype="<i8", buffer=shm.buf, offset=0)


def _init_header(
    shm: shared_memory.SharedMemory,
    num_slots: int,
    slot_size: int,
) -> None:
    """Write the initial header into a freshly created segment."""
    hdr = _make_header_array(shm)
    hdr[:] = 0
    hdr[_IDX_MAGIC] = MAGIC
    hdr[_IDX_VERSION] = VERSION
    hdr[_IDX_NUM_SLOTS] = num_slots
    hdr[_IDX_SLOT_SIZE] = slot_size
    hdr[_IDX_OWNER_PID] = os.getpid()
    logger.debug(
        "Header initialised: num_slots=%d slot_size=%d total=%d",
        num_slots,
        slot_size,
        segment_size(num_slots, slot_size),
    )


def _header_is_valid(shm: shared_memory.SharedMemory) -> bool:
    if shm.size < HEADER_SIZE:
        return False
    hdr = _make_header_array(shm)
    return int(hdr[_IDX_MAGIC]) == MAGIC and int(hdr[_IDX_VERSION]) == VERSION


def _open_untracked(name: str) -> shared_memory.SharedMemory:
    """Open an existing segment without handing it to the resource
    tracker, which would otherwise unlink it when *this* process exits."""
    if sys.version_info >= (3, 13):
        return shared_memory.SharedMemory(name=name, create=False, track=False)
    shm = shared_memory.SharedMemory(name=name, create=False)
    # The tracker keeps one entry per name; leave the creator's entry alone.
    if os.name == "posix" and name not in _created_here:
        resource_tracker.unregister(shm._name, "shared_memory")
    return shm


# Segments created, and not yet destroyed, by this process.
_created_here: set[str] = set()


# ── Public API ────────────────────────────────────────────────────────────────

def create_segment(
    name: str,
    num_slots: int,
    slot_size: int,
) -> shared_memory.SharedMemory:
    """Create a new named shared memory segment and initialise its header.

    If a segment with *name* already exists (a crashed or competing
    binder) it is flagged closed, so attached peers let go of it, and
    then unlinked.  A fresh segment is always returned.

    Args:
        name:      OS-level name for the shared memory object.
        num_slots: Number of ring-buffer slots.
        slot_size: Bytes per slot (payload + 4-byte size prefix).

    Returns:
        An open :class:`multiprocessing.shared_memory.SharedMemory`
        instance.  The caller owns it and must call
        :func:`close_segment` with ``destroy=True`` when done.

    Raises:
        IPCConnectionError: If the OS refuses to allocate the segment.

    Example::

        shm = create_segment("farmipc_farm-state", num_slots=128, slot_size=4096)
    """
    size = segment_size(num_slots, slot_size)

    try:
        stale = shared_memory.SharedMemory(name=name, create=False)
        if _header_is_valid(stale):
            mark_closed(stale)
        stale.close()
        stale.unlink()
        logger.debug("Replaced existing shared memory segment '%s'", name)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.debug("Could not clean stale segment '%s': %s", name, exc)

    try:
        shm = shared_memory.SharedMemory(name=name, create=True, size=size)
    except OSError as exc:
        raise IPCConnectionError(
            f"Failed to create shared memory '{name}' "
            f"({size} bytes): {exc}"
        ) from exc

    _init_header(shm, num_slots, slot_size)
    _created_here.add(name)
    logger.info("Created shared memory segment '%s' (%d bytes)", name, size)
    return shm


def try_attach_segment(name: str) -> shared_memory.SharedMemory | None:
    """Attach to an existing, open segment in a single attempt.

    Returns:
        The attached segment, or ``None`` if no segment of that name
        exists, it is not a farm_ipc segment, or it has been closed by
        its owner.  Callers poll this while the binding side is not up.
    """
    try:
        shm = _open_untracked(name)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.debug("Could not attach '%s': %s", name, exc)
        return None

    if not _header_is_valid(shm) or is_closed(shm):
        shm.close()
        return None

    logger.info("Attached to shared memory segment '%s'", name)
    return shm


def close_segment(
    shm: shared_memory.SharedMemory,
    *,
    destroy: bool = False,
) -> None:
    """Close (and optionally destroy) a shared memory segment.

    Args:
        shm:     The segment returned by :func:`create_segment` or
                 :func:`try_attach_segment`.
        destroy: If ``True``, flag the header closed and unlink the
                 OS-level object.  Only the binding process should pass
                 ``destroy=True``.
    """
    name = shm.name
    try:
        if destroy:
            mark_closed(shm)
        shm.close()
        if destroy:
            _created_here.discard(name)
            shm.unlink()
            logger.info("Destroyed shared memory segment '%s'", name)
        else:
            logger.debug("Closed shared memory segment '%s'", name)
    except FileNotFoundError:
        logger.debug("Segment '%s' was already unlinked", name)
    except (OSError, BufferError) as exc:
        logger.warning("Error closing segment '%s': %s", name, exc)


def mark_closed(shm: shared_memory.SharedMemory) -> None:
    """Flag the segment as abandoned by its owner."""
    _make_header_array(shm)[_IDX_CLOSED] = 1


def is_closed(shm: shared_memory.SharedMemory) -> bool:
    return int(_make_header_array(shm)[_IDX_CLOSED]) != 0


def owner_pid(shm: shared_memory.SharedMemory) -> int:
    return int(_make_header_array(shm)[_IDX_OWNER_PID])


# ── Convenience accessors used by buffer.py ──────────────────────────────────

def get_header(shm: shared_memory.SharedMemory) -> np.ndarray:
    """Return the live numpy int64 view of the header."""
    return _make_header_array(shm)


IDX_HEAD = _IDX_HEAD
IDX_TAIL = _IDX_TAIL
IDX_MSG_COUNT = _IDX_MSG_COUNT
IDX_DROP_COUNT = _IDX_DROP_COUNT
IDX_NUM_SLOTS = _IDX_NUM_SLOTS
IDX_SLOT_SIZE = _IDX_SLOT_SIZE
IDX_CLOSED = _IDX_CLOSED


def force_unlink(name: str) -> bool:
    """Remove the segment *name* no matter who created it.

    Meant for leftovers of a crashed collector.  A valid segment is
    flagged closed first, so workers still attached to it let go and
    wait for the next bind.  Returns ``False`` if there was nothing to
    remove.
    """
    try:
        shm = shared_memory.SharedMemory(name=name, create=False)
    except FileNotFoundError:
        return False
    if _header_is_valid(shm):
        mark_closed(shm)
    shm.close()
    _created_here.discard(name)
    try:
        shm.unlink()
    except FileNotFoundError:
        return False
    logger.info("Force-unlinked segment '%s'", name)
    return True
