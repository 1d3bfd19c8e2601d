"""
Naming and polling helpers for farm_ipc.
"""

import os
import sys
import time
import logging

logger = logging.getLogger("farmipc.utils")

SEGMENT_PREFIX = "farmipc_"
_SHM_DIR = "/dev/shm"


def segment_name(address: str) -> str:
    """Return the SHM segment name backing the channel *address*."""
    safe = address.replace("/", "_").replace("\\", "_")
    return f"{SEGMENT_PREFIX}{safe}"


def poll_until(check_fn, timeout: float | None, poll_interval: float = 0.000_100, abort_fn=None):
    """Call *check_fn* until it returns something other than ``None``.

    *abort_fn*, if given, runs before every call and ends the wait by
    raising.  The last sleep is cut short so the wait never overshoots
    *timeout*.  Returns ``None`` once *timeout* seconds have passed;
    ``None`` as timeout waits forever.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if abort_fn is not None:
            abort_fn()
        result = check_fn()
        if result is not None:
            return result
        if deadline is None:
            time.sleep(poll_interval)
            continue
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        time.sleep(min(poll_interval, remaining))


def list_segments() -> list[str]:
    """Names of the farm_ipc segments currently present on this host.

    Linux only; elsewhere the list is always empty.
    """
    if sys.platform != "linux":
        return []
    try:
        entries = os.listdir(_SHM_DIR)
    except OSError as exc:
        logger.warning("Cannot list %s: %s", _SHM_DIR, exc)
        return []
    return sorted(e for e in entries if e.startswith(SEGMENT_PREFIX))
