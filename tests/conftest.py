"""
Shared test fixtures and helpers for farm_ipc tests.
"""

import uuid
import time
import multiprocessing as mp

import pytest

from farm_ipc import ChannelAddresses, Transport, force_unlink, segment_name


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "multiprocess: test spawns helper processes"
    )


def wait_for(fn, timeout=5.0, interval=0.01):
    """Poll fn() until it returns truthy or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = fn()
        if result:
            return result
        time.sleep(interval)
    return None


def run_in_process(fn, *args, timeout=10.0):
    """Run *fn* in a spawned child process; return (exitcode, error).

    Returns exitcode=0 on success.
    """
    p = mp.get_context("spawn").Process(target=fn, args=args, daemon=True)
    p.start()
    p.join(timeout=timeout)
    if p.is_alive():
        p.terminate()
        p.join(1)
        return -1, "timeout"
    return p.exitcode, None


def unlink_addresses(addresses):
    for address in (addresses.state, addresses.statistics, addresses.command):
        force_unlink(segment_name(address))


@pytest.fixture()
def addresses():
    """A private address set per test, removed before and after."""
    addrs = ChannelAddresses.with_prefix(f"test-{uuid.uuid4().hex[:8]}")
    unlink_addresses(addrs)
    yield addrs
    unlink_addresses(addrs)


@pytest.fixture()
def transport():
    with Transport(num_slots=16, slot_size=256) as t:
        yield t
