"""
Tests for farm_ipc.registry: role resolution and recovery policy.

These run against a recording stub transport so every socket
operation the registry performs can be asserted on.
"""

import pytest

from farm_ipc import ChannelAddresses, ChannelRegistry, Handle, State, SocketType
from farm_ipc.exceptions import (
    IPCClosedError,
    IPCConnectionError,
    IPCInterruptedError,
)
from farm_ipc.registry import CLIENT_HANDLES, SERVER_HANDLES
from farm_ipc.state import encode_state

ADDR = ChannelAddresses()


class StubSocket:
    def __init__(self, transport, kind):
        self.transport = transport
        self.kind = SocketType(kind)
        self.address = None
        self.timeout = None
        self.closed = False
        self.inbox = []
        self.errors = []

    def _record(self, op, *args):
        self.transport.calls.append((op, self.address) + args)

    def bind(self, address):
        self.address = address
        self._record("bind")
        if address in self.transport.unreachable:
            raise IPCConnectionError(f"cannot bind {address}")

    def connect(self, address):
        self.address = address
        self._record("connect")
        if address in self.transport.unreachable:
            raise IPCConnectionError(f"cannot connect {address}")

    def set_timeout(self, seconds):
        self.timeout = seconds

    def send(self, payload):
        self._record("send", payload)
        if self.errors:
            raise self.errors.pop(0)
        return True

    def recv(self):
        self._record("recv")
        if self.errors:
            raise self.errors.pop(0)
        return self.inbox.pop(0) if self.inbox else None

    def close(self):
        self.closed = True
        self._record("close")


class StubTransport:
    def __init__(self, running=True):
        self.is_running = running
        self.calls = []
        self.sockets = []
        self.unreachable = set()

    def socket(self, kind):
        sock = StubSocket(self, kind)
        self.sockets.append(sock)
        return sock

    def destroy_socket(self, sock):
        if sock is not None:
            sock.close()

    def open_socket(self, address, kind):
        """Return the live socket of *kind* on *address*."""
        matches = [
            s for s in self.sockets
            if s.address == address and s.kind is SocketType(kind) and not s.closed
        ]
        assert len(matches) == 1, matches
        return matches[0]

    def ops(self, op):
        return [call for call in self.calls if call[0] == op]


@pytest.fixture()
def transport():
    return StubTransport()


@pytest.fixture()
def registry(transport):
    return ChannelRegistry(transport)


# ── Roles ─────────────────────────────────────────────────────────────────────

def test_new_registry_is_empty(registry, transport):
    assert registry.handles() == frozenset()
    assert registry.current_state is State.OFF
    assert transport.calls == []


def test_client_role_connects_three_sockets(registry, transport):
    assert registry.ensure_client_role() is True
    assert registry.handles() == frozenset(CLIENT_HANDLES)
    assert sorted(transport.ops("connect")) == sorted(
        [("connect", ADDR.state), ("connect", ADDR.statistics), ("connect", ADDR.command)]
    )
    assert transport.ops("bind") == []


def test_server_role_binds_three_sockets(registry, transport):
    assert registry.ensure_server_role() is True
    assert registry.handles() == frozenset(SERVER_HANDLES)
    assert sorted(transport.ops("bind")) == sorted(
        [("bind", ADDR.state), ("bind", ADDR.statistics), ("bind", ADDR.command)]
    )
    assert transport.ops("connect") == []


def test_roles_are_idempotent(registry, transport):
    registry.ensure_client_role()
    registry.ensure_server_role()
    count = len(transport.calls)
    assert registry.ensure_client_role() is True
    assert registry.ensure_server_role() is True
    assert len(transport.calls) == count


def test_process_can_hold_both_roles(registry):
    registry.ensure_client_role()
    registry.ensure_server_role()
    assert registry.handles() == frozenset(Handle)
    assert registry.has_client_role and registry.has_server_role


def test_roles_fail_when_transport_not_running():
    transport = StubTransport(running=False)
    registry = ChannelRegistry(transport)
    assert registry.ensure_client_role() is False
    assert registry.ensure_server_role() is False
    assert transport.calls == []


def test_partial_role_failure_only_retries_missing_socket(registry, transport):
    transport.unreachable.add(ADDR.command)
    assert registry.ensure_server_role() is False
    assert not registry.has_server_role
    assert Handle.COMMAND_SENDER not in registry.handles()
    # the failed socket is cleaned up
    assert ("close", ADDR.command) in transport.calls

    transport.unreachable.clear()
    transport.calls.clear()
    assert registry.ensure_server_role() is True
    assert transport.ops("bind") == [("bind", ADDR.command)]


def test_role_decided_by_first_operation(registry):
    registry.send_statistics("EventsProcessed", "10")
    assert registry.has_client_role and not registry.has_server_role

    other = ChannelRegistry(StubTransport())
    other.try_to_receive_statistics()
    assert other.has_server_role and not other.has_client_role


# ── State channel ─────────────────────────────────────────────────────────────

def test_update_state_without_transport_still_records_state():
    transport = StubTransport(running=False)
    registry = ChannelRegistry(transport)
    assert registry.update_state(State.RUNNING) is False
    assert registry.current_state is State.RUNNING
    assert transport.calls == []


def test_update_state_records_state_when_role_fails(registry, transport):
    transport.unreachable.add(ADDR.state)
    assert registry.update_state(State.ERROR) is False
    assert registry.current_state is State.ERROR


def test_update_state_sends_encoded_ordinal(registry, transport):
    assert registry.update_state(State.INITIALIZED) is True
    assert transport.ops("send") == [("send", ADDR.state, encode_state(State.INITIALIZED))]


def test_update_state_accepts_plain_ordinals(registry):
    registry.update_state(3)
    assert registry.current_state is State.RUNNING


@pytest.mark.parametrize("bad_state", [State.TIMEOUT, 5, 42, "RUNNING"])
def test_update_state_ignores_non_lifecycle_values(registry, transport, bad_state):
    registry.update_state(State.RUNNING)
    transport.calls.clear()

    assert registry.update_state(bad_state) is False
    assert registry.current_state is State.RUNNING
    assert transport.calls == []


def test_receive_state(registry, transport):
    registry.ensure_server_role()
    transport.open_socket(ADDR.state, "pull").inbox.append(encode_state(State.RUNNING))
    assert registry.try_to_receive_state() is State.RUNNING
    assert registry.try_to_receive_state() is State.TIMEOUT


def test_receive_state_without_transport_is_timeout():
    registry = ChannelRegistry(StubTransport(running=False))
    assert registry.try_to_receive_state() is State.TIMEOUT


def test_receive_state_when_server_role_fails(registry, transport):
    transport.unreachable.add(ADDR.state)
    assert registry.try_to_receive_state() is State.TIMEOUT
    assert transport.ops("recv") == []


# ── Statistics channel ────────────────────────────────────────────────────────

@pytest.mark.parametrize("name, value", [("", "1"), ("Rate", ""), ("", "")])
def test_empty_statistics_touch_nothing(registry, transport, name, value):
    assert registry.send_statistics(name, value) is False
    assert transport.calls == []


def test_send_statistics_frame(registry, transport):
    assert registry.send_statistics("BurstID", "1234") is True
    assert transport.ops("send") == [("send", ADDR.statistics, b"BurstID:1234")]


def test_unencodable_statistics_touch_nothing(registry, transport):
    assert registry.send_statistics("Rate", "\udcff") is False
    assert registry.send_statistics("R\ud800te", "5") is False
    assert registry.send_error_message("bad \udc80 byte") is False
    assert transport.calls == []


def test_send_error_message(registry, transport):
    registry.send_error_message("L1 timeout")
    assert transport.ops("send") == [("send", ADDR.statistics, b"ErrorMessage:L1 timeout")]


def test_statistics_send_error_is_swallowed(registry, transport):
    registry.ensure_client_role()
    transport.open_socket(ADDR.statistics, "push").errors.append(IPCClosedError("gone"))
    assert registry.send_statistics("Rate", "5") is False
    assert Handle.STATISTICS_SENDER not in registry.handles()
    assert registry.send_statistics("Rate", "6") is True


def test_statistics_without_transport_is_noop():
    transport = StubTransport(running=False)
    registry = ChannelRegistry(transport)
    assert registry.send_statistics("Rate", "5") is False
    assert registry.try_to_receive_statistics() == ""
    assert transport.calls == []


def test_receive_statistics(registry, transport):
    registry.ensure_server_role()
    transport.open_socket(ADDR.statistics, "pull").inbox.append(b"Rate:5")
    assert registry.try_to_receive_statistics() == "Rate:5"
    assert registry.try_to_receive_statistics() == ""


# ── Command channel ───────────────────────────────────────────────────────────

def test_empty_command_touches_nothing(registry, transport):
    assert registry.send_command("") is False
    assert transport.calls == []


def test_unencodable_command_touches_nothing(registry, transport):
    assert registry.send_command("RE\ud800BOOT") is False
    assert transport.calls == []


def test_send_command_binds_server_role(registry, transport):
    assert registry.send_command("REBOOT") is True
    assert registry.has_server_role
    assert transport.ops("send") == [("send", ADDR.command, b"REBOOT")]


def test_fatal_send_error_destroys_command_sender(registry, transport):
    registry.ensure_server_role()
    sender = transport.open_socket(ADDR.command, "push")
    sender.errors.append(IPCConnectionError("taken over"))

    assert registry.send_command("STOP") is False
    assert sender.closed
    assert Handle.COMMAND_SENDER not in registry.handles()

    transport.calls.clear()
    assert registry.send_command("STOP") is True
    assert transport.ops("bind") == [("bind", ADDR.command)]


def test_transient_send_error_keeps_command_sender(registry, transport):
    registry.ensure_server_role()
    sender = transport.open_socket(ADDR.command, "push")
    sender.errors.append(IPCInterruptedError("signal"))

    assert registry.send_command("STOP") is False
    assert not sender.closed
    assert registry.send_command("STOP") is True
    assert transport.ops("bind").count(("bind", ADDR.command)) == 1


def test_get_next_command(registry, transport):
    registry.ensure_client_role()
    transport.open_socket(ADDR.command, "pull").inbox.append(b"REBOOT")
    assert registry.get_next_command() == "REBOOT"


def test_get_next_command_interrupted_keeps_receiver(registry, transport):
    registry.ensure_client_role()
    receiver = transport.open_socket(ADDR.command, "pull")
    receiver.errors.append(IPCInterruptedError("signal"))
    receiver.inbox.append(b"RESUME")

    assert registry.get_next_command() == ""
    assert not receiver.closed
    assert registry.get_next_command() == "RESUME"


def test_get_next_command_fatal_error_drops_receiver(registry, transport):
    registry.ensure_client_role()
    receiver = transport.open_socket(ADDR.command, "pull")
    receiver.errors.append(IPCClosedError("closed"))

    assert registry.get_next_command() == ""
    assert receiver.closed
    assert not registry.has_client_role

    transport.calls.clear()
    registry.get_next_command()
    assert transport.calls[:2] == [("connect", ADDR.command), ("recv", ADDR.command)]


def test_get_next_command_without_transport():
    registry = ChannelRegistry(StubTransport(running=False))
    assert registry.get_next_command() == ""


# ── Recovery ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "receive, address",
    [
        ("try_to_receive_state", ADDR.state),
        ("try_to_receive_statistics", ADDR.statistics),
    ],
)
def test_fatal_receive_error_rebinds_exactly_once(registry, transport, receive, address):
    registry.ensure_server_role()
    transport.open_socket(address, "pull").errors.append(IPCConnectionError("lost"))

    getattr(registry, receive)()
    assert not registry.has_server_role

    transport.calls.clear()
    getattr(registry, receive)()
    assert transport.calls == [("bind", address), ("recv", address)]


def test_transient_receive_error_keeps_receiver(registry, transport):
    registry.ensure_server_role()
    receiver = transport.open_socket(ADDR.statistics, "pull")
    receiver.errors.append(IPCInterruptedError("signal"))
    assert registry.try_to_receive_statistics() == ""
    assert not receiver.closed
    assert registry.has_server_role


# ── Timeout ───────────────────────────────────────────────────────────────────

def test_set_timeout_establishes_server_role(registry, transport):
    assert registry.set_timeout(0.1) is True
    assert registry.has_server_role
    assert transport.open_socket(ADDR.state, "pull").timeout == 0.1
    assert transport.open_socket(ADDR.statistics, "pull").timeout == 0.1
    assert transport.open_socket(ADDR.command, "push").timeout is None


def test_set_timeout_leaves_command_receiver_alone(registry, transport):
    registry.ensure_client_role()
    registry.set_timeout(0.1)
    assert transport.open_socket(ADDR.command, "pull").timeout is None


def test_set_timeout_fails_without_transport():
    registry = ChannelRegistry(StubTransport(running=False))
    assert registry.set_timeout(0.1) is False
    assert registry.timeout == 0.1


def test_timeout_applies_to_recreated_receivers(registry, transport):
    registry.set_timeout(0.2)
    transport.open_socket(ADDR.statistics, "pull").errors.append(IPCClosedError("x"))
    registry.try_to_receive_statistics()
    registry.try_to_receive_statistics()
    assert transport.open_socket(ADDR.statistics, "pull").timeout == 0.2


def test_constructor_timeout(transport):
    registry = ChannelRegistry(transport, timeout=0.5)
    registry.ensure_server_role()
    assert transport.open_socket(ADDR.state, "pull").timeout == 0.5


# ── Shutdown ──────────────────────────────────────────────────────────────────

def test_shutdown_closes_everything(registry, transport):
    registry.ensure_client_role()
    registry.ensure_server_role()
    registry.shutdown()
    assert registry.handles() == frozenset()
    assert all(sock.closed for sock in transport.sockets)
    assert not registry.has_client_role and not registry.has_server_role


def test_shutdown_of_empty_registry_is_noop(registry, transport):
    registry.shutdown()
    assert transport.calls == []


def test_operations_after_shutdown_reinitialise(registry, transport):
    registry.update_state(State.RUNNING)
    registry.shutdown()
    transport.calls.clear()

    assert registry.update_state(State.OFF) is True
    assert registry.handles() == frozenset(CLIENT_HANDLES)
    assert len(transport.ops("connect")) == 3


def test_context_manager_shuts_down(transport):
    with ChannelRegistry(transport) as registry:
        registry.ensure_server_role()
    assert registry.handles() == frozenset()


def test_custom_addresses(transport):
    addresses = ChannelAddresses.with_prefix("farm2")
    registry = ChannelRegistry(transport, addresses=addresses)
    registry.send_command("GO")
    assert ("bind", "farm2-command") in transport.calls
