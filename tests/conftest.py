# tests/conftest.py
import errno
import threading
from collections import deque

import pytest

from address_formatter import AddressFormatter
from event_loop import EventLoop

DEST = "93.184.216.34"
REPLY_BYTES = 64
ERROR_BYTES = 36


class FakeFormatter(AddressFormatter):
    """Resolves names from a dict instead of DNS; numeric form is the address itself."""

    def __init__(self, names=None):
        self.names = names or {}

    def hostname(self, address):
        return self.names.get(address)

    def numeric(self, address):
        return address


class FakeNetwork:
    """
    Scripted stand-in for the ICMP network, shared by every transport a session opens.

    echo: outcomes consumed one per send_echo(): "reply", "fail", "timeout",
          "unreachable" or "bogus" (a reply for a sequence never sent, then a real reply).
          Once exhausted every echo is answered.
    hops: dict[ttl] -> list of (address, reached_destination) answered for that TTL;
          slots past the end of the list never answer.
    """

    def __init__(self, address=DEST, echo=None, hops=None, open_error=None):
        self.address = address
        self.echo = deque(echo or [])
        self.hops = hops or {}
        self.open_error = open_error
        self.transports = []

    def factory(self, host, delegate, event_loop, token, first_sequence=0, data_size=56):
        transport = FakeTransport(self, host, delegate, event_loop, token, first_sequence)
        self.transports.append(transport)
        return transport


class FakeTransport:
    def __init__(self, network, host, delegate, event_loop, token, first_sequence):
        self.network = network
        self.host = host
        self.token = token
        self.first_sequence = first_sequence
        self.closed = False
        self.sent = []
        self._delegate = delegate
        self._event_loop = event_loop
        self._next_sequence = first_sequence

    def _post(self, event, *args):
        self._event_loop.call_soon(getattr(self._delegate, event), self, *args)

    def _sequence(self):
        sequence = self._next_sequence
        self._next_sequence += 1
        self.sent.append(sequence)
        return sequence

    def open(self):
        if self.network.open_error is not None:
            self._post("on_failed", self.network.open_error)
        else:
            self._post("on_ready", self.network.address)

    def send_echo(self):
        sequence = self._sequence()
        outcome = self.network.echo.popleft() if self.network.echo else "reply"
        if outcome == "fail":
            self._post("on_send_failed", sequence, OSError(errno.ENETUNREACH, "Network is unreachable"))
            return
        self._post("on_sent", sequence)
        if outcome == "reply":
            self._post("on_reply", sequence, self.network.address, bytes(REPLY_BYTES))
        elif outcome == "unreachable":
            self._post("on_unexpected", "10.0.0.1", bytes(ERROR_BYTES))
        elif outcome == "bogus":
            self._post("on_reply", sequence + 1000, self.network.address, bytes(REPLY_BYTES))
            self._post("on_reply", sequence, self.network.address, bytes(REPLY_BYTES))

    def send_probe_batch(self, ttl, count):
        sequences = [self._sequence() for _ in range(count)]
        for sequence in sequences:
            self._post("on_sent", sequence)
        for address, reached in self.network.hops.get(ttl, [])[:count]:
            if reached:
                self._post("on_reply", sequences[0], address, bytes(REPLY_BYTES))
            else:
                self._post("on_unexpected", address, bytes(ERROR_BYTES))

    def close(self):
        self.closed = True


def drain(event_loop):
    """Waits until every callback queued so far on event_loop has run."""
    done = threading.Event()
    event_loop.call_soon(done.set)
    assert done.wait(timeout=2.0)


@pytest.fixture
def diag_loop():
    loop = EventLoop(name="TestEventLoop")
    loop.start()
    yield loop
    loop.stop()


@pytest.fixture
def transcript():
    return []
