# tests/test_transport.py
import errno

from scapy.all import IP, ICMP, Raw, raw

import transport as transport_module
from conftest import DEST
from transport import IcmpTransport

LOCAL = "10.0.0.2"


class ImmediateLoop:
    """Runs queued callbacks straight away on the calling thread."""

    def call_soon(self, callback, *args):
        callback(*args)


class RecordingDelegate:
    def __init__(self):
        self.events = []

    def __getattr__(self, name):
        if not name.startswith("on_"):
            raise AttributeError(name)
        return lambda transport, *args: self.events.append((name, *args))


def make_transport(first_sequence=0):
    delegate = RecordingDelegate()
    icmp = IcmpTransport(DEST, delegate, ImmediateLoop(), token=1, first_sequence=first_sequence)
    icmp.address = DEST
    return icmp, delegate


def captured(packet):
    # Re-dissected from the wire bytes, the way the sniffer hands packets over
    return IP(raw(packet))


def echo_reply(identifier, seq, source=DEST):
    return captured(IP(src=source, dst=LOCAL) / ICMP(type=0, id=identifier, seq=seq) / Raw(load=bytes(56)))


def icmp_error(icmp_type, router, identifier, seq):
    quoted = IP(src=LOCAL, dst=DEST, ttl=1) / ICMP(type=8, id=identifier, seq=seq) / Raw(load=bytes(56))
    return captured(IP(src=router, dst=LOCAL) / ICMP(type=icmp_type, code=0) / quoted)


def test_echo_reply_with_our_identifier_is_a_reply():
    icmp, delegate = make_transport()
    icmp._packet_callback(echo_reply(icmp.identifier, 7))

    assert len(delegate.events) == 1
    name, seq, source, payload = delegate.events[0]
    assert (name, seq, source) == ("on_reply", 7, DEST)
    assert len(payload) == 64


def test_echo_reply_for_another_process_is_ignored():
    icmp, delegate = make_transport()
    icmp._packet_callback(echo_reply((icmp.identifier + 1) & 0xFFFF, 7))
    assert delegate.events == []


def test_time_exceeded_quoting_our_request_is_unexpected():
    icmp, delegate = make_transport()
    icmp._packet_callback(icmp_error(11, "10.0.3.1", icmp.identifier, 3))

    assert [e[:2] for e in delegate.events] == [("on_unexpected", "10.0.3.1")]


def test_unreachable_quoting_our_request_is_unexpected():
    icmp, delegate = make_transport()
    icmp._packet_callback(icmp_error(3, "10.0.9.9", icmp.identifier, 0))

    assert [e[:2] for e in delegate.events] == [("on_unexpected", "10.0.9.9")]


def test_icmp_error_quoting_another_identifier_is_ignored():
    icmp, delegate = make_transport()
    icmp._packet_callback(icmp_error(11, "10.0.3.1", (icmp.identifier + 1) & 0xFFFF, 3))
    assert delegate.events == []


def test_echo_request_is_ignored():
    icmp, delegate = make_transport()
    request = captured(IP(src=LOCAL, dst=DEST) / ICMP(type=8, id=icmp.identifier, seq=1))
    icmp._packet_callback(request)
    assert delegate.events == []


def test_send_failure_follows_sent(monkeypatch):
    def refuse(packet, verbose=0):
        raise OSError(errno.EPERM, "Operation not permitted")

    monkeypatch.setattr(transport_module, "send", refuse)
    icmp, delegate = make_transport(first_sequence=41)
    icmp.send_echo()

    assert [e[:2] for e in delegate.events] == [("on_sent", 41), ("on_send_failed", 41)]
    assert isinstance(delegate.events[1][2], OSError)


def test_hop_batch_sets_ttl_and_wraps_sequence(monkeypatch):
    sent = []
    monkeypatch.setattr(transport_module, "send", lambda packet, verbose=0: sent.append(packet))
    icmp, delegate = make_transport(first_sequence=0xFFFE)
    icmp.send_probe_batch(4, 3)

    assert [p[IP].ttl for p in sent] == [4, 4, 4]
    assert [p[ICMP].seq for p in sent] == [0xFFFE, 0xFFFF, 0]
    assert all(p[ICMP].type == 8 and p[ICMP].id == icmp.identifier for p in sent)
    assert all(len(p[Raw].load) == 56 for p in sent)
    assert delegate.events == [("on_sent", 0xFFFE), ("on_sent", 0xFFFF), ("on_sent", 0)]


def test_closed_transport_reports_nothing(monkeypatch):
    sent = []
    monkeypatch.setattr(transport_module, "send", lambda packet, verbose=0: sent.append(packet))
    icmp, delegate = make_transport()
    icmp.close()

    icmp.send_echo()
    icmp._packet_callback(echo_reply(icmp.identifier, 0))
    assert sent == []
    assert delegate.events == []
