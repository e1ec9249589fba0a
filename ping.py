#!/usr/bin/env python3

import logging
import statistics
from dataclasses import dataclass

import config
from network_error import get_error_message
from session import ProbeSession

SENT = "sent"
REPLIED = "replied"
FAILED = "failed"
TIMED_OUT = "timed_out"


class InvalidTransition(Exception):
    pass


@dataclass
class ProbeRecord:
    """One echo request; leaves the SENT state exactly once."""
    sequence: int
    sent_at: float
    state: str = SENT
    round_trip_ms: float | None = None
    error: BaseException | None = None

    def _leave_sent(self, state):
        if self.state != SENT:
            raise InvalidTransition(f"icmp_seq={self.sequence} already {self.state}, cannot become {state}")
        self.state = state

    def replied(self, received_at):
        self._leave_sent(REPLIED)
        self.round_trip_ms = (received_at - self.sent_at) * 1000.0

    def failed(self, error):
        self._leave_sent(FAILED)
        self.error = error

    def timed_out(self):
        self._leave_sent(TIMED_OUT)


@dataclass
class PingStatistics:
    transmitted: int
    received: int
    min_ms: float | None = None
    avg_ms: float | None = None
    max_ms: float | None = None
    stddev_ms: float | None = None

    @property
    def failed(self):
        return self.transmitted - self.received

    @property
    def loss_percent(self):
        if self.transmitted == 0:
            return 0.0
        return (self.transmitted - self.received) / self.transmitted * 100

    @classmethod
    def from_records(cls, records):
        rtts = [r.round_trip_ms for r in records if r.state == REPLIED]
        stats = cls(transmitted=len(records), received=len(rtts))
        if rtts:
            stats.min_ms = min(rtts)
            stats.max_ms = max(rtts)
            stats.avg_ms = statistics.fmean(rtts)
            stats.stddev_ms = statistics.pstdev(rtts)
        return stats

    def summary_lines(self, host):
        """Transcript lines of the summary; empty when nothing was transmitted."""
        if self.transmitted == 0:
            return []
        lines = [
            f"--- {host} ping statistics ---",
            f"{self.transmitted} packets transmitted, {self.received} packets received, "
            f"{self.loss_percent:.1f}% packet loss",
        ]
        if self.received:
            lines.append(
                f"round-trip min/avg/max/stddev = "
                f"{self.min_ms:.3f}/{self.avg_ms:.3f}/{self.max_ms:.3f}/{self.stddev_ms:.3f} ms"
            )
        return lines


class Ping(ProbeSession):
    """Echo prober: sends timestamped echo requests and reports round-trip statistics."""

    name = "ping"

    def __init__(self, interval=config.PING_INTERVAL_S, timeout=config.PING_TIMEOUT_S,
                 count=config.PING_COUNT, **kwargs):
        super().__init__(**kwargs)
        self.interval = interval
        self.timeout = timeout
        self.count = count
        self.records = {}  # Key: icmp sequence, Value: ProbeRecord
        self.ping_count = 0
        self._last_send_time = None
        self._outstanding = None  # Sequence awaiting reply, failure or timeout

    def _session_started(self):
        self.ping_count = 0
        self.records.clear()

    def _ready(self, address):
        if self.ping_count == 0:
            hostname = self.formatter.hostname(address) or self.host
            ipaddr = self.formatter.numeric(address) or "?"
            self.emit(f"PING {hostname} ({ipaddr}): {self.data_size} data bytes")
        self._send_next_ping()

    def _send_next_ping(self):
        if self.ping_count >= self.count:
            self._finish()
            return

        time_to_ping = 0.0
        if self._last_send_time is not None:
            time_to_ping = self.interval - (self.now() - self._last_send_time)
        if time_to_ping > 0.0:
            self._arm_timer(time_to_ping, self._send_next_ping)
            return

        self.ping_count += 1
        self._last_send_time = self.now()
        self._arm_timer(self.timeout, self._send_timeout)
        self._transport.send_echo()

    def _sent(self, sequence):
        if sequence in self.records:
            logging.warning(f"[{self.host}] Transport reused icmp_seq={sequence}; replacing its record.")
        self.records[sequence] = ProbeRecord(sequence=sequence, sent_at=self.now())
        self._outstanding = sequence

    def _send_failed(self, sequence, error):
        record = self.records.get(sequence)
        if record is None:
            # Some transports report a failed send without reporting it as sent
            record = self.records[sequence] = ProbeRecord(sequence=sequence, sent_at=self.now())
        elif record.state != SENT:
            self._invariant_violation(f"send failure for settled icmp_seq={sequence}")
            return
        self._cancel_timer()
        record.failed(error)
        self._outstanding = None
        self.emit(f"error: {get_error_message(error)} for icmp_seq={sequence}")
        self._send_next_ping()

    def _reply(self, sequence, address, payload):
        record = self.records.get(sequence)
        if record is None or record.state != SENT:
            self._invariant_violation(f"reply for unknown icmp_seq={sequence}")
            return
        self._cancel_timer()
        record.replied(self.now())
        self._outstanding = None
        ipaddr = self.formatter.numeric(address) or "?"
        self.emit(f"{len(payload)} bytes from {ipaddr}: icmp_seq={sequence} time={record.round_trip_ms:.3f} ms")
        self._send_next_ping()

    def _unexpected(self, address, payload):
        self._cancel_timer()
        ipaddr = self.formatter.numeric(address) or "?"
        self.emit(f"{len(payload)} bytes from {ipaddr}: Destination Host Unreachable")
        self._send_next_ping()

    def _send_timeout(self):
        if self._outstanding is not None:
            record = self.records[self._outstanding]
            if record.state == SENT:
                record.timed_out()
            self.emit(f"Request timeout for icmp_seq={self._outstanding}")
            self._outstanding = None
        # A stalled channel is recovered by a fresh transport; sending resumes on ready
        self._restart_transport()

    def _invariant_violation(self, message):
        if config.STRICT_INVARIANTS:
            self.emit(f"ping: internal error: {message}")
            self._finish()
        else:
            logging.warning(f"[{self.host}] Ignoring {message}.")

    def _session_ended(self):
        stats = PingStatistics.from_records(list(self.records.values()))
        for line in stats.summary_lines(self.host):
            self.emit(line)
        self.records.clear()
