#!/usr/bin/env python3

import logging
from dataclasses import dataclass, field

import config
from session import ProbeSession

NO_INFO_SYM = "*"


@dataclass
class HopResponse:
    address: str
    round_trip_ms: float
    reached_destination: bool


@dataclass
class HopResult:
    ttl: int
    responses: list = field(default_factory=list)

    @property
    def reached_destination(self):
        return any(r.reached_destination for r in self.responses)


def format_hop(result, probes_per_hop, formatter):
    """
    Renders one hop as transcript lines.

    When every answering probe came from the same router (or fewer than two
    answered) the hop is one line with all timings; otherwise each probe slot
    gets its own line and only the first carries the hop number.
    """
    hosts = [formatter.label(r.address) for r in result.responses]
    hop = f"{result.ttl:>2}"

    def interval(i):
        if i < len(result.responses):
            return f"{result.responses[i].round_trip_ms:.2f} ms"
        return NO_INFO_SYM

    single_line = len(hosts) < 2 or all(h == hosts[0] for h in hosts)
    if single_line:
        columns = [f" {hop}"] + hosts[:1] + [interval(i) for i in range(probes_per_hop)]
        return ["  ".join(columns)]

    lines = []
    for i in range(probes_per_hop):
        hop_column = hop if i == 0 else "  "
        columns = [f" {hop_column}"] + hosts[i:i + 1] + [interval(i)]
        lines.append("  ".join(columns))
    return lines


class TraceRoute(ProbeSession):
    """Path prober: raises the TTL one hop per round until the destination answers."""

    name = "traceroute"

    def __init__(self, max_hops=config.TRACE_MAX_HOPS, probes_per_hop=config.TRACE_PROBES_PER_HOP,
                 timeout=config.TRACE_HOP_TIMEOUT_S, **kwargs):
        super().__init__(**kwargs)
        self.max_hops = max_hops
        self.probes_per_hop = probes_per_hop
        self.timeout = timeout
        self.ttl = 0
        self.current_result = None
        self._round_started_at = None

    def _session_started(self):
        self.ttl = 0
        self.current_result = None

    def _ready(self, address):
        if self.ttl == 0:
            ipaddr = self.formatter.numeric(address) or "?"
            self.emit(f"traceroute to {self.host} ({ipaddr}), {self.max_hops} hops max, {self.data_size} byte packets")
        self._send_next_hop()

    def _send_next_hop(self):
        self.ttl += 1
        if self.ttl > self.max_hops:
            self._finish()
            return
        self.current_result = HopResult(ttl=self.ttl)
        self._arm_timer(self.timeout, self._hop_timeout)
        self._round_started_at = self.now()
        self._transport.send_probe_batch(self.ttl, self.probes_per_hop)

    def _reply(self, sequence, address, payload):
        self._response(address, reached_destination=True)

    def _unexpected(self, address, payload):
        self._response(address, reached_destination=False)

    def _send_failed(self, sequence, error):
        logging.warning(f"[{self.host}] Probe icmp_seq={sequence} at TTL {self.ttl} failed to send: {error}")

    def _response(self, address, reached_destination):
        if self.current_result is None:
            logging.debug(f"[{self.host}] Response from {address} outside a hop round ignored.")
            return
        elapsed_ms = (self.now() - self._round_started_at) * 1000.0
        self.current_result.responses.append(HopResponse(address, elapsed_ms, reached_destination))
        if len(self.current_result.responses) < self.probes_per_hop:
            return
        self._cancel_timer()
        done = self._log_current_result()
        if done:
            self._finish()
        else:
            self._send_next_hop()

    def _hop_timeout(self):
        logging.info(f"[{self.host}] Timeout at TTL {self.ttl} with "
                     f"{len(self.current_result.responses)}/{self.probes_per_hop} responses.")
        done = self._log_current_result()
        if done:
            self._finish()
        else:
            # Restart without resetting ttl; the next round begins once the new transport is ready
            self._restart_transport()

    def _log_current_result(self):
        """Logs and clears the current hop; returns True when the trace is complete."""
        result, self.current_result = self.current_result, None
        if result is None:
            return self.ttl >= self.max_hops
        for line in format_hop(result, self.probes_per_hop, self.formatter):
            self.emit(line)
        # Any response that reached the destination counts, even from a partial hop
        return self.ttl >= self.max_hops or result.reached_destination
