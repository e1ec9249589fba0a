#!/usr/bin/env python3

import logging
import threading

import config
from address_formatter import AddressFormatter
from event_loop import get_event_loop
from network_error import get_error_message


class ProbeSession:
    """
    Shared plumbing of the ping and traceroute engines.

    start() hands the session to the event loop and blocks on a completion
    event; everything else (transport callbacks, timers, sends) runs on the
    loop thread. Each transport is opened with a fresh generation token, and
    callbacks from any other token are dropped, which is how a restarted or
    stopped session ignores packets still in flight.
    """

    name = "probe"

    def __init__(self, event_loop=None, transport_factory=None, address_formatter=None,
                 data_size=config.PACKET_DATA_SIZE):
        self.data_size = data_size
        self.formatter = address_formatter or AddressFormatter()
        self.host = None
        self._event_loop = event_loop
        self._transport_factory = transport_factory
        self._log = None
        self._transport = None
        self._token = 0
        self._timer = None
        self._next_sequence = 0
        self._active = False
        self._started = False
        self._finished = threading.Event()
        self._start_lock = threading.Lock()

    @property
    def finished(self):
        return self._finished.is_set()

    def start(self, host, log):
        """Runs the diagnostic against host, sending each transcript line to log. Blocks until done."""
        with self._start_lock:
            if self._started or self._finished.is_set():
                raise RuntimeError(f"{type(self).__name__} sessions are single-use; create a new instance")
            # Resolved under the lock so a concurrent stop() always finds a loop
            if self._event_loop is None:
                self._event_loop = get_event_loop()
            if self._transport_factory is None:
                from transport import IcmpTransport
                self._transport_factory = IcmpTransport
            self.host = host
            self._log = log
            self._started = True
        self._event_loop.call_soon(self._begin)
        self._finished.wait()

    def stop(self):
        """Requests early termination. Safe from any thread, idempotent."""
        with self._start_lock:
            if not self._started:
                self._finished.set()
                return
        if not self._finished.is_set():
            self._event_loop.call_soon(self._finish)

    def _begin(self):
        if self._finished.is_set():
            return
        self._active = True
        logging.info(f"[{self.host}] Starting {self.name} session.")
        self._session_started()
        self._open_transport()

    def _open_transport(self):
        """Opens a fresh transport, closing the current one; numbering continues where it left off."""
        if self._transport is not None:
            self._transport.close()
        self._token += 1
        self._transport = self._transport_factory(
            self.host, self, self._event_loop, self._token,
            first_sequence=self._next_sequence, data_size=self.data_size,
        )
        self._transport.open()

    def _restart_transport(self):
        logging.info(f"[{self.host}] Restarting transport after timeout.")
        self._open_transport()

    def _finish(self):
        if not self._active:
            self._finished.set()
            return
        self._active = False
        self._token += 1
        self._cancel_timer()
        if self._transport is not None:
            self._transport.close()
        self._session_ended()
        logging.info(f"[{self.host}] {self.name} session finished.")
        self._finished.set()

    # --- Timer: at most one armed at a time ---

    def _arm_timer(self, delay, callback):
        self._cancel_timer()
        self._timer = self._event_loop.call_later(delay, self._timer_fired, callback)

    def _timer_fired(self, callback):
        self._timer = None
        if self._active:
            callback()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def emit(self, line):
        try:
            self._log(line)
        except Exception as e:
            logging.error(f"[{self.host}] Log sink raised while writing {line!r}: {e}")

    def now(self):
        return self._event_loop.time()

    # --- Transport delegate ---

    def _is_current(self, transport):
        if self._active and transport.token == self._token:
            return True
        logging.debug(f"[{self.host}] Dropping callback from stale transport (token {transport.token}, current {self._token}).")
        return False

    def on_ready(self, transport, address):
        if self._is_current(transport):
            self._ready(address)

    def on_failed(self, transport, error):
        if not self._is_current(transport):
            return
        self.emit(f"{self.name}: {get_error_message(error)}")
        self._finish()

    def on_sent(self, transport, sequence):
        if not self._is_current(transport):
            return
        self._next_sequence = (sequence + 1) & 0xFFFF
        self._sent(sequence)

    def on_send_failed(self, transport, sequence, error):
        if not self._is_current(transport):
            return
        self._next_sequence = (sequence + 1) & 0xFFFF
        self._send_failed(sequence, error)

    def on_reply(self, transport, sequence, address, payload):
        if self._is_current(transport):
            self._reply(sequence, address, payload)

    def on_unexpected(self, transport, address, payload):
        if self._is_current(transport):
            self._unexpected(address, payload)

    # --- Hooks for the engines ---

    def _session_started(self):
        pass

    def _session_ended(self):
        pass

    def _ready(self, address):
        raise NotImplementedError

    def _sent(self, sequence):
        pass

    def _send_failed(self, sequence, error):
        pass

    def _reply(self, sequence, address, payload):
        raise NotImplementedError

    def _unexpected(self, address, payload):
        raise NotImplementedError
