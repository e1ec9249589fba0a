#!/usr/bin/env python3

import errno
import logging
import random
import socket
import time

import netifaces
import config

try:
    from scapy.all import IP, ICMP, Raw, AsyncSniffer, send, conf
    from scapy.layers.inet import ICMPerror
except ImportError:
    logging.error("Scapy is not installed or import failed. Please run: pip install scapy")
    raise
except OSError as e:
    logging.error(f"Error initializing Scapy in transport module: {e}")
    raise

conf.verb = config.SCAPY_VERBOSITY

ICMP_ECHO_REPLY = 0
ICMP_DEST_UNREACH = 3
ICMP_ECHO_REQUEST = 8
ICMP_TIME_EXCEEDED = 11


def get_local_ip():
    """Finds a suitable non-loopback IPv4 address to filter incoming ICMP on."""
    try:
        for iface_name in netifaces.interfaces():
            if iface_name == 'lo': continue
            ifaddresses = netifaces.ifaddresses(iface_name)
            if netifaces.AF_INET in ifaddresses:
                for link in ifaddresses[netifaces.AF_INET]:
                    ip = link.get('addr')
                    # Prefer non-link-local, non-loopback IPs
                    if ip and not ip.startswith('127.') and not ip.startswith('169.254.'):
                        return ip
    except Exception as e:
        logging.error(f"Could not determine local IP: {e}")
    return None


def resolve_host(host):
    """Resolves host to an IPv4 address string. Raises socket.gaierror on failure."""
    infos = socket.getaddrinfo(host, None, socket.AF_INET)
    return infos[0][4][0]


class IcmpTransport:
    """
    Raw ICMP echo transport for one diagnostic session.

    Packets are built and sent with Scapy; replies are captured by an
    AsyncSniffer thread and handed to the delegate on the event loop.
    Every delegate callback receives this transport as its first argument so
    the delegate can drop events from a transport it has already replaced.

    A transport is single-use: once closed it cannot be opened again.
    """

    def __init__(self, host, delegate, event_loop, token, first_sequence=0, data_size=config.PACKET_DATA_SIZE):
        self.host = host
        self.token = token
        self.identifier = random.randint(0, 0xFFFF)
        self.address = None
        self._delegate = delegate
        self._event_loop = event_loop
        self._next_sequence = first_sequence & 0xFFFF
        self._payload = bytes(i & 0xFF for i in range(data_size))
        self._sniffer = None
        self._opened = False
        self._closed = False

    def open(self):
        """Resolves the host and starts capturing; reports on_ready or on_failed."""
        if self._opened:
            raise RuntimeError("IcmpTransport cannot be reopened")
        self._opened = True
        logging.debug(f"[{self.host}] Opening ICMP transport (token {self.token}, id {self.identifier:#06x})")
        self._event_loop.run_in_executor(self._start_blocking, on_done=self._open_finished)

    def _start_blocking(self):
        address = resolve_host(self.host)
        local_ip = get_local_ip()
        bpf_filter = f"icmp and dst host {local_ip}" if local_ip else "icmp"
        sniffer = AsyncSniffer(filter=bpf_filter, prn=self._packet_callback, store=False)
        sniffer.start()
        time.sleep(config.SNIFFER_SETTLE_S) # Give sniffer time to init
        if sniffer.thread is None or not sniffer.thread.is_alive():
            raise OSError(errno.EPERM, "ICMP sniffer failed to start. Check permissions and interface.")
        return address, sniffer

    def _open_finished(self, future):
        try:
            address, sniffer = future.result()
        except Exception as e:
            logging.error(f"[{self.host}] ICMP transport failed to start: {e}")
            self._post("on_failed", e)
            return
        if self._closed:
            self._event_loop.run_in_executor(self._stop_sniffer, sniffer)
            return
        self.address = address
        self._sniffer = sniffer
        self._post("on_ready", address)

    def send_echo(self):
        """Sends one echo request to the resolved address."""
        self._send(IP(dst=self.address))

    def send_probe_batch(self, ttl, count):
        """Sends count echo requests limited to ttl hops."""
        for _ in range(count):
            self._send(IP(dst=self.address, ttl=ttl))

    def _send(self, ip_layer):
        if self._closed or self.address is None:
            return
        sequence = self._next_sequence
        self._next_sequence = (sequence + 1) & 0xFFFF
        packet = ip_layer / ICMP(type=ICMP_ECHO_REQUEST, id=self.identifier, seq=sequence) / Raw(load=self._payload)
        # Queued before sending so the delegate sees it ahead of any captured reply
        self._post("on_sent", sequence)
        try:
            send(packet, verbose=0)
        except OSError as e:
            logging.error(f"[{self.host}] OS Error sending packet (seq {sequence}): {e}. Check permissions.")
            self._post("on_send_failed", sequence, e)

    def _packet_callback(self, packet):
        """Callback function for the Scapy sniffer; runs on the sniffer thread."""
        try:
            if ICMP not in packet or IP not in packet:
                return
            icmp_layer = packet[ICMP]
            source = packet[IP].src
            if icmp_layer.type == ICMP_ECHO_REPLY:
                if icmp_layer.id == self.identifier:
                    self._post("on_reply", icmp_layer.seq, source, bytes(icmp_layer))
            elif icmp_layer.type in (ICMP_DEST_UNREACH, ICMP_TIME_EXCEEDED):
                # The error quotes the original request, which carries our identifier
                if ICMPerror in packet and packet[ICMPerror].id == self.identifier:
                    self._post("on_unexpected", source, bytes(icmp_layer))
        except Exception as e:
            logging.error(f"Error in ICMP callback: {e}")

    def _post(self, event, *args):
        if self._closed:
            return
        self._event_loop.call_soon(self._dispatch, event, args)

    def _dispatch(self, event, args):
        if self._closed:
            return
        getattr(self._delegate, event)(self, *args)

    def close(self):
        """Stops capturing. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        sniffer, self._sniffer = self._sniffer, None
        if sniffer is not None:
            self._event_loop.run_in_executor(self._stop_sniffer, sniffer)
        logging.debug(f"[{self.host}] ICMP transport closed (token {self.token}).")

    def _stop_sniffer(self, sniffer):
        try:
            if sniffer.running:
                sniffer.stop()
        except Exception as e:
            logging.warning(f"[{self.host}] Sniffer did not stop cleanly: {e}")
