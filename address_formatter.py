#!/usr/bin/env python3

import logging
import socket

class AddressFormatter:
    """Best-effort reverse lookups for addresses reported by the transport."""

    def _sockaddr(self, address):
        if isinstance(address, tuple):
            return address[:2]
        return (address, 0)

    def _name_info(self, address, flags):
        try:
            host, _ = socket.getnameinfo(self._sockaddr(address), flags)
        except (socket.gaierror, socket.herror, OSError, TypeError, ValueError) as e:
            logging.debug(f"getnameinfo failed for {address!r} (flags={flags}): {e}")
            return None
        return host or None

    def hostname(self, address):
        """Resolved name of address, or None when it has no name."""
        return self._name_info(address, socket.NI_NAMEREQD)

    def numeric(self, address):
        """Dotted numeric form of address, or None if it is not a valid address."""
        return self._name_info(address, socket.NI_NUMERICHOST)

    def label(self, address):
        """'hostname (numeric)' label used by traceroute output; '?' when nothing resolves."""
        numeric = self.numeric(address)
        name = self.hostname(address) or numeric
        if name is None:
            return "?"
        return f"{name} ({numeric or '?'})"
