#!/usr/bin/env python3

import errno
import socket

# Resolver failures reported through socket.gaierror
_UNKNOWN_HOST_CODES = {
    code for code in (
        getattr(socket, "EAI_NONAME", None),
        getattr(socket, "EAI_NODATA", None),
    ) if code is not None
}
_DNS_ERROR_CODES = {
    code for code in (
        getattr(socket, "EAI_AGAIN", None),
        getattr(socket, "EAI_FAIL", None),
    ) if code is not None
}

# Connection-level failures reported through OSError.errno
_ERRNO_MESSAGES = {
    errno.ENETUNREACH: "Network Unreachable",
    errno.ENETDOWN: "Network Unreachable",
    errno.EHOSTUNREACH: "Network Unreachable",
    errno.EHOSTDOWN: "Network Unreachable",
    errno.ECONNREFUSED: "Connection Refused",
    errno.ECONNRESET: "Connection Refused",
    errno.ECONNABORTED: "Connection Refused",
    errno.ETIMEDOUT: "Timed Out",
}


def get_error_message(error):
    """
    Maps a transport or resolver error to a short human readable message.

    Known network failures get a category ("Unknown Hostname", "Timed Out", ...).
    Unrecognized resolver codes keep their number for diagnosis, and anything
    that is not a network error falls back to its own description.
    """
    if isinstance(error, socket.gaierror):
        code = error.errno
        if code in _UNKNOWN_HOST_CODES:
            return "Unknown Hostname"
        if code in _DNS_ERROR_CODES:
            return "DNS Error"
        return f"Network Error (code = {code})"

    if isinstance(error, (socket.timeout, TimeoutError)):
        return "Timed Out"

    if isinstance(error, OSError) and error.errno in _ERRNO_MESSAGES:
        return _ERRNO_MESSAGES[error.errno]

    return _describe(error)


def _describe(error):
    strerror = getattr(error, "strerror", None)
    if strerror:
        return strerror
    message = str(error)
    return message if message else type(error).__name__
