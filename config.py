"""
Configuration constants for the ICMP diagnostics harness.
"""

# --- Network Configuration ---
SERVER_PORT = 8080

# --- Ping Configuration ---
PING_INTERVAL_S = 1.0 # Minimum delay between two echo requests
PING_TIMEOUT_S = 2.0 # Timeout waiting for a single echo reply
PING_COUNT = 10 # Echo requests sent per session

# --- Traceroute Configuration ---
TRACE_MAX_HOPS = 64
TRACE_PROBES_PER_HOP = 3 # Number of probe packets to send for each TTL
TRACE_HOP_TIMEOUT_S = 5.0 # Timeout for waiting for ICMP responses for a given TTL

# --- Packet Configuration ---
PACKET_DATA_SIZE = 56 # ICMP payload bytes, excluding the 8 byte header

# Turn a reply for an unknown icmp_seq into a session-ending error
STRICT_INVARIANTS = False

# --- Scapy Configuration ---
SCAPY_VERBOSITY = 0 # 0 for quiet, 1 for default
SNIFFER_SETTLE_S = 0.2 # Time given to the sniffer before the first probe is sent
