#!/usr/bin/env python3
# Usage examples:
#   sudo python3 cli.py ping example.com
#   sudo python3 cli.py ping 8.8.8.8 -c 5 -i 0.5 -W 1
#   sudo python3 cli.py traceroute 8.8.8.8 -m 30 -q 3 -w 2

import argparse
import logging
import signal
import threading

import config
from ping import Ping
from traceroute import TraceRoute


def build_session(args):
    if args.command == "ping":
        return Ping(interval=args.interval, timeout=args.timeout, count=args.count, data_size=args.size)
    return TraceRoute(max_hops=args.max_hops, probes_per_hop=args.queries, timeout=args.wait, data_size=args.size)


def build_argparser():
    ap = argparse.ArgumentParser(description="ICMP ping and traceroute diagnostics")
    ap.add_argument("-v", "--verbose", action="store_true", help="Show operational logging")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("ping", help="Send echo requests and report round-trip statistics")
    p.add_argument("host", help="Destination host/IP")
    p.add_argument("-c", "--count", type=int, default=config.PING_COUNT, help="Echo requests to send")
    p.add_argument("-i", "--interval", type=float, default=config.PING_INTERVAL_S, help="Seconds between requests")
    p.add_argument("-W", "--timeout", type=float, default=config.PING_TIMEOUT_S, help="Seconds to wait for each reply")
    p.add_argument("-s", "--size", type=int, default=config.PACKET_DATA_SIZE, help="Payload bytes per request")

    t = sub.add_parser("traceroute", help="Discover the routers on the path to a host")
    t.add_argument("host", help="Destination host/IP")
    t.add_argument("-m", "--max-hops", type=int, default=config.TRACE_MAX_HOPS, help="Maximum TTL to probe")
    t.add_argument("-q", "--queries", type=int, default=config.TRACE_PROBES_PER_HOP, help="Probes per hop")
    t.add_argument("-w", "--wait", type=float, default=config.TRACE_HOP_TIMEOUT_S, help="Seconds to wait for each hop")
    t.add_argument("-s", "--size", type=int, default=config.PACKET_DATA_SIZE, help="Payload bytes per probe")
    return ap


def main(argv=None):
    args = build_argparser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s %(levelname)s: %(message)s')

    session = build_session(args)
    runner = threading.Thread(target=session.start, args=(args.host, print), name=f"{args.command}-session")
    runner.start()
    # Ctrl-C stops the session early; the summary is still printed
    previous = signal.signal(signal.SIGINT, lambda signum, frame: session.stop())
    try:
        while runner.is_alive():
            runner.join(timeout=0.5)
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    main()
