#!/usr/bin/env python3

import asyncio
import json
import logging
import os

import websockets
import websockets.exceptions

import config
from event_loop import get_event_loop
from ping import Ping
from traceroute import TraceRoute

SESSION_TYPES = {
    "ping": Ping,
    "traceroute": TraceRoute,
}


class RequestError(ValueError):
    pass


def parse_request(message):
    """
    Validates one client message.

    Accepted shapes are {"type": "ping"|"traceroute", "host": "<name or ip>"}
    and {"type": "stop"}. Raises RequestError with a client-facing message.
    """
    try:
        request = json.loads(message)
    except (json.JSONDecodeError, TypeError):
        raise RequestError("Request must be a JSON object.")
    if not isinstance(request, dict):
        raise RequestError("Request must be a JSON object.")

    kind = request.get("type")
    if kind == "stop":
        return {"type": "stop"}
    if kind not in SESSION_TYPES:
        raise RequestError(f"Unknown request type: {kind!r}.")

    host = request.get("host")
    if not isinstance(host, str) or not host.strip():
        raise RequestError("A non-empty 'host' is required.")
    return {"type": kind, "host": host.strip()}


async def run_session(websocket, session, kind, host, client_log_prefix):
    """Runs a blocking session in a worker thread, streaming its transcript to the client."""
    loop = asyncio.get_running_loop()
    lines = asyncio.Queue()

    def log_line(line):
        loop.call_soon_threadsafe(lines.put_nowait, line)

    logging.info(f"{client_log_prefix} Starting {kind} to {host}...")
    future = loop.run_in_executor(None, session.start, host, log_line)
    # Queued after every transcript line, since start() only returns once logging is done
    future.add_done_callback(lambda _: lines.put_nowait(None))

    try:
        while True:
            line = await lines.get()
            if line is None:
                break
            await websocket.send(json.dumps({"type": "log", "line": line}))
        await future
        await websocket.send(json.dumps({"type": "done", "kind": kind, "host": host}))
        logging.info(f"{client_log_prefix} {kind} to {host} complete.")
    except websockets.exceptions.ConnectionClosed:
        logging.info(f"{client_log_prefix} Connection closed while streaming {kind}; stopping session.")
        session.stop()
    except Exception as e:
        logging.error(f"{client_log_prefix} Unexpected error running {kind}: {e}", exc_info=True)
        session.stop()


async def handle_connection(websocket):
    """Handles one WebSocket client: runs the diagnostics it asks for, one at a time."""
    client_ip, client_port = websocket.remote_address[:2]
    client_log_prefix = f"[{client_ip}:{client_port}]"
    logging.info(f"WebSocket connection established from: {client_ip}:{client_port}")

    session = None
    session_task = None
    try:
        async for message in websocket:
            try:
                request = parse_request(message)
            except RequestError as e:
                logging.warning(f"{client_log_prefix} Rejected request: {e}")
                await websocket.send(json.dumps({"type": "error", "message": str(e)}))
                continue

            if request["type"] == "stop":
                if session is not None:
                    logging.info(f"{client_log_prefix} Stop requested by client.")
                    session.stop()
                continue

            if session_task is not None and not session_task.done():
                await websocket.send(json.dumps({"type": "error", "message": "A diagnostic is already running."}))
                continue

            session = SESSION_TYPES[request["type"]](event_loop=get_event_loop())
            session_task = asyncio.create_task(
                run_session(websocket, session, request["type"], request["host"], client_log_prefix)
            )

        if session_task is not None:
            await session_task
    except websockets.exceptions.ConnectionClosedOK:
        logging.info(f"{client_log_prefix} Connection closed normally during handling.")
    except websockets.exceptions.ConnectionClosedError as e:
        logging.warning(f"{client_log_prefix} Connection closed abnormally during handling: {e}")
    finally:
        if session is not None:
            session.stop()
        logging.info(f"{client_log_prefix} Connection handling complete.")


async def main():
    # Start the shared scheduler before any session needs it
    diag_loop = get_event_loop()

    logging.info(f"Starting WebSocket server on ws://0.0.0.0:{config.SERVER_PORT}")
    logging.info("NOTE: Server likely needs root privileges (sudo) for Scapy.")

    stop_signal = asyncio.Future() # Keeps server running
    try:
        async with websockets.serve(handle_connection, "0.0.0.0", config.SERVER_PORT):
            logging.info("WebSocket server started successfully.")
            await stop_signal
    except OSError as e:
        if "address already in use" in str(e).lower():
            logging.error(f"WebSocket server failed to start: Port {config.SERVER_PORT} is already in use.")
        else:
            logging.error(f"WebSocket server failed to start due to OS error: {e}")
    finally:
        logging.info("Server shutting down...")
        diag_loop.stop()
        logging.info("Server shutdown complete.")


def run():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s: %(message)s')
    # NOTE: Root privileges required for Scapy raw sockets/sniffing.
    if os.geteuid() != 0:
        logging.error("Scapy requires root privileges. Please run with sudo.")
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Server stopped by user.")


if __name__ == "__main__":
    run()
