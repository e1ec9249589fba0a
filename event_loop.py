#!/usr/bin/env python3

import asyncio
import logging
import threading

class EventLoop:
    """
    Single-threaded scheduler shared by the diagnostic engines.

    An asyncio loop runs forever in one daemon thread. Transport callbacks,
    timers and send scheduling all execute on that thread, so no two engine
    callbacks ever run concurrently.
    """

    def __init__(self, name="DiagEventLoop"):
        self.name = name
        self._loop = asyncio.new_event_loop()
        self._thread = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    def start(self):
        """Starts the loop thread. Calling it again is a no-op."""
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        self._ready.wait()
        logging.debug(f"Event loop thread '{self.name}' started.")

    def _run(self):
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()
            logging.debug(f"Event loop thread '{self.name}' stopped.")

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def in_loop_thread(self):
        return threading.current_thread() is self._thread

    def time(self):
        """Monotonic clock of the loop, in seconds."""
        return self._loop.time()

    def call_soon(self, callback, *args):
        """Queues callback on the loop. Safe from any thread."""
        self._loop.call_soon_threadsafe(callback, *args)

    def call_later(self, delay, callback, *args):
        """Arms a timer. Must be called on the loop thread; returns a cancellable handle."""
        if not self.in_loop_thread():
            raise RuntimeError("call_later used outside the event loop thread")
        return self._loop.call_later(max(0.0, delay), callback, *args)

    def run_in_executor(self, func, *args, on_done=None):
        """
        Runs blocking work on the default thread pool.
        on_done(future) is invoked back on the loop thread once func returns or raises.
        """
        if not self.in_loop_thread():
            raise RuntimeError("run_in_executor used outside the event loop thread")
        future = self._loop.run_in_executor(None, func, *args)
        if on_done is not None:
            future.add_done_callback(on_done)
        return future

    def stop(self, timeout=2.0):
        with self._lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        thread.join(timeout=timeout)
        if thread.is_alive():
            logging.warning(f"Event loop thread '{self.name}' did not exit cleanly after {timeout} seconds.")


_default_loop = None
_default_loop_lock = threading.Lock()

def get_event_loop():
    """Returns the process-wide event loop, starting it on first use."""
    global _default_loop
    with _default_loop_lock:
        if _default_loop is None:
            _default_loop = EventLoop()
        loop = _default_loop
    loop.start()
    return loop
