# vk_wrapper/core/runtime.py
"""
A private asyncio loop on a daemon thread.

The supervisor's coroutines all run here; the webview bridge, the
window-closing hook and signal handlers live on other threads and hand
work over with `run()`.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Coroutine, Optional

log = logging.getLogger(__name__)


class BackgroundLoop:
    def __init__(self, name: str = "supervisor-loop") -> None:
        self.name = name
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    def start(self) -> "BackgroundLoop":
        if self._thread is not None:
            return self

        def _target() -> None:
            self.loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self.loop)
            self._started.set()
            self.loop.run_forever()

        self._thread = threading.Thread(target=_target, name=self.name, daemon=True)
        self._thread.start()
        self._started.wait()
        return self

    def run(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """Run `coro` on the loop and block the calling thread for its result."""
        if self.loop is None:
            raise RuntimeError("BackgroundLoop.start() has not been called")
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self.loop is None or self._thread is None:
            return
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        if not self.loop.is_running():
            self.loop.close()
        self.loop = None
        self._thread = None
        self._started.clear()
        log.debug("%s stopped", self.name)
