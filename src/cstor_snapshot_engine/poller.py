from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from .errors import error_message
from .models import STATUS_EMPTY, is_terminal_status

DEFAULT_POLL_INTERVAL_SECONDS = 5.0


class StatusPoller:
    """Polls a control-plane job on a background thread until it is terminal.

    Each observed status goes to ``on_status``. The loop exits on a terminal
    status or once ``cancel`` is called, whichever comes first.
    """

    def __init__(
        self,
        *,
        name: str,
        probe: Callable[[], str],
        on_status: Callable[[str], object],
        interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        on_terminal: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self._probe = probe
        self._on_status = on_status
        self._on_terminal = on_terminal
        self._interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._terminal = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_status = STATUS_EMPTY

    @property
    def last_status(self) -> str:
        return self._last_status

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"status poller {self.name} already started")
        self._thread = threading.Thread(target=self._poll_loop, name=f"StatusPoller-{self.name}", daemon=True)
        self._thread.start()

    def wait_for_terminal(self, timeout: float | None) -> bool:
        return self._terminal.wait(timeout)

    def cancel(self, join_timeout: float = 2.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                logger.warning(
                    "Status poller {} still running {}s after cancel; its probe is blocked", self.name, join_timeout
                )

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _poll_loop(self) -> None:
        logger.debug("Status poller {} started", self.name)
        while not self._stop.wait(self._interval_seconds):
            try:
                status = self._probe()
            except Exception as error:  # pylint: disable=broad-except
                logger.warning("Status poll for {} failed: {}", self.name, error_message(error))
                continue

            if self._stop.is_set():
                break
            self._last_status = status
            self._on_status(status)
            logger.debug("Status poller {} observed {!r}", self.name, status)
            if is_terminal_status(status):
                self._terminal.set()
                if self._on_terminal is not None:
                    self._on_terminal()
                break
        logger.debug("Status poller {} exiting", self.name)
