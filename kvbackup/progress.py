"""Progress reporting to a terminal, a log, or any writer."""

from __future__ import annotations

import logging
import queue
import sys
import threading
from typing import Callable, Protocol

log = logging.getLogger(__name__)

_DONE = object()
_POLL_SECONDS = 0.05
_BAR_WIDTH = 40
_SPINNER = "-\\|/"
_RED = "\x1b[31m"
_RESET = "\x1b[0m"


class _Writer(Protocol):
    def write(self, text: str) -> object: ...


class ProgressPrinter:
    """Counts updates in a background thread and reports the percentage."""

    def __init__(self, name: str, total: int, redirect_log: bool) -> None:
        self.name = name
        self.total = total
        self.redirect_log = redirect_log
        self._updates: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._closed = False
        self._steps = 0

    def _percent(self, current: int) -> str:
        value = current / self.total * 100 if self.total > 0 else 0.0
        return f"{value:.2f}%"

    def _renderer(self, writer: _Writer | None) -> Callable[[int, bool], None]:
        if writer is not None:
            return lambda current, final: writer.write(self._percent(current))
        if self.redirect_log:
            return lambda current, final: log.info(
                "%s progress=%s", self.name, self._percent(current)
            )
        return self._render_terminal

    def _render_terminal(self, current: int, final: bool) -> None:
        fraction = current / self.total if self.total > 0 else 0.0
        filled = min(_BAR_WIDTH, int(_BAR_WIDTH * fraction))
        if filled < _BAR_WIDTH:
            spinner = _SPINNER[self._steps % len(_SPINNER)]
            body = "-" * filled + spinner + "." * (_BAR_WIDTH - filled - 1)
        else:
            body = "-" * _BAR_WIDTH
        self._steps += 1
        line = f"\r{_RED}{self.name}{_RESET} <{body}> {self._percent(current)}"
        sys.stderr.write(line + ("\n" if final else ""))
        sys.stderr.flush()

    def start(
        self,
        cancel_event: threading.Event | None = None,
        writer: _Writer | None = None,
    ) -> None:
        """Start reporting; stop when closed or when cancel_event is set."""
        if self._thread is not None:
            raise RuntimeError("progress already started")
        cancel = cancel_event if cancel_event is not None else threading.Event()
        render = self._renderer(writer)
        self._thread = threading.Thread(
            target=self._run, args=(cancel, render), name=f"progress-{self.name}", daemon=True
        )
        self._thread.start()

    def _run(self, cancel: threading.Event, render: Callable[[int, bool], None]) -> None:
        counter = 0
        try:
            while True:
                try:
                    item = self._updates.get(timeout=_POLL_SECONDS)
                except queue.Empty:
                    if cancel.is_set():
                        return
                    continue
                if cancel.is_set():
                    return
                if item is _DONE:
                    counter = self.total
                    return
                counter += 1
                render(min(counter, self.total), False)
        finally:
            render(min(counter, self.total), True)

    def update(self) -> None:
        """Record one finished unit of work."""
        if self._closed:
            raise RuntimeError("progress is closed")
        self._updates.put(None)

    def close(self) -> None:
        """Mark the work complete and wait for the final report."""
        if self._closed:
            return
        self._closed = True
        self._updates.put(_DONE)
        if self._thread is not None:
            self._thread.join()


def start_progress(
    name: str,
    total: int,
    redirect_log: bool,
    cancel_event: threading.Event | None = None,
) -> ProgressPrinter:
    """Create and start a progress printer."""
    printer = ProgressPrinter(name, total, redirect_log)
    printer.start(cancel_event, None)
    return printer