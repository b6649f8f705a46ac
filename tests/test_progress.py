import logging
import queue
import threading

import pytest

from kvbackup.progress import ProgressPrinter, start_progress


class _QueueWriter:
    def __init__(self):
        self.items = queue.Queue()

    def write(self, text):
        self.items.put(text)
        return len(text)


def _next(writer):
    return writer.items.get(timeout=5)


def _drain(writer):
    out = []
    while not writer.items.empty():
        out.append(writer.items.get_nowait())
    return out


def test_progress_total_two():
    writer = _QueueWriter()
    printer = ProgressPrinter("test", 2, False)
    printer.start(threading.Event(), writer)
    printer.update()
    assert "50" in _next(writer)
    printer.update()
    assert "100" in _next(writer)
    printer.update()
    assert "100" in _next(writer)
    printer.close()


def test_progress_close_jumps_to_total():
    writer = _QueueWriter()
    printer = ProgressPrinter("test", 4, False)
    printer.start(threading.Event(), writer)
    printer.update()
    assert "25" in _next(writer)
    printer.update()
    printer.close()
    rest = _drain(writer)
    assert "100" in rest[-1]


def test_progress_cancel_keeps_position():
    cancel = threading.Event()
    writer = _QueueWriter()
    printer = ProgressPrinter("test", 8, False)
    printer.start(cancel, writer)
    printer.update()
    printer.update()
    _next(writer)
    assert "25" in _next(writer)
    cancel.set()
    assert "25" in _next(writer)
    printer.close()


def test_update_after_close_raises():
    printer = ProgressPrinter("test", 1, False)
    printer.start(None, _QueueWriter())
    printer.close()
    with pytest.raises(RuntimeError):
        printer.update()


def test_redirect_log(caplog):
    caplog.set_level(logging.INFO, logger="kvbackup.progress")
    printer = start_progress("Full Backup", 1, True)
    printer.update()
    printer.close()
    messages = [record.getMessage() for record in caplog.records]
    assert messages[-1] == "Full Backup progress=100.00%"