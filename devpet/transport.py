from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

import serial

logger = logging.getLogger("devpet.transport")

DEFAULT_BAUD_RATE = 9600
MAX_LINE_BYTES = 4096

LineHandler = Callable[[bytes], None]
ErrorHandler = Callable[[BaseException], None]


class SerialLineTransport:
    """Line-framed transport over a serial device (e.g. /dev/rfcomm0).

    A daemon thread drains the port with readline() and pushes every complete
    line to the registered handler. Read errors are reported to the error
    handler and stop the reader; the caller's process keeps running. Lines longer
    than `max_line_bytes` are dropped and counted in `overflow_count`.
    """

    def __init__(
        self,
        port: serial.Serial,
        *,
        thread_name: str = "devpet-serial-reader",
        max_line_bytes: int = MAX_LINE_BYTES,
    ) -> None:
        self.port = port
        self.max_line_bytes = max_line_bytes
        self.overflow_count = 0
        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._line_handler: Optional[LineHandler] = None
        self._error_handler: Optional[ErrorHandler] = None
        self._thread = threading.Thread(target=self._read_loop, name=thread_name, daemon=True)

    @classmethod
    def open(cls, path: str, *, baud_rate: int = DEFAULT_BAUD_RATE, timeout_s: float = 1.0) -> SerialLineTransport:
        logger.info("opening serial port at %s (baud=%s)", path, baud_rate)
        port = serial.Serial(port=path, baudrate=baud_rate, timeout=timeout_s)
        return cls(port)

    def set_line_handler(self, handler: LineHandler) -> None:
        self._line_handler = handler

    def set_error_handler(self, handler: ErrorHandler) -> None:
        self._error_handler = handler

    def start(self) -> None:
        if not self._thread.is_alive():
            self._thread.start()

    def write(self, data: bytes) -> None:
        with self._write_lock:
            self.port.write(data)

    def close(self) -> None:
        self._stop.set()
        self.port.close()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=2.0)

    def _read_loop(self) -> None:
        pending = b""
        discarding = False
        while not self._stop.is_set():
            try:
                chunk = self.port.readline()
            except (serial.SerialException, OSError, TypeError) as exc:
                # pyserial raises TypeError when the port is closed under a blocked read.
                if self._stop.is_set():
                    return
                self._report_error(exc)
                return

            if not chunk:
                continue

            pending += chunk
            if not pending.endswith(b"\n"):
                # readline() timed out mid-line; keep the partial bytes up to the cap.
                if len(pending) > self.max_line_bytes:
                    if not discarding:
                        self._report_overflow(len(pending))
                    discarding = True
                    pending = b""
                continue

            line, pending = pending, b""
            if discarding or len(line) > self.max_line_bytes:
                # Tail of an oversized line; drop it and resync on the next one.
                if not discarding:
                    self._report_overflow(len(line))
                discarding = False
                continue

            handler = self._line_handler
            if handler is not None:
                handler(line)

    def _report_overflow(self, size: int) -> None:
        self.overflow_count += 1
        logger.warning("dropping line longer than %s bytes (read %s so far)", self.max_line_bytes, size)


    def _report_error(self, exc: BaseException) -> None:
        handler = self._error_handler
        if handler is None:
            logger.error("serial error: %r", exc)
            return
        handler(exc)
