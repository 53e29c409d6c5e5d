"""Console transcript and serial log capture."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import TextIO

SECRET_MASK = "********"


class ConsoleTranscript:
    """Append-only record of a VM's serial console.

    Passed to pexpect as ``logfile_read``: everything the VM prints goes to
    the raw serial log and to the transcript. Lines sent to the VM are only
    added to the transcript, prefixed with ``>>> `` and with secrets masked.
    """

    def __init__(self, path: Path, serial_log_path: Path | None = None):
        self.path = Path(path)
        self.serial_log_path = Path(serial_log_path) if serial_log_path else None
        self._lock = threading.Lock()
        self._transcript: TextIO | None = open(self.path, "a", encoding="utf-8")
        self._serial: TextIO | None = None
        if self.serial_log_path is not None:
            self._serial = open(self.serial_log_path, "a", encoding="utf-8")

    def write(self, data: str) -> None:
        with self._lock:
            if self._serial is not None:
                self._serial.write(data)
            if self._transcript is not None:
                self._transcript.write(data)

    def flush(self) -> None:
        with self._lock:
            if self._serial is not None:
                self._serial.flush()
            if self._transcript is not None:
                self._transcript.flush()

    def record_input(self, line: str, secret: bool = False) -> None:
        shown = SECRET_MASK if secret else line
        with self._lock:
            if self._transcript is not None:
                self._transcript.write(f"\n>>> {shown}\n")
                self._transcript.flush()

    def note(self, message: str) -> None:
        """Add an orchestrator note (not console data) to the transcript."""
        with self._lock:
            if self._transcript is not None:
                self._transcript.write(f"\n### {message}\n")
                self._transcript.flush()

    def close(self) -> None:
        with self._lock:
            for f in (self._serial, self._transcript):
                if f is not None:
                    f.close()
            self._serial = None
            self._transcript = None

    @property
    def closed(self) -> bool:
        return self._transcript is None
