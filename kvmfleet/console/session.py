"""Serial console session for a VM process.

The hypervisor runs with its serial port on stdio, so the console is the
process's terminal. pexpect owns that terminal; this module adds the
delimiter-framed waiting that first-boot prompts need (``login:`` and
``New password:`` never end in a newline) and maps pexpect's TIMEOUT and
EOF onto the fleet error taxonomy.

All methods block. Supervisors call them through ``asyncio.to_thread``;
killing the VM process unblocks a pending wait with StreamClosedError.
"""

from __future__ import annotations

import logging
import time
from typing import Sequence

import pexpect

from kvmfleet.console.transcript import ConsoleTranscript
from kvmfleet.errors import ConsoleTimeoutError, StreamClosedError

logger = logging.getLogger(__name__)


class ConsoleSession:
    """Bidirectional serial console of one VM."""

    def __init__(
        self,
        child: "pexpect.spawn",
        transcript: ConsoleTranscript | None = None,
        delimiter: str = ":",
        vm_index: int | None = None,
    ):
        self.child = child
        self.transcript = transcript
        self.delimiter = delimiter
        self.vm_index = vm_index
        if transcript is not None:
            self.child.logfile_read = transcript

    @classmethod
    def spawn(
        cls,
        argv: Sequence[str],
        transcript: ConsoleTranscript | None = None,
        delimiter: str = ":",
        vm_index: int | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> "ConsoleSession":
        """Start ``argv`` on a new pseudo terminal and attach to it."""
        logger.debug(f"Starting console process: {' '.join(argv)}", extra={"vm_index": vm_index})
        child = pexpect.spawn(
            argv[0],
            list(argv[1:]),
            cwd=cwd,
            env=env,
            encoding="utf-8",
            codec_errors="replace",
            timeout=None,
            echo=False,
            dimensions=(24, 512),
        )
        return cls(child, transcript=transcript, delimiter=delimiter, vm_index=vm_index)

    @property
    def pid(self) -> int | None:
        return self.child.pid if self.child is not None else None

    def is_alive(self) -> bool:
        if self.child is None:
            return False
        try:
            return self.child.isalive()
        except pexpect.ExceptionPexpect:
            return False

    @property
    def log_path(self) -> str | None:
        if self.transcript is None:
            return None
        return str(self.transcript.path)

    def _closed_error(self, waiting_for: str = "") -> StreamClosedError:
        status = ""
        if self.child is not None and not self.is_alive():
            if self.child.signalstatus is not None:
                status = f" (killed by signal {self.child.signalstatus})"
            elif self.child.exitstatus is not None:
                status = f" (exit status {self.child.exitstatus})"
        what = f" while waiting for '{waiting_for}'" if waiting_for else ""
        return StreamClosedError(
            f"VM process exited{what}{status}",
            vm_index=self.vm_index,
            log_path=self.log_path,
        )

    def send(self, line: str, secret: bool = False) -> None:
        """Write ``line`` followed by a newline to the console."""
        if not self.is_alive():
            raise self._closed_error()
        try:
            self.child.sendline(line)
        except OSError as e:
            raise StreamClosedError(
                f"Console write failed: {e}",
                vm_index=self.vm_index,
                log_path=self.log_path,
            ) from e
        if self.transcript is not None:
            self.transcript.record_input(line, secret=secret)

    def read_until(self, delimiter: str | None = None, timeout: float = 30) -> str:
        """Return the next unit of output, up to and including ``delimiter``."""
        delimiter = delimiter or self.delimiter
        try:
            self.child.expect_exact(delimiter, timeout=max(timeout, 0))
        except pexpect.TIMEOUT:
            raise ConsoleTimeoutError(
                f"No '{delimiter}' on console within {timeout:.0f}s",
                expected=delimiter,
                vm_index=self.vm_index,
                log_path=self.log_path,
            ) from None
        except pexpect.EOF:
            raise self._closed_error() from None
        except pexpect.ExceptionPexpect as e:
            raise StreamClosedError(
                f"Console read failed: {e}",
                vm_index=self.vm_index,
                log_path=self.log_path,
            ) from e
        return self.child.before + self.child.after

    def wait_for(self, substring: str, timeout: float) -> str:
        """Consume output until a delimiter-framed unit contains ``substring``.

        Returns the matching unit. Raises ConsoleTimeoutError when
        ``timeout`` elapses first and StreamClosedError when the process
        exits first.
        """
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise self._timeout(substring, timeout)
            try:
                unit = self.read_until(timeout=remaining)
            except ConsoleTimeoutError:
                raise self._timeout(substring, timeout) from None
            except StreamClosedError:
                raise self._closed_error(substring) from None
            if substring in unit:
                return unit

    def _timeout(self, substring: str, timeout: float) -> ConsoleTimeoutError:
        tail = ""
        try:
            tail = (self.child.before or "")[-200:]
        except (AttributeError, TypeError):
            tail = ""
        logger.debug(
            f"Timeout waiting for {substring!r} (buffer tail={tail!r})",
            extra={"vm_index": self.vm_index},
        )
        return ConsoleTimeoutError(
            f"'{substring}' did not appear on console within {timeout:.0f}s",
            expected=substring,
            vm_index=self.vm_index,
            log_path=self.log_path,
        )

    def close(self) -> None:
        """Terminate the process if still running and release the terminal."""
        if self.child is not None:
            try:
                self.child.close(force=True)
            except pexpect.ExceptionPexpect as e:
                logger.warning(f"Console process did not terminate: {e}", extra={"vm_index": self.vm_index})
        if self.transcript is not None:
            self.transcript.flush()
            self.transcript.close()
