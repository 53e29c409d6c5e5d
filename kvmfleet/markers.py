"""Filesystem readiness and failure markers.

One file per VM per state, ``vm.<index>.running`` once a VM is ready and
``vm.<index>.terminated`` once it has failed. Markers are created with
exclusive create and never rewritten, and a VM never gets both. They exist
for operators and outside tooling; the coordinator itself waits on
in-process results.
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)

_MARKER_RE = re.compile(r"^vm\.(\d+)\.(running|terminated)$")


class MarkerKind(str, Enum):
    READY = "running"
    FAILED = "terminated"


class MarkerStore:
    """Append-once marker files in a work directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path(self, index: int, kind: MarkerKind) -> Path:
        return self.directory / f"vm.{index}.{kind.value}"

    def _write(self, index: int, kind: MarkerKind, body: str) -> bool:
        other = MarkerKind.FAILED if kind == MarkerKind.READY else MarkerKind.READY
        if self.path(index, other).exists():
            logger.warning(
                f"Not marking VM #{index} {kind.value}: already {other.value}",
                extra={"vm_index": index},
            )
            return False
        try:
            fd = os.open(self.path(index, kind), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            return False
        try:
            with os.fdopen(fd, "w") as f:
                f.write(body)
        except OSError:
            self.path(index, kind).unlink(missing_ok=True)
            raise
        return True

    def mark_ready(self, index: int) -> bool:
        """Record that VM ``index`` is ready. Returns False if it already had a marker."""
        return self._write(index, MarkerKind.READY, "ready\n")

    def mark_failed(self, index: int, phase: str, reason: str) -> bool:
        """Record that VM ``index`` failed. Returns False if it already had a marker."""
        return self._write(index, MarkerKind.FAILED, f"phase: {phase}\nerror: {reason}\n")

    def is_ready(self, index: int) -> bool:
        return self.path(index, MarkerKind.READY).exists()

    def is_failed(self, index: int) -> bool:
        return self.path(index, MarkerKind.FAILED).exists()

    def ready_indices(self) -> set[int]:
        return self._indices(MarkerKind.READY)

    def failed_indices(self) -> set[int]:
        return self._indices(MarkerKind.FAILED)

    def _indices(self, kind: MarkerKind) -> set[int]:
        found = set()
        if not self.directory.exists():
            return found
        for entry in self.directory.iterdir():
            match = _MARKER_RE.match(entry.name)
            if match and match.group(2) == kind.value:
                found.add(int(match.group(1)))
        return found

    def all_ready(self, count: int) -> bool:
        """The readiness barrier: every index ready and none failed."""
        return self.ready_indices() == set(range(count)) and not self.failed_indices()

    def clear(self) -> int:
        """Remove markers left over from a previous run."""
        removed = 0
        if not self.directory.exists():
            return removed
        for entry in self.directory.iterdir():
            if _MARKER_RE.match(entry.name):
                entry.unlink()
                removed += 1
        return removed
