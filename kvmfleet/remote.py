"""Command execution on guests over SSH."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from dataclasses import dataclass
from pathlib import Path

import asyncssh

from kvmfleet.errors import RemoteCommandError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of one guest command."""
    command: str
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class GuestShell:
    """Run commands as root on one VM.

    Each call opens its own connection, matching how the guests are reached
    through one-shot ssh invocations; a guest that reboots or restarts its
    network between commands needs no reconnect logic.
    """

    def __init__(
        self,
        host: str,
        private_key_path: Path,
        vm_index: int | None = None,
        username: str = "root",
        port: int = 22,
        connect_timeout: float = 10.0,
    ):
        self.host = host
        self.private_key_path = Path(private_key_path)
        self.vm_index = vm_index
        self.username = username
        self.port = port
        self.connect_timeout = connect_timeout

    async def _connect(self) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            self.host,
            port=self.port,
            username=self.username,
            client_keys=[str(self.private_key_path)],
            known_hosts=None,  # Host keys change with every fresh VM
            connect_timeout=self.connect_timeout,
        )

    async def run(
        self,
        command: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run ``command`` through the guest's shell.

        Raises RemoteCommandError when the guest cannot be reached, the
        command times out, or (with ``check``) it exits non-zero.
        """
        logger.debug(f"ssh {self.host}: {command}", extra={"vm_index": self.vm_index})
        try:
            async with await self._connect() as conn:
                proc = await conn.run(command, check=False, timeout=timeout)
        except asyncssh.TimeoutError as e:
            raise RemoteCommandError(
                f"Command timed out after {timeout}s: {command}",
                command=command,
                vm_index=self.vm_index,
            ) from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise RemoteCommandError(
                f"Cannot run command on {self.host}: {e}",
                command=command,
                vm_index=self.vm_index,
            ) from e

        exit_status = proc.exit_status if proc.exit_status is not None else -1
        result = CommandResult(
            command=command,
            exit_status=exit_status,
            stdout=_as_text(proc.stdout),
            stderr=_as_text(proc.stderr),
        )
        if check and not result.ok:
            raise RemoteCommandError(
                f"Command exited with status {exit_status}: {command}",
                command=command,
                exit_status=exit_status,
                stdout=result.stdout,
                stderr=result.stderr,
                vm_index=self.vm_index,
            )
        return result

    async def wait_reachable(self, timeout: float, interval: float = 2.0) -> None:
        """Block until an SSH connection succeeds or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        last_error: Exception | None = None
        while time.monotonic() < deadline:
            try:
                async with await self._connect():
                    logger.info(f"SSH reachable at {self.host}", extra={"vm_index": self.vm_index})
                    return
            except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
                last_error = e
            await asyncio.sleep(interval)
        raise RemoteCommandError(
            f"SSH on {self.host} not reachable within {timeout:.0f}s: {last_error}",
            vm_index=self.vm_index,
        )


def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def write_ssh_helper(path: Path, host: str, private_key_path: Path) -> Path:
    """Write an executable ``ssh`` wrapper for logging into a VM by hand."""
    options = [
        "-oIdentitiesOnly=yes",
        "-oStrictHostKeyChecking=no",
        "-oUserKnownHostsFile=/dev/null",
        "-oLogLevel=error",
        "-i", str(Path(private_key_path).resolve()),
    ]
    line = "exec ssh " + " ".join(shlex.quote(o) for o in options) + f" root@{host} \"$@\"\n"
    path.write_text("#!/bin/sh\n" + line)
    os.chmod(path, 0o755)
    return path
