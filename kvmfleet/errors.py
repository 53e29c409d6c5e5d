"""Error taxonomy for fleet provisioning and cluster assembly.

Each error carries the process exit code the CLI reports for it, and where
known the VM index, the provisioning phase, and the path of the log that
shows the raw console interaction.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes of a fleet run."""
    OK = 0
    ERROR = 1
    PROVISIONING_FAILED = 2
    CLUSTER_FAILED = 3
    TIMEOUT = 4
    INTERRUPTED = 130


class FleetError(Exception):
    """Base exception for fleet errors."""

    exit_code: ExitCode = ExitCode.ERROR

    def __init__(
        self,
        message: str,
        vm_index: int | None = None,
        phase: str | None = None,
        log_path: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.vm_index = vm_index
        self.phase = phase
        self.log_path = log_path

    def describe(self) -> str:
        """Render the error with VM index, phase and log location."""
        parts = []
        if self.vm_index is not None:
            parts.append(f"VM #{self.vm_index}")
        if self.phase:
            parts.append(f"phase '{self.phase}'")
        prefix = ", ".join(parts)
        text = f"{prefix}: {self.message}" if prefix else self.message
        if self.log_path:
            text += f" (see {self.log_path})"
        return text


class ConsoleTimeoutError(FleetError):
    """A console wait exceeded its bound."""
    exit_code = ExitCode.TIMEOUT

    def __init__(self, message: str, expected: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.expected = expected


class StreamClosedError(FleetError):
    """The VM process exited while its console was in use."""
    exit_code = ExitCode.PROVISIONING_FAILED


class RemoteCommandError(FleetError):
    """A command executed on a guest failed or could not be run."""
    exit_code = ExitCode.PROVISIONING_FAILED

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_status: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr


class ProvisioningFailedError(FleetError):
    """A provisioning step did not produce the expected result."""
    exit_code = ExitCode.PROVISIONING_FAILED

    def __init__(self, vm_index: int, step: str, cause: BaseException, log_path: str | None = None):
        super().__init__(
            f"provisioning failed: {cause}",
            vm_index=vm_index,
            phase=step,
            log_path=log_path,
        )
        self.step = step
        self.cause = cause


class FleetTimeoutError(FleetError):
    """The fleet readiness barrier was not reached in time."""
    exit_code = ExitCode.TIMEOUT

    def __init__(self, message: str, pending: list[int] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.pending = pending or []


class ClusterNotReadyError(FleetError):
    """The cluster never reported the expected number of ready nodes."""
    exit_code = ExitCode.TIMEOUT


class TokenNotFoundError(FleetError):
    """The master-init output did not contain a join command."""
    exit_code = ExitCode.CLUSTER_FAILED


class ClusterAssemblyError(FleetError):
    """A cluster assembly command failed."""
    exit_code = ExitCode.CLUSTER_FAILED


class InvalidTransitionError(FleetError):
    """A VM lifecycle transition that the state machine does not allow."""
