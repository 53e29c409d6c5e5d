"""Per-VM supervision: process lifecycle, provisioning, liveness, teardown.

A VMSupervisor exclusively owns one VM. It creates the VM's overlay disk,
starts the hypervisor with the serial console attached, runs the
provisioning script while watching that the process stays alive, and
records the outcome as a marker file. The coordinator only ever sees the
supervisor and its outcome, never the process.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import psutil

from kvmfleet.config import Settings
from kvmfleet.console.session import ConsoleSession
from kvmfleet.console.transcript import ConsoleTranscript
from kvmfleet.credentials import Credentials
from kvmfleet.errors import FleetError, ProvisioningFailedError, StreamClosedError
from kvmfleet.hypervisor import build_vm_command, create_overlay_disk, kill_process_tree
from kvmfleet.markers import MarkerStore
from kvmfleet.metrics import vm_failures
from kvmfleet.network import VMNetwork
from kvmfleet.provisioning import ProvisioningScript, build_provisioning_script
from kvmfleet.remote import GuestShell
from kvmfleet.state_machine import VMState, VMStateMachine

logger = logging.getLogger(__name__)

ConsoleFactory = Callable[..., ConsoleSession]


@dataclass
class VM:
    """One managed virtual machine and its files in the work directory."""
    index: int
    base_image: Path
    overlay_path: Path
    serial_log_path: Path
    transcript_path: Path
    network: VMNetwork

    @classmethod
    def in_work_dir(cls, index: int, work_dir: Path, base_image: Path, network: VMNetwork) -> "VM":
        return cls(
            index=index,
            base_image=Path(base_image),
            overlay_path=work_dir / f"vm.{index}.qcow2",
            serial_log_path=work_dir / f"serial.{index}.log",
            transcript_path=work_dir / f"console.{index}.log",
            network=network,
        )

    @property
    def is_master(self) -> bool:
        return self.index == 0


@dataclass
class VMOutcome:
    """What a supervisor reports to the coordinator when its VM settles."""
    index: int
    state: VMState
    phase: str | None = None
    error: FleetError | None = None

    @property
    def ready(self) -> bool:
        return self.state == VMState.READY


def process_alive(pid: int | None) -> bool:
    """True while ``pid`` exists and is not a zombie."""
    if not pid:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class VMSupervisor:
    """Owns one VM from process start to teardown."""

    def __init__(
        self,
        vm: VM,
        settings: Settings,
        credentials: Credentials,
        markers: MarkerStore,
        script: ProvisioningScript | None = None,
        shell: GuestShell | None = None,
        console_factory: ConsoleFactory | None = None,
    ):
        self.vm = vm
        self.settings = settings
        self.markers = markers
        self.script = script or build_provisioning_script(vm.network, credentials, settings)
        self.shell = shell or GuestShell(
            vm.network.address,
            credentials.private_key_path,
            vm_index=vm.index,
            connect_timeout=settings.ssh_connect_timeout,
        )
        self._console_factory = console_factory or ConsoleSession.spawn
        self.session: ConsoleSession | None = None
        self.state = VMState.STARTING
        self.phase: str = "start"
        self.outcome: VMOutcome | None = None
        self._cancelling = False
        self._torn_down = False

    @property
    def index(self) -> int:
        return self.vm.index

    @property
    def pid(self) -> int | None:
        return self.session.pid if self.session is not None else None

    def is_alive(self) -> bool:
        return process_alive(self.pid)

    def _set_state(self, target: VMState) -> None:
        self.state = VMStateMachine.transition(self.state, target, vm_index=self.index)
        logger.info(f"VM #{self.index} is {target.value}", extra={"vm_index": self.index})

    def _log_path(self) -> str:
        return str(self.vm.transcript_path)

    async def run(self) -> VMOutcome:
        """Start, provision and mark the VM. Never raises except on cancellation."""
        try:
            await self._start()
            await self._provision()
            if self.state == VMState.BOOTING:
                self._set_state(VMState.CONFIGURING)
            self.markers.mark_ready(self.index)
            self._set_state(VMState.READY)
            logger.info(
                f"VM #{self.index} up and running at {self.vm.network.address}",
                extra={"vm_index": self.index},
            )
            self.outcome = VMOutcome(index=self.index, state=VMState.READY)
        except asyncio.CancelledError:
            self._record_failure(FleetError("cancelled", vm_index=self.index, phase=self.phase))
            raise
        except FleetError as e:
            self._record_failure(e)
        except Exception as e:
            logger.exception(f"Unexpected error supervising VM #{self.index}", extra={"vm_index": self.index})
            self._record_failure(
                ProvisioningFailedError(self.index, self.phase, e, log_path=self._log_path())
            )
        if self.outcome is None:
            self.outcome = VMOutcome(
                index=self.index,
                state=self.state if VMStateMachine.is_terminal(self.state) else VMState.FAILED,
                phase=self.phase,
            )
        return self.outcome

    async def _start(self) -> None:
        logger.info(
            f"Starting VM #{self.index}, see {self.vm.serial_log_path}",
            extra={"vm_index": self.index},
        )
        if not await create_overlay_disk(self.vm.base_image, self.vm.overlay_path):
            raise FleetError(
                f"Failed to create overlay disk {self.vm.overlay_path}",
                vm_index=self.index,
                phase=self.phase,
            )

        # teardown() may have run while the overlay was being created
        if self._cancelling:
            raise FleetError("cancelled before start", vm_index=self.index, phase=self.phase)

        argv = build_vm_command(self.vm.overlay_path, self.vm.network, self.settings)
        transcript = ConsoleTranscript(self.vm.transcript_path, self.vm.serial_log_path)
        try:
            self.session = self._console_factory(
                argv,
                transcript=transcript,
                delimiter=self.settings.console_delimiter,
                vm_index=self.index,
            )
        except Exception:
            transcript.close()
            raise
        self._set_state(VMState.BOOTING)

    def _on_phase(self, name: str) -> None:
        self.phase = name
        first = self.script.phases[0].name if self.script.phases else name
        if self.state == VMState.BOOTING and name != first:
            self._set_state(VMState.CONFIGURING)

    async def _provision(self) -> None:
        """Run the script, failing immediately if the VM process dies."""
        provision = asyncio.create_task(
            self.script.run(self.session, self.shell, on_phase=self._on_phase),
            name=f"provision-{self.index}",
        )
        watcher = asyncio.create_task(self._watch_liveness(), name=f"liveness-{self.index}")
        try:
            done, _ = await asyncio.wait({provision, watcher}, return_when=asyncio.FIRST_COMPLETED)
            if provision in done:
                provision.result()
            else:
                watcher.result()
        finally:
            for task in (provision, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(provision, watcher, return_exceptions=True)

    async def _watch_liveness(self) -> None:
        while True:
            await asyncio.sleep(self.settings.liveness_interval)
            if not self.is_alive():
                raise StreamClosedError(
                    "VM process exited unexpectedly",
                    vm_index=self.index,
                    phase=self.phase,
                    log_path=self._log_path(),
                )

    def _record_failure(self, error: FleetError) -> None:
        if VMStateMachine.is_terminal(self.state):
            return
        if self._cancelling:
            error = FleetError("cancelled during teardown", vm_index=self.index, phase=self.phase)
        if error.vm_index is None:
            error.vm_index = self.index
        if error.phase is None:
            error.phase = self.phase
        if error.log_path is None:
            error.log_path = self._log_path()

        self._set_state(VMState.FAILED)
        try:
            self.markers.mark_failed(self.index, self.phase, error.message)
        except OSError as e:
            logger.error(f"Cannot write failure marker for VM #{self.index}: {e}", extra={"vm_index": self.index})
        if not self._cancelling:
            vm_failures.labels(phase=self.phase).inc()
            logger.error(f"VM #{self.index} failed: {error.describe()}", extra={"vm_index": self.index})
        self.outcome = VMOutcome(index=self.index, state=VMState.FAILED, phase=self.phase, error=error)

    async def teardown(self) -> None:
        """Kill the VM process and all of its descendants.

        Safe to call repeatedly: a later call still kills a process that
        is alive, and the console is closed only once.
        """
        self._cancelling = True
        pid = self.pid
        if pid and self.is_alive():
            killed = await asyncio.to_thread(kill_process_tree, pid, self.settings.kill_grace_period)
            logger.info(f"Killed VM #{self.index} process tree ({killed} processes)", extra={"vm_index": self.index})
        if self.session is not None and not self._torn_down:
            self._torn_down = True
            await asyncio.to_thread(self.session.close)

    async def wait_exit(self, timeout: float) -> bool:
        """Wait for the VM process to exit on its own. Returns True if it did."""
        deadline = time.monotonic() + timeout
        while self.is_alive():
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(0.5)
        return True
