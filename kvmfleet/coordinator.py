"""Fleet-wide orchestration: parallel launch, readiness barrier, teardown.

Supervisors report their outcome on an in-process queue. The coordinator
drains that queue on every poll tick and re-evaluates the barrier (every
VM ready, none failed). An explicit failure ends the wait at once; a slow
VM does not, it only runs into the overall timeout.

Use as an async context manager so that cancel() runs on every exit path:

    async with FleetCoordinator(settings) as fleet:
        await fleet.launch(3)
        await fleet.await_ready(poll_interval=1, timeout=3600)
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from kvmfleet.config import Settings
from kvmfleet.credentials import Credentials, load_credentials
from kvmfleet.errors import FleetError, FleetTimeoutError
from kvmfleet.markers import MarkerStore
from kvmfleet.metrics import fleet_ready_duration
from kvmfleet.network import vm_network
from kvmfleet.remote import CommandResult, write_ssh_helper
from kvmfleet.state_machine import VMState
from kvmfleet.supervisor import VM, VMOutcome, VMSupervisor

logger = logging.getLogger(__name__)

SupervisorFactory = Callable[[VM, Settings, Credentials, MarkerStore], VMSupervisor]


class FleetCoordinator:
    """Launches N supervisors, waits for the barrier, owns cancellation."""

    def __init__(
        self,
        settings: Settings,
        credentials: Credentials | None = None,
        supervisor_factory: SupervisorFactory | None = None,
    ):
        self.settings = settings
        self.work_dir = Path(settings.work_dir)
        self.markers = MarkerStore(self.work_dir)
        self._credentials = credentials
        self._supervisor_factory = supervisor_factory or VMSupervisor
        self.supervisors: list[VMSupervisor] = []
        self._tasks: list[asyncio.Task] = []
        self._results: asyncio.Queue[VMOutcome] = asyncio.Queue()
        self.status: dict[int, VMState] = {}
        self._launched_at: float | None = None
        self._cancelled = False

    async def __aenter__(self) -> "FleetCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()

    @property
    def size(self) -> int:
        return len(self.supervisors)

    @property
    def credentials(self) -> Credentials:
        if self._credentials is None:
            self._credentials = load_credentials(self.work_dir)
        return self._credentials

    def supervisor(self, index: int) -> VMSupervisor:
        return self.supervisors[index]

    def _prepare_work_dir(self, n: int) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        removed = self.markers.clear()
        if removed:
            logger.info(f"Removed {removed} stale marker files from {self.work_dir}")
        for stale in self.work_dir.glob("vm.*.qcow2"):
            stale.unlink()

        for index in range(n):
            network = vm_network(index, self.settings.subnet_prefix, self.settings.dns_server)
            write_ssh_helper(self.work_dir / f"ssh.{index}", network.address, self.credentials.private_key_path)
        master_alias = self.work_dir / "ssh"
        if master_alias.is_symlink() or master_alias.exists():
            master_alias.unlink()
        master_alias.symlink_to("ssh.0")

    async def launch(self, n: int) -> None:
        """Start ``n`` VM supervisors concurrently, one per index 0..n-1."""
        if n < 1:
            raise ValueError(f"fleet size must be at least 1, got {n}")
        if self.supervisors:
            raise RuntimeError("fleet already launched")

        self._prepare_work_dir(n)
        base_image = Path(self.settings.base_image)
        for index in range(n):
            network = vm_network(index, self.settings.subnet_prefix, self.settings.dns_server)
            vm = VM.in_work_dir(index, self.work_dir, base_image, network)
            self.supervisors.append(
                self._supervisor_factory(vm, self.settings, self.credentials, self.markers)
            )
            self.status[index] = VMState.STARTING

        self._launched_at = time.monotonic()
        for supervisor in self.supervisors:
            task = asyncio.create_task(self._supervise(supervisor), name=f"vm-{supervisor.index}")
            self._tasks.append(task)
        logger.info(f"Launched {n} virtual machines")

    async def _supervise(self, supervisor: VMSupervisor) -> None:
        outcome = await supervisor.run()
        if outcome is None:
            outcome = VMOutcome(
                index=supervisor.index,
                state=VMState.FAILED,
                error=FleetError("supervisor ended without an outcome", vm_index=supervisor.index),
            )
        await self._results.put(outcome)

    def _drain_results(self) -> list[VMOutcome]:
        outcomes = []
        while True:
            try:
                outcome = self._results.get_nowait()
            except asyncio.QueueEmpty:
                return outcomes
            self.status[outcome.index] = outcome.state
            outcomes.append(outcome)

    def all_ready(self) -> bool:
        """The readiness barrier."""
        states = [self.status.get(i) for i in range(self.size)]
        return bool(states) and all(s == VMState.READY for s in states)

    def failed(self) -> list[int]:
        return sorted(i for i, s in self.status.items() if s == VMState.FAILED)

    def pending(self) -> list[int]:
        return sorted(i for i, s in self.status.items() if s != VMState.READY)

    async def await_ready(self, poll_interval: float, timeout: float) -> None:
        """Block until every VM is ready.

        Raises the first failed VM's error as soon as it is reported, or
        FleetTimeoutError once ``timeout`` elapses.
        """
        if not self.supervisors:
            raise RuntimeError("fleet not launched")
        deadline = time.monotonic() + timeout
        while True:
            failures = [o for o in self._drain_results() if not o.ready]
            if failures:
                self._raise_failure(failures)
            if self.all_ready():
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                pending = self.pending()
                raise FleetTimeoutError(
                    f"fleet not ready after {timeout:.0f}s, still waiting for VMs {pending}",
                    pending=pending,
                )
            try:
                outcome = await asyncio.wait_for(self._results.get(), timeout=min(poll_interval, remaining))
            except asyncio.TimeoutError:
                continue
            self._results.put_nowait(outcome)

        if self._launched_at is not None:
            fleet_ready_duration.observe(time.monotonic() - self._launched_at)
        logger.info(f"All {self.size} virtual machines are up and running")

    def _raise_failure(self, failures: list[VMOutcome]) -> None:
        failed = self.failed()
        logger.error(
            "The following virtual machines failed unexpectedly: "
            + ", ".join(f"#{i}" for i in failed)
        )
        first = failures[0]
        if first.error is not None:
            raise first.error
        raise FleetError("VM failed", vm_index=first.index, phase=first.phase)

    async def run_command(self, index: int, command: str, timeout: float | None = None, check: bool = True) -> CommandResult:
        """Run ``command`` on VM ``index``."""
        return await self.supervisor(index).shell.run(command, timeout=timeout, check=check)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Ask every VM to power off and wait for the processes to exit."""
        timeout = self.settings.shutdown_timeout if timeout is None else timeout
        for supervisor in self.supervisors:
            try:
                await supervisor.shell.run("shutdown now", timeout=30, check=False)
            except FleetError as e:
                # The connection usually drops as the guest goes down.
                logger.debug(f"shutdown on VM #{supervisor.index}: {e}", extra={"vm_index": supervisor.index})
        for supervisor in self.supervisors:
            if await supervisor.wait_exit(timeout):
                logger.info(f"VM #{supervisor.index} powered off", extra={"vm_index": supervisor.index})
            else:
                logger.warning(
                    f"VM #{supervisor.index} still running after {timeout:.0f}s",
                    extra={"vm_index": supervisor.index},
                )

    async def cancel(self) -> None:
        """Tear down every VM. Idempotent and safe after success or failure."""
        if self._cancelled:
            return
        self._cancelled = True
        if not self.supervisors:
            return
        logger.info("Tearing down fleet")
        teardowns = await asyncio.gather(
            *(s.teardown() for s in self.supervisors),
            return_exceptions=True,
        )
        for supervisor, result in zip(self.supervisors, teardowns):
            if isinstance(result, Exception):
                logger.error(
                    f"Teardown of VM #{supervisor.index} failed: {result}",
                    extra={"vm_index": supervisor.index},
                )
        for task in self._tasks:
            if not task.done():
                task.cancel()
        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for supervisor, result in zip(self.supervisors, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Supervisor for VM #{supervisor.index} ended with {result!r}",
                    extra={"vm_index": supervisor.index},
                )
        # A supervisor may have started its VM while its siblings were being killed.
        for supervisor in self.supervisors:
            if supervisor.is_alive():
                logger.warning(
                    f"VM #{supervisor.index} still running, killing it again",
                    extra={"vm_index": supervisor.index},
                )
                try:
                    await supervisor.teardown()
                except Exception as e:
                    logger.error(
                        f"Teardown of VM #{supervisor.index} failed: {e}",
                        extra={"vm_index": supervisor.index},
                    )
        leftover = [s.index for s in self.supervisors if s.is_alive()]
        if leftover:
            logger.error(f"VM processes still running after teardown: {leftover}")
