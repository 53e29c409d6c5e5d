"""Tests for per-VM supervision.

The hypervisor is replaced by a shell process on a pseudo terminal and the
provisioning script by a stub, so these cover process lifecycle, liveness
and teardown without a guest.
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import psutil
import pytest

from kvmfleet.console.session import ConsoleSession
from kvmfleet.errors import ProvisioningFailedError, RemoteCommandError, StreamClosedError
from kvmfleet.markers import MarkerKind, MarkerStore
from kvmfleet.network import vm_network
from kvmfleet.provisioning import Phase
from kvmfleet.state_machine import VMState
from kvmfleet.supervisor import VM, VMSupervisor, process_alive

pytestmark = pytest.mark.pty


class StubScript:
    """Provisioning script that only reports phases."""

    def __init__(self, vm_index: int = 0, fail_at: str | None = None, hang_at: str | None = None):
        self.vm_index = vm_index
        self.fail_at = fail_at
        self.hang_at = hang_at
        self.phases = [Phase("login", ()), Phase("install packages", ()), Phase("start services", ())]
        self.completed: list[str] = []

    async def run(self, console, shell, on_phase=None):
        for phase in self.phases:
            if on_phase is not None:
                on_phase(phase.name)
            if phase.name == self.fail_at:
                raise ProvisioningFailedError(
                    self.vm_index,
                    phase.name,
                    RemoteCommandError("exit status 1", exit_status=1),
                    log_path=console.log_path,
                )
            if phase.name == self.hang_at:
                await asyncio.sleep(60)
            self.completed.append(phase.name)


def _factory(script: str):
    def factory(argv, **kwargs):
        return ConsoleSession.spawn(["/bin/sh", "-c", script], **kwargs)
    return factory


def _supervisor(fleet_settings, credentials, index=0, shell_script="sleep 30", script=None):
    work_dir = Path(fleet_settings.work_dir)
    vm = VM.in_work_dir(index, work_dir, Path(fleet_settings.base_image), vm_network(index))
    markers = MarkerStore(work_dir)
    supervisor = VMSupervisor(
        vm,
        fleet_settings,
        credentials,
        markers,
        script=script or StubScript(index),
        shell=MagicMock(),
        console_factory=_factory(shell_script),
    )
    return supervisor, markers


@pytest.fixture
def overlay_ok():
    with patch("kvmfleet.supervisor.create_overlay_disk", AsyncMock(return_value=True)) as mock:
        yield mock


class TestVM:
    """Tests for the VM work-dir layout."""

    def test_in_work_dir_paths(self, tmp_path):
        vm = VM.in_work_dir(2, tmp_path, tmp_path / "base.img", vm_network(2))

        assert vm.overlay_path == tmp_path / "vm.2.qcow2"
        assert vm.serial_log_path == tmp_path / "serial.2.log"
        assert vm.transcript_path == tmp_path / "console.2.log"
        assert not vm.is_master
        assert VM.in_work_dir(0, tmp_path, tmp_path / "base.img", vm_network(0)).is_master


class TestVMSupervisor:
    """Tests for VMSupervisor.run and teardown."""

    @pytest.mark.asyncio
    async def test_successful_run_marks_ready(self, fleet_settings, credentials, overlay_ok):
        supervisor, markers = _supervisor(fleet_settings, credentials)
        try:
            outcome = await supervisor.run()
        finally:
            await supervisor.teardown()

        assert outcome.ready
        assert outcome.index == 0
        assert supervisor.state == VMState.READY
        assert markers.is_ready(0)
        assert not markers.is_failed(0)
        assert supervisor.script.completed == ["login", "install packages", "start services"]
        assert Path(fleet_settings.work_dir, "console.0.log").exists()

    @pytest.mark.asyncio
    async def test_failed_phase_marks_terminated(self, fleet_settings, credentials, overlay_ok):
        """The failing phase is recorded and later phases never run."""
        script = StubScript(2, fail_at="install packages")
        supervisor, markers = _supervisor(fleet_settings, credentials, index=2, script=script)
        try:
            outcome = await supervisor.run()
        finally:
            await supervisor.teardown()

        assert not outcome.ready
        assert outcome.state == VMState.FAILED
        assert outcome.phase == "install packages"
        assert isinstance(outcome.error, ProvisioningFailedError)
        assert outcome.error.vm_index == 2
        assert markers.is_failed(2)
        assert not markers.is_ready(2)
        assert "install packages" in markers.path(2, MarkerKind.FAILED).read_text()
        assert script.completed == ["login"]

    @pytest.mark.asyncio
    async def test_process_exit_fails_vm_immediately(self, fleet_settings, credentials, overlay_ok):
        """A VM process that dies mid-provisioning fails without waiting for timeouts."""
        script = StubScript(1, hang_at="install packages")
        supervisor, markers = _supervisor(
            fleet_settings, credentials, index=1, shell_script="sleep 0.3", script=script,
        )
        start = time.monotonic()
        try:
            outcome = await asyncio.wait_for(supervisor.run(), timeout=10)
        finally:
            await supervisor.teardown()

        assert time.monotonic() - start < 10
        assert outcome.state == VMState.FAILED
        assert isinstance(outcome.error, StreamClosedError)
        assert outcome.phase == "install packages"
        assert markers.is_failed(1)

    @pytest.mark.asyncio
    async def test_overlay_failure_never_starts_process(self, fleet_settings, credentials):
        factory = MagicMock()
        supervisor, markers = _supervisor(fleet_settings, credentials)
        supervisor._console_factory = factory

        with patch("kvmfleet.supervisor.create_overlay_disk", AsyncMock(return_value=False)):
            outcome = await supervisor.run()

        assert outcome.state == VMState.FAILED
        assert outcome.phase == "start"
        assert "overlay" in outcome.error.message
        factory.assert_not_called()
        assert markers.is_failed(0)

    @pytest.mark.asyncio
    async def test_teardown_kills_process_tree(self, fleet_settings, credentials, overlay_ok):
        script = StubScript(0, hang_at="login")
        supervisor, _ = _supervisor(
            fleet_settings, credentials, shell_script="sleep 30 & sleep 30 & wait", script=script,
        )
        task = asyncio.create_task(supervisor.run())
        await asyncio.sleep(0.5)
        pid = supervisor.pid
        children = psutil.Process(pid).children(recursive=True)
        assert children

        await supervisor.teardown()
        await asyncio.gather(task, return_exceptions=True)

        assert not process_alive(pid)
        assert not any(process_alive(c.pid) for c in children)

    @pytest.mark.asyncio
    async def test_teardown_during_provisioning_records_cancellation(self, fleet_settings, credentials, overlay_ok):
        script = StubScript(0, hang_at="login")
        supervisor, markers = _supervisor(fleet_settings, credentials, script=script)
        task = asyncio.create_task(supervisor.run())
        await asyncio.sleep(0.3)

        await supervisor.teardown()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert supervisor.state == VMState.FAILED
        assert supervisor.outcome.error.message == "cancelled during teardown"
        assert markers.is_failed(0)

    @pytest.mark.asyncio
    async def test_teardown_is_idempotent(self, fleet_settings, credentials, overlay_ok):
        supervisor, _ = _supervisor(fleet_settings, credentials)
        await supervisor.run()

        await supervisor.teardown()
        await supervisor.teardown()

        assert not supervisor.is_alive()

    @pytest.mark.asyncio
    async def test_teardown_before_start_is_noop(self, fleet_settings, credentials):
        supervisor, _ = _supervisor(fleet_settings, credentials)

        await supervisor.teardown()

        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_wait_exit(self, fleet_settings, credentials, overlay_ok):
        supervisor, _ = _supervisor(fleet_settings, credentials, shell_script="sleep 30")
        await supervisor.run()
        try:
            assert await supervisor.wait_exit(0.2) is False
        finally:
            await supervisor.teardown()
        assert await supervisor.wait_exit(1) is True
    @pytest.mark.asyncio
    async def test_ready_marker_failure_still_reports_outcome(self, fleet_settings, credentials, overlay_ok):
        supervisor, markers = _supervisor(fleet_settings, credentials)
        with patch.object(markers, "mark_ready", side_effect=OSError(28, "No space left on device")):
            try:
                outcome = await supervisor.run()
            finally:
                await supervisor.teardown()

        assert outcome is not None
        assert outcome.state == VMState.FAILED
        assert isinstance(outcome.error, ProvisioningFailedError)
        assert supervisor.state == VMState.FAILED
        assert markers.is_failed(0)

    @pytest.mark.asyncio
    async def test_teardown_during_overlay_prevents_start(self, fleet_settings, credentials):
        """A VM whose disk is still being created when teardown runs never starts."""
        factory = MagicMock()
        supervisor, markers = _supervisor(fleet_settings, credentials)
        supervisor._console_factory = factory

        async def slow_overlay(base_image, overlay_path):
            await asyncio.sleep(0.3)
            return True

        with patch("kvmfleet.supervisor.create_overlay_disk", slow_overlay):
            task = asyncio.create_task(supervisor.run())
            await asyncio.sleep(0.05)
            await supervisor.teardown()
            outcome = await task

        factory.assert_not_called()
        assert supervisor.pid is None
        assert outcome.state == VMState.FAILED
        assert outcome.error.message == "cancelled during teardown"
        assert markers.is_failed(0)

    @pytest.mark.asyncio
    async def test_teardown_again_kills_late_process(self, fleet_settings, credentials, overlay_ok):
        script = StubScript(0, hang_at="login")
        supervisor, _ = _supervisor(fleet_settings, credentials, script=script)
        await supervisor.teardown()
        # started anyway, as if spawned before the first teardown noticed
        supervisor._cancelling = False
        task = asyncio.create_task(supervisor.run())
        await asyncio.sleep(0.3)
        pid = supervisor.pid
        assert process_alive(pid)

        await supervisor.teardown()
        await asyncio.gather(task, return_exceptions=True)

        assert not process_alive(pid)
