"""Hypervisor process boundary: disks, command lines, process trees."""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess
import time
from pathlib import Path

import psutil

from kvmfleet.config import Settings
from kvmfleet.network import VMNetwork

logger = logging.getLogger(__name__)


def create_overlay_disk_sync(base_image: Path, overlay_path: Path) -> bool:
    """Create a qcow2 overlay backed by ``base_image``.

    The base image is only ever read; each VM writes to its own overlay.

    Returns:
        True if successful
    """
    if overlay_path.exists():
        overlay_path.unlink()
        logger.info(f"Removed stale overlay disk: {overlay_path}")

    cmd = [
        "qemu-img", "create",
        "-F", "qcow2",
        "-f", "qcow2",
        "-b", str(Path(base_image).resolve()),
        str(overlay_path),
    ]

    result = subprocess.run(cmd, capture_output=True, text=True)
    if result.returncode != 0:
        logger.error(f"Failed to create overlay disk: {result.stderr}")
        return False

    logger.info(f"Created overlay disk: {overlay_path}")
    return True


async def create_overlay_disk(base_image: Path, overlay_path: Path) -> bool:
    """Async version of create_overlay_disk_sync."""
    return await asyncio.to_thread(create_overlay_disk_sync, base_image, overlay_path)


def build_vm_command(image: Path, network: VMNetwork, settings: Settings) -> list[str]:
    """Command line that runs one VM with its serial console on stdio.

    A configured start script gets the image path and the VM index and is
    responsible for everything else.
    """
    if settings.start_script:
        return [settings.start_script, str(image), str(network.index)]

    cmd = [
        settings.qemu_binary,
        "-enable-kvm",
        "-machine", "q35",
        "-cpu", "host",
        "-m", str(settings.qemu_memory_mb),
        "-smp", str(settings.qemu_cpus),
        "-nographic",
        "-serial", "mon:stdio",
        "-drive", f"file={image},if=virtio,format=qcow2",
        "-netdev", f"tap,id=net0,ifname={settings.tap_prefix}{network.index},script=no,downscript=no",
        "-device", f"virtio-net-pci,netdev=net0,mac={network.mac}",
    ]
    if settings.qemu_firmware:
        cmd += ["-bios", settings.qemu_firmware]
    if settings.qemu_extra_args:
        cmd += shlex.split(settings.qemu_extra_args)
    return cmd


def _is_running(proc: psutil.Process) -> bool:
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def _wait_gone(procs: list[psutil.Process], timeout: float) -> list[psutil.Process]:
    # Polls instead of psutil.wait_procs: waiting would reap the direct
    # child, which pexpect still expects to reap itself.
    deadline = time.monotonic() + timeout
    alive = [p for p in procs if _is_running(p)]
    while alive and time.monotonic() < deadline:
        time.sleep(0.1)
        alive = [p for p in alive if _is_running(p)]
    return alive


def kill_process_tree(pid: int, grace_period: float = 5.0) -> int:
    """Kill ``pid`` and all of its descendants.

    Sends SIGTERM to the whole tree, waits up to ``grace_period`` seconds,
    then SIGKILLs whatever is left. Returns the number of processes that
    were signalled.
    """
    try:
        root = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        procs = [root] + root.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = [root]

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot terminate pid {proc.pid}: {e}")

    alive = _wait_gone(procs, grace_period)
    for proc in alive:
        try:
            proc.kill()
            logger.info(f"Force-killed pid {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Cannot kill pid {proc.pid}: {e}")
    if alive:
        _wait_gone(alive, grace_period)

    return len(procs)


def live_descendants(pid: int) -> list[int]:
    """PIDs of ``pid`` and its descendants that are still running."""
    try:
        root = psutil.Process(pid)
        procs = [root] + root.children(recursive=True)
    except psutil.NoSuchProcess:
        return []
    return [p.pid for p in procs if _is_running(p)]
