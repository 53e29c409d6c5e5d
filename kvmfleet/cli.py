"""Bring up N VMs, provision them, and assemble a Kubernetes cluster.

Exit status: 0 on success, 2 if a VM failed provisioning, 3 if cluster
assembly failed, 4 on timeout, 130 when interrupted.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid

from kvmfleet.assembler import ClusterAssembler
from kvmfleet.config import Settings, settings as default_settings
from kvmfleet.coordinator import FleetCoordinator
from kvmfleet.errors import ExitCode, FleetError
from kvmfleet.logging_config import setup_fleet_logging
from kvmfleet.metrics import export_metrics

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="kvmfleet", description=__doc__)
    p.add_argument("num_nodes", type=int, nargs="?", default=default_settings.num_nodes)
    p.add_argument("--work-dir", default=default_settings.work_dir)
    p.add_argument("--base-image", default=default_settings.base_image)
    p.add_argument("--start-script", default=default_settings.start_script,
                   help="script started with <image> <index> instead of the built-in QEMU command")
    p.add_argument("--poll-interval", type=float, default=default_settings.poll_interval)
    p.add_argument("--fleet-timeout", type=float, default=default_settings.fleet_timeout)
    p.add_argument("--cluster-timeout", type=float, default=default_settings.cluster_ready_timeout)
    p.add_argument("--no-cluster", action="store_true", help="stop after all VMs are ready")
    p.add_argument("--keep-running", action="store_true",
                   help="skip graceful shutdown and wait for an interrupt after assembly")
    p.add_argument("--metrics-file", default=default_settings.metrics_file)
    p.add_argument("--log-format", choices=["text", "json"], default=default_settings.log_format)
    p.add_argument("--log-level", default=default_settings.log_level)
    return p.parse_args(argv)


def _settings_from_args(args: argparse.Namespace) -> Settings:
    return default_settings.model_copy(update={
        "num_nodes": args.num_nodes,
        "work_dir": args.work_dir,
        "base_image": args.base_image,
        "start_script": args.start_script,
        "poll_interval": args.poll_interval,
        "fleet_timeout": args.fleet_timeout,
        "cluster_ready_timeout": args.cluster_timeout,
        "metrics_file": args.metrics_file,
        "log_format": args.log_format,
        "log_level": args.log_level,
    })


async def run_fleet(cfg: Settings, assemble: bool = True, keep_running: bool = False) -> None:
    """Launch the fleet, wait for it and assemble the cluster.

    The fleet is torn down on every exit path.
    """
    async with FleetCoordinator(cfg) as fleet:
        await fleet.launch(cfg.num_nodes)
        await fleet.await_ready(poll_interval=cfg.poll_interval, timeout=cfg.fleet_timeout)
        if not assemble:
            return
        await ClusterAssembler(fleet, cfg).assemble(shutdown=not keep_running)
        if keep_running:
            logger.info("Cluster is running, interrupt to tear it down")
            await asyncio.Event().wait()


async def _main(cfg: Settings, args: argparse.Namespace) -> int:
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    interrupted = False

    def _interrupt(signame: str) -> None:
        nonlocal interrupted
        if interrupted:
            logger.warning(f"Received {signame} again, teardown already in progress")
            return
        interrupted = True
        logger.warning(f"Received {signame}, tearing down fleet")
        task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _interrupt, sig.name)

    try:
        await run_fleet(cfg, assemble=not args.no_cluster, keep_running=args.keep_running)
    except asyncio.CancelledError:
        if not interrupted:
            raise
        return ExitCode.INTERRUPTED
    except FleetError as e:
        logger.error(f"{type(e).__name__}: {e.describe()}")
        return e.exit_code
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        export_metrics(cfg.metrics_file)

    logger.info("done")
    return ExitCode.OK


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    cfg = _settings_from_args(args)
    setup_fleet_logging(run_id=str(uuid.uuid4())[:8], log_level=cfg.log_level, log_format=cfg.log_format)
    try:
        return int(asyncio.run(_main(cfg, args)))
    except Exception:
        logger.exception("Unexpected error")
        return ExitCode.ERROR


if __name__ == "__main__":
    sys.exit(main())
