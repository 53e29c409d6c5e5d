"""Kubernetes cluster assembly on a ready fleet.

Runs strictly after the readiness barrier: ``kubeadm init`` on VM 0, join
token extraction from its output, one ``kubeadm join`` per remaining VM,
then a bounded wait until the cluster reports every node Ready.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

from kvmfleet.config import Settings
from kvmfleet.coordinator import FleetCoordinator
from kvmfleet.errors import (
    ClusterAssemblyError,
    ClusterNotReadyError,
    RemoteCommandError,
    TokenNotFoundError,
)
from kvmfleet.metrics import cluster_operation_duration
from kvmfleet.provisioning import proxy_env
from kvmfleet.remote import CommandResult

logger = logging.getLogger(__name__)

# kubeadm prints the join command wrapped over several lines with "\".
_JOIN_RE = re.compile(
    r"kubeadm join\s+(?P<endpoint>\S+)\s+"
    r"--token\s+(?P<token>[a-z0-9]{6}\.[a-z0-9]{16})"
    r"(?:\s+--discovery-token-ca-cert-hash\s+(?P<ca_hash>sha256:[0-9a-f]+))?"
)

_API_SERVER_RE = re.compile(r"https://[^\s:]+:6443")

REDACTED = "<redacted>"


@dataclass(frozen=True)
class JoinToken:
    """Join credential from the master-init output. Used once per node."""
    endpoint: str
    token: str
    ca_cert_hash: str | None = None

    def join_command(self, extra_flags: str = "") -> str:
        cmd = f"kubeadm join {self.endpoint} --token {self.token}"
        if self.ca_cert_hash:
            cmd += f" --discovery-token-ca-cert-hash {self.ca_cert_hash}"
        else:
            cmd += " --discovery-token-unsafe-skip-ca-verification"
        if extra_flags:
            cmd += f" {extra_flags}"
        return cmd

    def redact(self, text: str) -> str:
        return text.replace(self.token, REDACTED)

    def __repr__(self) -> str:
        return f"JoinToken(endpoint={self.endpoint!r}, token={REDACTED!r})"


def extract_join_token(output: str) -> JoinToken:
    """Find the ``kubeadm join`` command in master-init output.

    Raises TokenNotFoundError when the output does not contain one, which
    means kubeadm changed its output format or init did not finish.
    """
    flattened = output.replace("\\\r\n", " ").replace("\\\n", " ")
    match = _JOIN_RE.search(flattened)
    if match is None:
        raise TokenNotFoundError(
            "no 'kubeadm join ... --token ...' line in cluster-init output",
            vm_index=0,
            phase="cluster init",
        )
    return JoinToken(
        endpoint=match.group("endpoint"),
        token=match.group("token"),
        ca_cert_hash=match.group("ca_hash"),
    )


def count_ready_nodes(get_nodes_output: str) -> int:
    """Count nodes in ``kubectl get nodes --no-headers`` output whose status is Ready."""
    ready = 0
    for line in get_nodes_output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[1] == "Ready":
            ready += 1
    return ready


class ClusterAssembler:
    """Bootstrap the master and join the remaining fleet VMs."""

    def __init__(self, fleet: FleetCoordinator, settings: Settings):
        self.fleet = fleet
        self.settings = settings
        self.work_dir = Path(settings.work_dir)

    @asynccontextmanager
    async def _timed(self, operation: str) -> AsyncIterator[None]:
        start = time.monotonic()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            cluster_operation_duration.labels(operation=operation, status=status).observe(
                time.monotonic() - start
            )

    async def _run(self, index: int, command: str, phase: str, check: bool = True, timeout: float | None = None):
        timeout = self.settings.remote_command_timeout if timeout is None else timeout
        try:
            return await self.fleet.run_command(index, command, timeout=timeout, check=check)
        except RemoteCommandError as e:
            raise ClusterAssemblyError(
                f"{e.message}\n{e.stderr or e.stdout}".strip(),
                vm_index=index,
                phase=phase,
            ) from e

    async def assemble(self, shutdown: bool = True) -> JoinToken:
        """Run the whole assembly sequence. Returns the join token used."""
        if not self.fleet.all_ready():
            raise ClusterAssemblyError("fleet is not ready, refusing to assemble cluster")

        output = await self.init_master()
        token = extract_join_token(output)
        logger.info(f"Extracted join token for {token.endpoint}")

        await self.configure_master()
        await self.export_kubeconfig()
        for index in range(1, self.fleet.size):
            await self.join(index, token)
        await self.wait_ready(
            expected=self.fleet.size,
            poll_interval=self.settings.cluster_poll_interval,
            timeout=self.settings.cluster_ready_timeout,
        )

        if shutdown:
            await self.fleet.shutdown()
        return token

    async def init_master(self) -> str:
        """Run cluster-init on VM 0 and return its output."""
        command = f"{proxy_env(self.settings)}kubeadm init {self.settings.kubeadm_init_flags}".strip()
        logger.info("Initializing cluster on VM #0", extra={"vm_index": 0})
        async with self._timed("init"):
            result = await self._run(0, command, phase="cluster init")
        output = result.stdout + result.stderr

        log_path = self.work_dir / "kubeadm-init.log"
        try:
            token = extract_join_token(output)
            saved = token.redact(output)
        except TokenNotFoundError:
            saved = output
        log_path.write_text(saved)
        return output

    async def configure_master(self) -> None:
        """Make kubectl usable on the master and allow pods on it."""
        await self._run(0, "mkdir -p .kube", phase="configure master")
        await self._run(0, "cp /etc/kubernetes/admin.conf .kube/config", phase="configure master")
        # The taint name differs between Kubernetes releases; absence is fine.
        for taint in ("node-role.kubernetes.io/master-", "node-role.kubernetes.io/control-plane-"):
            await self._run(0, f"kubectl taint nodes --all {taint}", phase="configure master", check=False)
        if self.settings.master_label:
            master = self.fleet.supervisor(0).vm.network.hostname
            await self._run(
                0,
                f"kubectl label --overwrite nodes {master} {self.settings.master_label}",
                phase="configure master",
            )

    async def export_kubeconfig(self) -> Path:
        """Copy admin.conf to the host, pointing it at the master's address."""
        result = await self._run(0, "cat /etc/kubernetes/admin.conf", phase="export kubeconfig")
        address = self.fleet.supervisor(0).vm.network.address
        config = _API_SERVER_RE.sub(f"https://{address}:6443", result.stdout)
        path = self.work_dir / "kube.config"
        path.write_text(config)
        os.chmod(path, 0o600)
        logger.info(f"Use {path.resolve()} as KUBECONFIG to access the running cluster.")
        return path

    async def join(self, index: int, token: JoinToken) -> None:
        """Join VM ``index`` to the cluster."""
        logger.info(f"Joining VM #{index} to the cluster", extra={"vm_index": index})
        async with self._timed("join"):
            await self._run(
                index,
                token.join_command(self.settings.kubeadm_join_flags),
                phase="cluster join",
            )

    async def wait_ready(self, expected: int, poll_interval: float, timeout: float) -> None:
        """Poll until ``expected`` nodes are Ready, logging cluster status each round."""
        logger.info("Waiting for Kubernetes cluster to become ready...")
        deadline = time.monotonic() + timeout
        async with self._timed("wait_ready"):
            while True:
                result = await self._poll("kubectl get nodes --no-headers")
                ready = count_ready_nodes(result.stdout) if result is not None and result.ok else 0
                if ready >= expected:
                    logger.info(f"Cluster ready with {ready} nodes")
                    return

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ClusterNotReadyError(
                        f"only {ready} of {expected} nodes Ready after {timeout:.0f}s",
                        vm_index=0,
                        phase="cluster ready",
                    )
                await self._log_status()
                await asyncio.sleep(min(poll_interval, remaining))

    async def _poll(self, command: str) -> CommandResult | None:
        """Run a status command on the master; None if it could not be reached."""
        try:
            return await self._run(0, command, phase="cluster ready", check=False)
        except ClusterAssemblyError as e:
            logger.warning(f"{command} failed, retrying: {e.message}", extra={"vm_index": 0})
            return None

    async def _log_status(self) -> None:
        for command in ("kubectl get nodes", "kubectl get pods --all-namespaces"):
            result = await self._poll(command)
            if result is not None:
                logger.info(f"{command}:\n{result.stdout.rstrip()}")
