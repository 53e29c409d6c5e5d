"""Tests for Kubernetes cluster assembly."""

from __future__ import annotations

import stat
from pathlib import Path
from types import SimpleNamespace

import pytest

from kvmfleet.assembler import (
    REDACTED,
    ClusterAssembler,
    JoinToken,
    count_ready_nodes,
    extract_join_token,
)
from kvmfleet.errors import (
    ClusterAssemblyError,
    ClusterNotReadyError,
    ExitCode,
    RemoteCommandError,
    TokenNotFoundError,
)
from kvmfleet.network import vm_network
from kvmfleet.remote import CommandResult

TOKEN = "abcdef.0123456789abcdef"

INIT_OUTPUT = f"""[init] Using Kubernetes version: v1.29.0
[preflight] Running pre-flight checks
Your Kubernetes control-plane has initialized successfully!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join 192.168.7.2:6443 --token {TOKEN} \\
\t--discovery-token-ca-cert-hash sha256:5f2a0b9c1d
"""

ADMIN_CONF = """apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: LS0tLS1CRUdJTg==
    server: https://10.0.2.15:6443
  name: kubernetes
"""


def _nodes(*statuses: str) -> str:
    return "".join(
        f"host-{i}   {status}   <none>   5m   v1.29.0\n" for i, status in enumerate(statuses)
    )


class FakeFleet:
    """Records guest commands and answers them from canned output."""

    def __init__(self, size: int, init_output: str = INIT_OUTPUT, ready_nodes: int | None = None, ready: bool = True):
        self.size = size
        self.ready = ready
        self.init_output = init_output
        self.ready_nodes = size if ready_nodes is None else ready_nodes
        self.commands: list[tuple[int, str]] = []
        self.failing: dict[str, int] = {}
        self.shut_down = False

    def all_ready(self) -> bool:
        return self.ready

    def supervisor(self, index: int):
        return SimpleNamespace(vm=SimpleNamespace(network=vm_network(index)))

    def _respond(self, index: int, command: str) -> CommandResult:
        for prefix, status in self.failing.items():
            if command.startswith(prefix):
                return CommandResult(command, status, stderr="error: failed")
        if command.startswith("kubeadm init"):
            return CommandResult(command, 0, stdout=self.init_output)
        if command == "cat /etc/kubernetes/admin.conf":
            return CommandResult(command, 0, stdout=ADMIN_CONF)
        if command == "kubectl get nodes --no-headers":
            statuses = ["Ready"] * self.ready_nodes + ["NotReady"] * (self.size - self.ready_nodes)
            return CommandResult(command, 0, stdout=_nodes(*statuses))
        return CommandResult(command, 0)

    async def run_command(self, index, command, timeout=None, check=True):
        self.commands.append((index, command))
        result = self._respond(index, command)
        if check and not result.ok:
            raise RemoteCommandError(
                f"Command exited with status {result.exit_status}: {command}",
                command=command,
                exit_status=result.exit_status,
                stderr=result.stderr,
                vm_index=index,
            )
        return result

    async def shutdown(self, timeout=None):
        self.shut_down = True

    def joins(self) -> list[tuple[int, str]]:
        return [(i, c) for i, c in self.commands if c.startswith("kubeadm join")]


class TestExtractJoinToken:
    """Tests for extract_join_token."""

    def test_reads_wrapped_join_command(self):
        token = extract_join_token(INIT_OUTPUT)

        assert token.endpoint == "192.168.7.2:6443"
        assert token.token == TOKEN
        assert token.ca_cert_hash == "sha256:5f2a0b9c1d"

    def test_reads_crlf_continuation(self):
        output = INIT_OUTPUT.replace("\n", "\r\n")

        assert extract_join_token(output).ca_cert_hash == "sha256:5f2a0b9c1d"

    def test_single_line_without_hash(self):
        token = extract_join_token(f"kubeadm join 10.0.0.1:6443 --token {TOKEN}\n")

        assert token.ca_cert_hash is None
        assert "--discovery-token-unsafe-skip-ca-verification" in token.join_command()

    def test_missing_join_line(self):
        with pytest.raises(TokenNotFoundError) as exc_info:
            extract_join_token("[init] error execution phase preflight\n")

        assert exc_info.value.vm_index == 0
        assert exc_info.value.exit_code == ExitCode.CLUSTER_FAILED


class TestJoinToken:
    """Tests for JoinToken."""

    def test_join_command_with_flags(self):
        token = JoinToken("192.168.7.2:6443", TOKEN, "sha256:ab")

        assert token.join_command("--ignore-preflight-errors=SystemVerification") == (
            f"kubeadm join 192.168.7.2:6443 --token {TOKEN}"
            " --discovery-token-ca-cert-hash sha256:ab"
            " --ignore-preflight-errors=SystemVerification"
        )

    def test_token_is_hidden(self):
        token = JoinToken("192.168.7.2:6443", TOKEN)

        assert TOKEN not in repr(token)
        assert token.redact(f"--token {TOKEN}") == f"--token {REDACTED}"


def test_count_ready_nodes():
    output = _nodes("Ready", "NotReady", "Ready") + "\n"

    assert count_ready_nodes(output) == 2
    assert count_ready_nodes("") == 0
    assert count_ready_nodes("No resources found\n") == 0


class TestClusterAssembler:
    """Tests for ClusterAssembler."""

    @pytest.mark.asyncio
    async def test_two_node_cluster(self, fleet_settings):
        """The master is initialized first and the second VM joins exactly once."""
        fleet = FakeFleet(2)

        token = await ClusterAssembler(fleet, fleet_settings).assemble()

        assert token.token == TOKEN
        assert fleet.commands[0][0] == 0
        assert fleet.commands[0][1].startswith("kubeadm init")
        joins = fleet.joins()
        assert len(joins) == 1
        assert joins[0][0] == 1
        assert f"--token {TOKEN}" in joins[0][1]
        assert fleet.shut_down

    @pytest.mark.asyncio
    async def test_join_happens_after_master_setup(self, fleet_settings):
        fleet = FakeFleet(3)

        await ClusterAssembler(fleet, fleet_settings).assemble()

        commands = [c for _, c in fleet.commands]
        first_join = next(i for i, c in enumerate(commands) if c.startswith("kubeadm join"))
        assert commands.index("cp /etc/kubernetes/admin.conf .kube/config") < first_join
        assert [i for i, _ in fleet.joins()] == [1, 2]

    @pytest.mark.asyncio
    async def test_single_node_has_no_joins(self, fleet_settings):
        fleet = FakeFleet(1)

        await ClusterAssembler(fleet, fleet_settings).assemble(shutdown=False)

        assert fleet.joins() == []
        assert not fleet.shut_down

    @pytest.mark.asyncio
    async def test_missing_token_stops_before_join(self, fleet_settings):
        fleet = FakeFleet(2, init_output="[init] something changed\n")

        with pytest.raises(TokenNotFoundError):
            await ClusterAssembler(fleet, fleet_settings).assemble()

        assert fleet.joins() == []
        assert len(fleet.commands) == 1
        assert not fleet.shut_down

    @pytest.mark.asyncio
    async def test_refuses_unready_fleet(self, fleet_settings):
        fleet = FakeFleet(2, ready=False)

        with pytest.raises(ClusterAssemblyError):
            await ClusterAssembler(fleet, fleet_settings).assemble()

        assert fleet.commands == []

    @pytest.mark.asyncio
    async def test_failed_init_is_cluster_failure(self, fleet_settings):
        fleet = FakeFleet(2)
        fleet.failing["kubeadm init"] = 1

        with pytest.raises(ClusterAssemblyError) as exc_info:
            await ClusterAssembler(fleet, fleet_settings).assemble()

        assert exc_info.value.exit_code == ExitCode.CLUSTER_FAILED
        assert exc_info.value.phase == "cluster init"
        assert "error: failed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_init_log_is_redacted(self, fleet_settings):
        fleet = FakeFleet(2)

        await ClusterAssembler(fleet, fleet_settings).init_master()

        saved = (Path(fleet_settings.work_dir) / "kubeadm-init.log").read_text()
        assert TOKEN not in saved
        assert REDACTED in saved

    @pytest.mark.asyncio
    async def test_configure_master_tolerates_missing_taint(self, fleet_settings):
        fleet = FakeFleet(1)
        fleet.failing["kubectl taint"] = 1

        await ClusterAssembler(fleet, fleet_settings).configure_master()

        commands = [c for _, c in fleet.commands]
        assert "kubectl label --overwrite nodes host-0 intel.com/oim=1" in commands
        assert all(i == 0 for i, _ in fleet.commands)

    @pytest.mark.asyncio
    async def test_export_kubeconfig_points_at_master(self, fleet_settings):
        fleet = FakeFleet(1)

        path = await ClusterAssembler(fleet, fleet_settings).export_kubeconfig()

        config = path.read_text()
        assert path.name == "kube.config"
        assert "server: https://192.168.7.2:6443" in config
        assert "10.0.2.15" not in config
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    @pytest.mark.asyncio
    async def test_wait_ready_times_out(self, fleet_settings):
        """Too few Ready nodes end in ClusterNotReadyError, with status logged each round."""
        fleet = FakeFleet(2, ready_nodes=1)

        with pytest.raises(ClusterNotReadyError) as exc_info:
            await ClusterAssembler(fleet, fleet_settings).wait_ready(expected=2, poll_interval=0.01, timeout=0.1)

        assert exc_info.value.exit_code == ExitCode.TIMEOUT
        assert "1 of 2" in exc_info.value.message
        assert (0, "kubectl get pods --all-namespaces") in fleet.commands

    @pytest.mark.asyncio
    async def test_assemble_fails_when_nodes_never_ready(self, fleet_settings):
        fleet = FakeFleet(2, ready_nodes=1)
        cfg = fleet_settings.model_copy(update={"cluster_ready_timeout": 0.1})

        with pytest.raises(ClusterNotReadyError):
            await ClusterAssembler(fleet, cfg).assemble()

        assert not fleet.shut_down

    @pytest.mark.asyncio
    async def test_wait_ready_keeps_polling_through_connection_errors(self, fleet_settings):
        """An unreachable master counts as not ready yet rather than a cluster failure."""
        fleet = FakeFleet(2)
        respond = fleet.run_command
        drops = {"kubectl get nodes --no-headers": 1, "kubectl get nodes": 1}

        async def flaky(index, command, timeout=None, check=True):
            if drops.get(command):
                drops[command] -= 1
                fleet.commands.append((index, command))
                raise RemoteCommandError("Cannot run command on 192.168.7.2: Connection lost", command=command)
            return await respond(index, command, timeout=timeout, check=check)

        fleet.run_command = flaky

        await ClusterAssembler(fleet, fleet_settings).wait_ready(expected=2, poll_interval=0.01, timeout=1.0)

        polls = [c for _, c in fleet.commands if c == "kubectl get nodes --no-headers"]
        assert len(polls) == 2

    @pytest.mark.asyncio
    async def test_unreachable_master_ends_in_not_ready(self, fleet_settings):
        fleet = FakeFleet(2)

        async def unreachable(index, command, timeout=None, check=True):
            raise RemoteCommandError("Connection lost", command=command)

        fleet.run_command = unreachable

        with pytest.raises(ClusterNotReadyError) as exc_info:
            await ClusterAssembler(fleet, fleet_settings).wait_ready(expected=2, poll_interval=0.01, timeout=0.1)

        assert exc_info.value.exit_code == ExitCode.TIMEOUT
        assert "0 of 2" in exc_info.value.message
