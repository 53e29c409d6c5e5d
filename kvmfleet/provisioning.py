"""First-boot provisioning of a fleet VM.

A provisioning script is an ordered list of named phases, each a list of
typed actions. Console actions talk to the serial console of the freshly
booted VM until SSH works; after that the guest is configured through
remote commands. Every action has its own timeout, and the first action
that fails aborts the whole script with ProvisioningFailedError naming the
phase. Nothing is retried: a half-configured VM is discarded, not resumed.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from dataclasses import dataclass, field
from typing import Callable, Union

from kvmfleet.config import Settings
from kvmfleet.console.session import ConsoleSession
from kvmfleet.credentials import Credentials
from kvmfleet.errors import FleetError, ProvisioningFailedError
from kvmfleet.metrics import vm_phase_duration
from kvmfleet.network import VMNetwork
from kvmfleet.remote import GuestShell

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Expect:
    """Wait until console output contains ``substring``."""
    substring: str
    timeout: float


@dataclass(frozen=True)
class SendLine:
    """Type a line on the console."""
    text: str
    secret: bool = False


@dataclass(frozen=True)
class Pause:
    """Let the guest print whatever it prints before the next interaction."""
    seconds: float


@dataclass(frozen=True)
class AwaitSSH:
    """Wait until the guest accepts SSH connections."""
    timeout: float


@dataclass(frozen=True)
class Remote:
    """Run a command on the guest over SSH."""
    command: str
    timeout: float | None = None
    tolerate_failure: bool = False


Action = Union[Expect, SendLine, Pause, AwaitSSH, Remote]


@dataclass(frozen=True)
class Phase:
    name: str
    actions: tuple[Action, ...]


@dataclass
class ProvisioningScript:
    """Ordered provisioning phases for one VM."""

    vm_index: int
    phases: list[Phase] = field(default_factory=list)

    @property
    def phase_names(self) -> list[str]:
        return [p.name for p in self.phases]

    async def run(
        self,
        console: ConsoleSession,
        shell: GuestShell,
        on_phase: Callable[[str], None] | None = None,
    ) -> None:
        """Execute all phases in order.

        Raises ProvisioningFailedError on the first failing action.
        """
        for phase in self.phases:
            if on_phase is not None:
                on_phase(phase.name)
            logger.info(f"Provisioning phase: {phase.name}", extra={"vm_index": self.vm_index})
            if console.transcript is not None:
                console.transcript.note(f"phase: {phase.name}")
            start = time.monotonic()
            try:
                for action in phase.actions:
                    await self._run_action(action, console, shell)
            except asyncio.CancelledError:
                raise
            except (FleetError, OSError) as e:
                vm_phase_duration.labels(phase=phase.name, status="error").observe(time.monotonic() - start)
                raise ProvisioningFailedError(
                    self.vm_index, phase.name, e, log_path=console.log_path
                ) from e
            vm_phase_duration.labels(phase=phase.name, status="ok").observe(time.monotonic() - start)

    async def _run_action(self, action: Action, console: ConsoleSession, shell: GuestShell) -> None:
        if isinstance(action, Expect):
            await asyncio.to_thread(console.wait_for, action.substring, action.timeout)
        elif isinstance(action, SendLine):
            await asyncio.to_thread(console.send, action.text, action.secret)
        elif isinstance(action, Pause):
            await asyncio.sleep(action.seconds)
        elif isinstance(action, AwaitSSH):
            await shell.wait_reachable(action.timeout)
        elif isinstance(action, Remote):
            result = await shell.run(
                action.command,
                timeout=action.timeout,
                check=not action.tolerate_failure,
            )
            if not result.ok:
                logger.info(
                    f"Ignoring exit status {result.exit_status} of: {action.command}",
                    extra={"vm_index": self.vm_index},
                )
        else:
            raise TypeError(f"Unknown provisioning action: {action!r}")


def proxy_env(settings: Settings) -> str:
    """Return an ``env ...`` prefix forwarding the proxy settings, or ''."""
    pairs = [
        ("HTTP_PROXY", settings.http_proxy),
        ("HTTPS_PROXY", settings.https_proxy),
        ("NO_PROXY", settings.no_proxy),
    ]
    if not any(value for _, value in pairs):
        return ""
    return "env " + " ".join(shlex.quote(f"{name}={value}") for name, value in pairs) + " "


def _write_file_command(path: str, lines: list[str]) -> str:
    return "printf '%s\\n' " + " ".join(shlex.quote(line) for line in lines) + f" >{path}"


def _network_unit(interface: str, network: VMNetwork) -> list[str]:
    return [
        "[Match]",
        f"Name={interface}",
        "[Network]",
        f"Address={network.cidr}",
        f"Gateway={network.gateway}",
        f"DNS={network.dns}",
    ]


SWAP_MASK_COMMAND = (
    "units=$(sed -n -e 's;^/dev/\\([0-9a-z]*\\).*;dev-\\1.swap;p' /proc/swaps); "
    "[ -z \"$units\" ] || systemctl mask $units"
)


def build_provisioning_script(
    network: VMNetwork,
    credentials: Credentials,
    settings: Settings,
) -> ProvisioningScript:
    """Build the provisioning script for the VM described by ``network``."""
    prompt = settings.prompt_timeout
    remote = settings.remote_command_timeout
    proxy = proxy_env(settings)

    enable_ssh = (
        "mkdir -p /etc/ssh && echo 'PermitRootLogin yes' >> /etc/ssh/sshd_config"
        " && mkdir -p .ssh"
        f" && echo {shlex.quote(credentials.public_key)} >>.ssh/authorized_keys"
    )

    network_actions: list[Action] = [SendLine("mkdir -p /etc/systemd/network")]
    # Both names, so it works with and without interface renaming.
    for interface in ("ens4", "eth0"):
        network_actions.append(SendLine(_write_file_command(
            f"/etc/systemd/network/20-wired-{interface}.network",
            _network_unit(interface, network),
        )))
    network_actions.append(SendLine("systemctl restart systemd-networkd"))
    network_actions.append(AwaitSSH(settings.ssh_reachable_timeout))

    kubelet_dropins = "/etc/systemd/system/kubelet.service.d"
    docker_dropins = "/etc/systemd/system/docker.service.d"
    docker_proxy = (
        f'Environment="HTTP_PROXY={settings.http_proxy}" '
        f'"HTTPS_PROXY={settings.https_proxy}" "NO_PROXY={settings.no_proxy}"'
    )
    daemon_json = '{ "insecure-registries":["%s"] }' % settings.insecure_registry

    phases = [
        Phase("login", (
            Expect("login", settings.login_timeout),
            Pause(settings.boot_settle_seconds),
            SendLine("root"),
        )),
        Phase("change password", (
            Expect("New password", prompt),
            SendLine(credentials.root_password, secret=True),
            Expect("Retype new password", prompt),
            SendLine(credentials.root_password, secret=True),
        )),
        Phase("enable remote access", (
            SendLine(enable_ssh),
        )),
        Phase("network config", tuple(network_actions)),
        Phase("install packages", (
            Remote(f"{proxy}{settings.package_install_command}", timeout=settings.package_install_timeout),
        )),
        Phase("system settings", (
            Remote(
                "mkdir -p /etc/sysctl.d && echo net.ipv4.ip_forward = 1 >/etc/sysctl.d/60-k8s.conf"
                " && systemctl restart systemd-sysctl",
                timeout=remote,
            ),
            Remote(f"hostnamectl set-hostname {network.hostname}", timeout=remote),
            Remote(f"echo 127.0.0.1 localhost {network.hostname} >>/etc/hosts", timeout=remote),
            Remote("modprobe br_netfilter && echo br_netfilter >>/etc/modules", timeout=remote),
        )),
        Phase("disable swap", (
            Remote(SWAP_MASK_COMMAND, timeout=remote),
            Remote("swapoff -a", timeout=remote),
        )),
        Phase("configure runtime", (
            Remote(f"mkdir -p {kubelet_dropins} {docker_dropins} /etc/docker", timeout=remote),
            Remote(_write_file_command(
                f"{kubelet_dropins}/extra.conf",
                ["[Service]", 'Environment="KUBELET_EXTRA_ARGS="'],
            ), timeout=remote),
            Remote(_write_file_command(
                f"{kubelet_dropins}/network.conf",
                ["[Service]", 'Environment="KUBELET_NETWORK_ARGS="'],
            ), timeout=remote),
            Remote(_write_file_command(
                f"{docker_dropins}/kvmfleet.conf",
                [
                    "[Service]",
                    docker_proxy,
                    "ExecStart=",
                    "ExecStart=/usr/bin/dockerd --storage-driver=overlay2 --default-runtime=runc",
                ],
            ), timeout=remote),
            Remote(_write_file_command("/etc/docker/daemon.json", [daemon_json]), timeout=remote),
        )),
        Phase("start services", (
            Remote(
                "systemctl daemon-reload && systemctl restart docker kubelet"
                " && systemctl enable docker kubelet",
                timeout=remote,
            ),
        )),
    ]
    return ProvisioningScript(vm_index=network.index, phases=phases)
