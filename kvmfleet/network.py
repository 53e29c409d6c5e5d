"""Deterministic per-VM network parameters.

VM ``i`` sits on its own point-to-point /24 view of the host subnet: the
host side of its tap device is ``<subnet>.<2i+1>`` and the guest is
``<subnet>.<2i+2>``, so VM 0 (the master) is always ``<subnet>.2``.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass


@dataclass(frozen=True)
class VMNetwork:
    """Network parameters for one VM."""
    index: int
    address: str
    gateway: str
    prefix_len: int
    dns: str
    hostname: str
    mac: str

    @property
    def cidr(self) -> str:
        return f"{self.address}/{self.prefix_len}"


def vm_network(index: int, subnet_prefix: str = "192.168.7", dns: str = "8.8.8.8") -> VMNetwork:
    """Return the network parameters of VM ``index``."""
    if index < 0:
        raise ValueError(f"VM index must not be negative: {index}")
    host = index * 2 + 2
    if host > 254:
        raise ValueError(f"VM index {index} does not fit into {subnet_prefix}.0/24")

    address = ipaddress.IPv4Address(f"{subnet_prefix}.{host}")
    gateway = ipaddress.IPv4Address(f"{subnet_prefix}.{host - 1}")
    return VMNetwork(
        index=index,
        address=str(address),
        gateway=str(gateway),
        prefix_len=24,
        dns=dns,
        hostname=f"host-{index}",
        mac=f"DE:AD:BE:EF:01:{index:02X}",
    )
