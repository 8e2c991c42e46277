from __future__ import annotations

import logging
import re
from typing import Optional

from egressfw.allowlist import AllowListEntry, Provenance, validate_cidr, validate_ip
from egressfw.commands import CommandRunner
from egressfw.errors import HostNetworkError


def parse_default_gateway(route_output: str) -> Optional[str]:
    """Return the gateway of the first default route in `ip route` output."""
    for line in route_output.splitlines():
        parts = line.split()
        if not parts or parts[0] != "default":
            continue
        if "via" in parts and parts.index("via") + 1 < len(parts):
            return parts[parts.index("via") + 1]
    return None


def derive_host_network(gateway: str) -> str:
    """Zero the last octet of the gateway and apply a /24 mask."""
    network = re.sub(r"\.[0-9]*$", ".0/24", gateway)
    if not validate_ip(gateway) or not validate_cidr(network):
        raise HostNetworkError(f"Detected invalid host network: {network}")
    return network


class HostNetworkDetector:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def detect(self) -> AllowListEntry:
        result = self.runner.run(["ip", "route", "show", "default"], check=False, mutating=False)
        gateway = parse_default_gateway(result.stdout) if result.returncode == 0 else None
        if not gateway:
            raise HostNetworkError("Failed to detect host IP from default route")
        network = derive_host_network(gateway)
        logging.info(f"Host network: {network} (gateway {gateway})")
        return AllowListEntry.parse(network, Provenance.HOST_NETWORK, gateway)
