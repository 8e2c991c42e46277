"""Keep the container runtime's embedded DNS working across a full flush.

Docker publishes its resolver on 127.0.0.11 and redirects it to a random port
with a handful of nat rules (chains DOCKER_OUTPUT and DOCKER_POSTROUTING).
Flushing the nat table drops them, and Docker never re-adds them for the
lifetime of the container, so they are snapshotted before the flush and
replayed right after it.
"""

from __future__ import annotations

import logging
import re
import shlex
from typing import List

from egressfw.netfilter import BUILTIN_CHAINS, Netfilter

BUILTIN_TARGETS = {"ACCEPT", "DROP", "RETURN", "REJECT", "DNAT", "SNAT", "MASQUERADE", "REDIRECT", "LOG"}


class DockerDNSPreserver:
    def __init__(self, netfilter: Netfilter, resolver_addr: str = "127.0.0.11"):
        self.netfilter = netfilter
        self.resolver_addr = resolver_addr

    def capture(self) -> List[str]:
        rules = [line.strip() for line in self.netfilter.save("nat").splitlines()
                 if line.startswith("-A ") and self.references_resolver(line)]
        logging.info(f"Captured {len(rules)} Docker DNS rule(s) referencing {self.resolver_addr}")
        return rules

    def references_resolver(self, line: str) -> bool:
        """True when the resolver address appears as a whole address, not as a prefix of another."""
        return re.search(rf"(?<![0-9.]){re.escape(self.resolver_addr)}(?=[/:\s]|$)", line) is not None

    @staticmethod
    def chains_for(rules: List[str]) -> List[str]:
        """Custom chains the rules are appended to or jump into, in first-seen order."""
        chains: List[str] = []
        for rule in rules:
            args = shlex.split(rule)
            for flag in ("-A", "-j"):
                if flag not in args or args.index(flag) + 1 >= len(args):
                    continue
                name = args[args.index(flag) + 1]
                if name in BUILTIN_CHAINS or name in BUILTIN_TARGETS or name in chains:
                    continue
                chains.append(name)
        return chains

    def restore(self, rules: List[str]) -> int:
        """Replay captured rules; returns how many were restored."""
        if not rules:
            logging.info("No Docker DNS rules to restore")
            return 0

        for chain in self.chains_for(rules):
            self.netfilter.create_chain(chain, table="nat")

        restored = 0
        for rule in rules:
            result = self.netfilter.iptables(*shlex.split(rule), table="nat", check=False)
            if result.returncode == 0:
                restored += 1
            else:
                logging.warning(f"Failed to restore Docker DNS rule: {rule}")
        logging.info(f"Docker DNS rules restored ({restored}/{len(rules)})")
        return restored
