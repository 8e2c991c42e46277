"""Filter table policies and the phase model of the bootstrap.

Both rule sets are rendered as an iptables-restore document and loaded in one
call, so the kernel switches from the old filter table to the new one
atomically. Only the filter table is in the document; the nat rules kept for
Docker's embedded DNS are left alone.

Final OUTPUT chain (order matters, the set match must come before the reject):

    -o lo                                       ACCEPT
    -d <host network>                           ACCEPT
    -p udp --dport 53                           ACCEPT
    -p tcp --dport 22                           ACCEPT
    ct state established,related                ACCEPT
    -m set --match-set <allow-list> dst         ACCEPT
    everything else                             REJECT icmp-admin-prohibited
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, List, Tuple

from egressfw.errors import FirewallError
from egressfw.netfilter import POLICY_CHAINS, Netfilter

ESTABLISHED = ("-m", "conntrack", "--ctstate", "ESTABLISHED,RELATED")


class PolicyPhase(IntEnum):
    PREFLIGHT = 0
    FLUSHED = 1
    DNS_RESTORED = 2
    COLLECTING = 3
    ALLOWLIST_READY = 4
    HOST_DETECTED = 5
    LOCKED_DOWN = 6
    VERIFIED = 7


@dataclass(frozen=True)
class Rule:
    chain: str
    args: Tuple[str, ...]

    def render(self) -> str:
        return " ".join(("-A", self.chain) + self.args)


@dataclass(frozen=True)
class RuleSet:
    policies: Dict[str, str]
    rules: Tuple[Rule, ...]

    def render(self) -> str:
        lines = ["*filter"]
        for chain in POLICY_CHAINS:
            lines.append(f":{chain} {self.policies[chain]} [0:0]")
        lines.extend(rule.render() for rule in self.rules)
        lines.append("COMMIT")
        return "\n".join(lines) + "\n"


def temporary_ruleset() -> RuleSet:
    """Permissive outbound while the allow-list is being collected."""
    return RuleSet(
        policies={"INPUT": "ACCEPT", "FORWARD": "DROP", "OUTPUT": "ACCEPT"},
        rules=(
            Rule("INPUT", ("-i", "lo", "-j", "ACCEPT")),
            Rule("OUTPUT", ("-o", "lo", "-j", "ACCEPT")),
            Rule("OUTPUT", ("-p", "udp", "--dport", "53", "-j", "ACCEPT")),
            Rule("INPUT", ("-p", "udp", "--sport", "53", "-j", "ACCEPT")),
        ),
    )


def final_ruleset(host_network: str, set_name: str) -> RuleSet:
    rules: List[Rule] = [
        # INPUT
        Rule("INPUT", ("-i", "lo", "-j", "ACCEPT")),
        Rule("INPUT", ("-s", host_network, "-j", "ACCEPT")),
        Rule("INPUT", ESTABLISHED + ("-j", "ACCEPT")),
        Rule("INPUT", ("-p", "udp", "--sport", "53", "-j", "ACCEPT")),
        Rule("INPUT", ("-p", "tcp", "--sport", "22", "-m", "conntrack", "--ctstate", "ESTABLISHED", "-j", "ACCEPT")),
        # OUTPUT
        Rule("OUTPUT", ("-o", "lo", "-j", "ACCEPT")),
        Rule("OUTPUT", ("-d", host_network, "-j", "ACCEPT")),
        Rule("OUTPUT", ("-p", "udp", "--dport", "53", "-j", "ACCEPT")),
        Rule("OUTPUT", ("-p", "tcp", "--dport", "22", "-j", "ACCEPT")),
        Rule("OUTPUT", ESTABLISHED + ("-j", "ACCEPT")),
        Rule("OUTPUT", ("-m", "set", "--match-set", set_name, "dst", "-j", "ACCEPT")),
        Rule("OUTPUT", ("-j", "REJECT", "--reject-with", "icmp-admin-prohibited")),
    ]
    return RuleSet(policies={chain: "DROP" for chain in POLICY_CHAINS}, rules=tuple(rules))


class PolicyApplier:
    def __init__(self, netfilter: Netfilter, set_name: str):
        self.netfilter = netfilter
        self.set_name = set_name

    def apply_temporary(self):
        self.netfilter.restore(temporary_ruleset().render())
        logging.info("Temporary permissive rules active")

    def apply_final(self, host_network: str) -> RuleSet:
        ruleset = final_ruleset(host_network, self.set_name)
        self.netfilter.restore(ruleset.render())
        logging.info(f"Restrictive firewall rules applied ({len(ruleset.rules)} rules, default DROP)")
        return ruleset

    def open_up(self) -> bool:
        """Accept everything and drop the allow-list; every step runs even if one fails."""
        ok = True
        for chain in POLICY_CHAINS:
            ok &= _attempt(self.netfilter.set_policy, chain, "ACCEPT", check=False)
        ok &= _attempt(lambda: self.netfilter.iptables("-F", check=False).returncode == 0)
        _attempt(self.netfilter.destroy_set, self.set_name)
        return ok


def _attempt(fn: Callable[..., bool], *args, **kwargs) -> bool:
    try:
        return bool(fn(*args, **kwargs))
    except FirewallError as e:
        logging.error(f"Rollback step failed: {e}")
        return False
