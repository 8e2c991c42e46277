"""Pytest configuration and fakes for the egressfw tests."""

import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

# Ensure src/egressfw is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from egressfw.errors import CommandError  # noqa: E402

DOCKER_NAT_SAVE = """# Generated by iptables-save v1.8.7 on Sat Oct 18 10:00:00 2026
*nat
:PREROUTING ACCEPT [0:0]
:INPUT ACCEPT [0:0]
:OUTPUT ACCEPT [0:0]
:POSTROUTING ACCEPT [0:0]
:DOCKER_OUTPUT - [0:0]
:DOCKER_POSTROUTING - [0:0]
-A OUTPUT -d 127.0.0.11/32 -j DOCKER_OUTPUT
-A POSTROUTING -d 127.0.0.11/32 -j DOCKER_POSTROUTING
-A DOCKER_OUTPUT -d 127.0.0.11/32 -p tcp -m tcp --dport 53 -j DNAT --to-destination 127.0.0.11:41439
-A DOCKER_OUTPUT -d 127.0.0.11/32 -p udp -m udp --dport 53 -j DNAT --to-destination 127.0.0.11:51822
-A DOCKER_POSTROUTING -s 127.0.0.11/32 -p tcp -m tcp --sport 41439 -j SNAT --to-source :53
-A DOCKER_POSTROUTING -s 127.0.0.11/32 -p udp -m udp --sport 51822 -j SNAT --to-source :53
COMMIT
"""


class FakeRunner:
    """Records commands; answers from a table of command prefixes."""

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], Tuple[int, str, str]]] = None):
        self.responses = responses or {}
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.dry_run = False

    def run(self, cmd, check=True, mutating=True, input_text=None):
        self.calls.append(list(cmd))
        self.inputs.append(input_text)
        rc, out, err = 0, "", ""
        best = -1
        for prefix, answer in self.responses.items():
            if tuple(cmd[:len(prefix)]) == prefix and len(prefix) > best:
                best = len(prefix)
                rc, out, err = answer
        if check and rc != 0:
            raise CommandError(list(cmd), err)
        return subprocess.CompletedProcess(cmd, rc, out, err)

    def require_tools(self, tools=()):
        pass


class FakeNetfilter:
    """In-memory model of the filter/nat tables and ipsets."""

    def __init__(self, nat_save: str = ""):
        self.nat_save = nat_save
        self.policies = {"INPUT": "ACCEPT", "FORWARD": "ACCEPT", "OUTPUT": "ACCEPT"}
        self.filter_rules: List[str] = ["-A OUTPUT -p tcp --dport 8080 -j ACCEPT"]
        self.nat_rules: List[str] = []
        self.nat_chains: List[str] = []
        self.sets: Dict[str, List[str]] = {}
        self.ops: List[str] = []
        self.rejected_entries: set = set()

    @property
    def mutated(self) -> bool:
        return any(op != "save" for op in self.ops)

    def iptables(self, *args, table=None, check=True):
        table = table or "filter"
        self.ops.append(f"iptables {table} {' '.join(args)}")
        if args[0] == "-F":
            if table == "filter":
                self.filter_rules.clear()
            elif table == "nat":
                self.nat_rules.clear()
        elif args[0] == "-X" and table == "nat":
            self.nat_chains.clear()
        elif args[0] == "-P":
            self.policies[args[1]] = args[2]
        elif args[0] == "-A":
            rules = self.filter_rules if table == "filter" else self.nat_rules
            rules.append(" ".join(args))
        return subprocess.CompletedProcess(args, 0, "", "")

    def save(self, table):
        self.ops.append("save")
        return self.nat_save if table == "nat" else ""

    def restore(self, document):
        self.ops.append("restore")
        self.filter_rules = []
        for line in document.splitlines():
            if line.startswith(":"):
                chain, policy = line[1:].split()[:2]
                self.policies[chain] = policy
            elif line.startswith("-A "):
                self.filter_rules.append(line)

    def set_policy(self, chain, target, check=True):
        self.ops.append(f"policy {chain} {target}")
        self.policies[chain] = target
        return True

    def create_chain(self, chain, table):
        self.ops.append(f"chain {table} {chain}")
        if chain in self.nat_chains:
            return False
        self.nat_chains.append(chain)
        return True

    def flush_all(self, set_name):
        self.ops.append("flush_all")
        self.filter_rules.clear()
        self.nat_rules.clear()
        self.nat_chains.clear()
        self.sets.pop(set_name, None)

    def create_set(self, name, set_type="hash:net"):
        self.ops.append(f"create_set {name}")
        if name in self.sets:
            raise CommandError(["ipset", "create", name, set_type], "set with the same name already exists")
        self.sets[name] = []

    def add_to_set(self, name, entry):
        if entry in self.rejected_entries or entry in self.sets[name]:
            return False
        self.sets[name].append(entry)
        return True

    def destroy_set(self, name):
        self.ops.append(f"destroy_set {name}")
        return self.sets.pop(name, None) is not None

    # ---------------- Assertions -----------------
    def is_locked_down(self, set_name="allowed-domains") -> bool:
        return (all(p == "DROP" for p in self.policies.values())
                and name_in_rules(set_name, self.filter_rules)
                and bool(self.sets.get(set_name)))

    def is_open(self, set_name="allowed-domains") -> bool:
        return (all(p == "ACCEPT" for p in self.policies.values())
                and not self.filter_rules
                and set_name not in self.sets)

    def snapshot(self):
        return (dict(self.policies), list(self.filter_rules), {k: sorted(v) for k, v in self.sets.items()},
                list(self.nat_rules), list(self.nat_chains))


def name_in_rules(set_name, rules) -> bool:
    return any(f"--match-set {set_name} dst" in rule for rule in rules)


class FakeMetaClient:
    def __init__(self, payload, url="https://api.github.com/meta"):
        self.payload = payload
        self.url = url
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def fake_netfilter():
    return FakeNetfilter(nat_save=DOCKER_NAT_SAVE)
