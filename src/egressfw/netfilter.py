from __future__ import annotations

import logging
import subprocess
from typing import Optional

from egressfw.commands import CommandRunner

TABLES = ("filter", "nat", "mangle")
POLICY_CHAINS = ("INPUT", "FORWARD", "OUTPUT")
BUILTIN_CHAINS = {"INPUT", "OUTPUT", "FORWARD", "PREROUTING", "POSTROUTING"}


class Netfilter:
    """Handle on the host-global iptables tables and the allow-list ipset.

    Every phase of the bootstrap goes through this object instead of calling
    iptables/ipset directly, so the whole pipeline can run against a fake.
    """

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def iptables(self, *args: str, table: Optional[str] = None, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["iptables", "-w"]
        if table:
            cmd += ["-t", table]
        cmd += list(args)
        return self.runner.run(cmd, check=check)

    def save(self, table: str) -> str:
        return self.runner.run(["iptables-save", "-t", table], mutating=False).stdout

    def restore(self, document: str):
        """Atomically replace every table present in the document."""
        self.runner.run(["iptables-restore", "-w"], input_text=document)

    def set_policy(self, chain: str, target: str, check: bool = True) -> bool:
        return self.iptables("-P", chain, target, check=check).returncode == 0

    def create_chain(self, chain: str, table: str) -> bool:
        result = self.iptables("-N", chain, table=table, check=False)
        if result.returncode != 0:
            logging.debug(f"Chain {table}/{chain} not created: {result.stderr.strip()}")
        return result.returncode == 0

    def flush_all(self, set_name: str):
        """Remove every rule and custom chain, then the allow-list set."""
        for table in TABLES:
            self.iptables("-F", table=table)
            self.iptables("-X", table=table)
        self.destroy_set(set_name)

    # ---------------- ipset -----------------
    def create_set(self, name: str, set_type: str = "hash:net"):
        self.runner.run(["ipset", "create", name, set_type])

    def add_to_set(self, name: str, entry: str) -> bool:
        result = self.runner.run(["ipset", "add", name, entry], check=False)
        if result.returncode != 0:
            logging.debug(f"ipset add {name} {entry}: {result.stderr.strip()}")
        return result.returncode == 0

    def destroy_set(self, name: str) -> bool:
        result = self.runner.run(["ipset", "destroy", name], check=False)
        if result.returncode != 0:
            logging.debug(f"ipset {name} not destroyed (absent?): {result.stderr.strip()}")
        return result.returncode == 0
