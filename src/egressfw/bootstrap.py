"""Default-deny egress bootstrap.

The run is a fixed sequence of phases. Each transition takes the state
collected so far and returns the next one; any exception ends the run.

  PREFLIGHT        tool check, credential, remote range fetch and
                   validation, Docker DNS snapshot. Nothing is mutated yet,
                   so a failure here leaves the host exactly as it was.
  FLUSHED          all tables flushed, allow-list ipset destroyed.
  DNS_RESTORED     Docker's embedded DNS nat rules replayed.
  COLLECTING       temporary permissive filter table loaded.
  ALLOWLIST_READY  ipset created and filled from remote ranges and domains.
  HOST_DETECTED    /24 around the default gateway derived.
  LOCKED_DOWN      final default-DROP filter table loaded atomically.
  VERIFIED         probes confirm blocked and allowed paths.

From FLUSHED on, the run is wrapped in a PolicyTransaction. Unless it is
committed after VERIFIED, leaving the block (error, SIGTERM, Ctrl-C) resets the
host to an open policy: ACCEPT everywhere, filter table flushed, ipset gone.
The host therefore ends either fully locked down or fully open.
"""

from __future__ import annotations

import contextlib
import fcntl
import getpass
import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional

from egressfw.allowlist import (
    AllowListBuilder,
    AllowListEntry,
    AllowListReport,
    DomainResolver,
    MetaClient,
    Provenance,
    RemoteRangeResolver,
)
from egressfw.commands import CommandRunner
from egressfw.config import FirewallConfig
from egressfw.credentials import resolve_token
from egressfw.dns_preserve import DockerDNSPreserver
from egressfw.errors import LockError
from egressfw.hostnet import HostNetworkDetector
from egressfw.netfilter import Netfilter
from egressfw.policy import PolicyApplier, PolicyPhase
from egressfw.verify import Verifier


@dataclass
class BootstrapState:
    phase: PolicyPhase = PolicyPhase.PREFLIGHT
    dns_rules: List[str] = field(default_factory=list)
    document: Dict[str, List[Any]] = field(default_factory=dict)
    allowlist: Optional[AllowListReport] = None
    host_network: Optional[AllowListEntry] = None


class PolicyTransaction:
    """Compensating rollback for everything done after the first flush."""

    def __init__(self, applier: PolicyApplier):
        self.applier = applier
        self.committed = False

    def __enter__(self) -> "PolicyTransaction":
        logging.debug("Rollback guard armed")
        return self

    def commit(self):
        self.committed = True
        logging.debug("Rollback guard disarmed")

    def rollback(self):
        logging.error("Firewall bootstrap failed, resetting to permissive state...")
        if self.applier.open_up():
            logging.error("Firewall reset: all policies ACCEPT, rules flushed, allow-list destroyed")
        else:
            logging.error("Rollback incomplete; inspect the host with iptables -S and ipset list")

    def __exit__(self, exc_type, exc, tb):
        if not self.committed:
            self.rollback()
        return False


class SingleInstanceLock:
    def __init__(self, path: str):
        self.path = path
        self.handle = None

    def __enter__(self) -> "SingleInstanceLock":
        try:
            self.handle = open(self.path, "a+")
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.path}: {e}")
        try:
            fcntl.flock(self.handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            self.handle.close()
            raise LockError(f"Another firewall bootstrap is running (lock held on {self.path})")
        self.handle.seek(0)
        self.handle.truncate(0)
        self.handle.write(f"{os.getpid()}\n")
        self.handle.flush()
        return self

    def __exit__(self, exc_type, exc, tb):
        fcntl.flock(self.handle, fcntl.LOCK_UN)
        self.handle.close()
        return False


class FirewallBootstrap:
    def __init__(self, config: FirewallConfig, runner: CommandRunner, netfilter: Netfilter,
                 domains: DomainResolver, host_detector: HostNetworkDetector, verifier: Verifier,
                 remote: Optional[RemoteRangeResolver] = None):
        self.config = config
        self.runner = runner
        self.netfilter = netfilter
        self.remote = remote
        self.domains = domains
        self.host_detector = host_detector
        self.verifier = verifier
        self.dns = DockerDNSPreserver(netfilter, config.docker_dns)
        self.builder = AllowListBuilder(netfilter, config.ipset_name)
        self.applier = PolicyApplier(netfilter, config.ipset_name)

    @classmethod
    def from_config(cls, config: FirewallConfig) -> "FirewallBootstrap":
        runner = CommandRunner(dry_run=config.dry_run)
        return cls(
            config=config,
            runner=runner,
            netfilter=Netfilter(runner),
            domains=DomainResolver(config.allowed_domains),
            host_detector=HostNetworkDetector(runner),
            verifier=Verifier(config.blocked_url, config.required_url, config.best_effort_url,
                              blocked_timeout=config.blocked_timeout, timeout=config.probe_timeout),
        )

    # ---------------- Pipeline -----------------
    def run(self) -> BootstrapState:
        lock = contextlib.nullcontext() if self.config.dry_run else SingleInstanceLock(self.config.lock_file)
        with lock:
            state = self.preflight(BootstrapState())
            with PolicyTransaction(self.applier) as txn:
                while state.phase < PolicyPhase.VERIFIED:
                    state = self.step(state)
                txn.commit()
        self.log_summary(state)
        return state

    def step(self, state: BootstrapState) -> BootstrapState:
        transition = TRANSITIONS[state.phase]
        return transition(self, state)

    def preflight(self, state: BootstrapState) -> BootstrapState:
        logging.info("Starting firewall initialization...")
        self.log_environment()
        self.runner.require_tools()
        remote = self.remote or self.remote_from_config()
        document = remote.fetch()
        self.remote = remote
        dns_rules = self.dns.capture()
        return replace(state, document=document, dns_rules=dns_rules)

    def remote_from_config(self) -> RemoteRangeResolver:
        token = resolve_token(self.runner)
        client = MetaClient(self.config.meta_url, token, timeout=self.config.fetch_timeout)
        return RemoteRangeResolver(client, self.config.required_categories)

    def flush(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 1: Flushing existing firewall rules...")
        self.netfilter.flush_all(self.config.ipset_name)
        logging.info("Existing firewall rules flushed")
        return replace(state, phase=PolicyPhase.FLUSHED)

    def restore_dns(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 2: Restoring Docker internal DNS resolution...")
        self.dns.restore(state.dns_rules)
        return replace(state, phase=PolicyPhase.DNS_RESTORED)

    def open_for_collection(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 3: Setting up temporary rules for IP collection...")
        self.applier.apply_temporary()
        return replace(state, phase=PolicyPhase.COLLECTING)

    def build_allowlist(self, state: BootstrapState) -> BootstrapState:
        logging.info(f"Phase 4: Creating ipset {self.config.ipset_name} and adding allowed IP ranges...")
        entries: List[AllowListEntry] = self.remote.entries(state.document)
        logging.info(f"  Resolving {len(self.domains.domains)} additional required domains...")
        entries += self.domains.entries()
        report = self.builder.build(entries)
        logging.info(f"Added {report.count(Provenance.REMOTE_RANGE)} remote IP ranges and "
                     f"{report.count(Provenance.RESOLVED_DOMAIN)} IPs from additional domains")
        return replace(state, phase=PolicyPhase.ALLOWLIST_READY, allowlist=report)

    def detect_host(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 5: Detecting host network...")
        network = self.host_detector.detect()
        return replace(state, phase=PolicyPhase.HOST_DETECTED, host_network=network)

    def lock_down(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 6: Applying final restrictive firewall rules...")
        self.applier.apply_final(str(state.host_network))
        return replace(state, phase=PolicyPhase.LOCKED_DOWN)

    def verify(self, state: BootstrapState) -> BootstrapState:
        logging.info("Phase 7: Verifying firewall configuration...")
        if self.config.dry_run:
            logging.info("[DRY-RUN] skipping verification probes")
        else:
            self.verifier.verify()
        return replace(state, phase=PolicyPhase.VERIFIED)

    # ---------------- Reporting -----------------
    def log_environment(self):
        token = os.getenv("GH_TOKEN", "")
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        logging.info("Environment check:")
        logging.info(f"  Running as: {user} (UID: {os.geteuid()})")
        logging.info(f"  GH_TOKEN: {f'SET (length: {len(token)})' if token else 'NOT SET'}")
        if self.config.dry_run:
            logging.info("  DRY_RUN: mutating commands are only logged")

    def log_summary(self, state: BootstrapState):
        report = state.allowlist or AllowListReport()
        logging.info("============================================")
        logging.info("Firewall initialization completed successfully")
        logging.info("============================================")
        logging.info("Summary:")
        logging.info(f"  - Remote IP ranges: {report.count(Provenance.REMOTE_RANGE)}")
        logging.info(f"  - Additional domains: {report.count(Provenance.RESOLVED_DOMAIN)} IPs")
        logging.info(f"  - Host network: {state.host_network}")
        logging.info("  - Default policy: DROP (deny all except allowed)")


TRANSITIONS: Dict[PolicyPhase, Callable[[FirewallBootstrap, BootstrapState], BootstrapState]] = {
    PolicyPhase.PREFLIGHT: FirewallBootstrap.flush,
    PolicyPhase.FLUSHED: FirewallBootstrap.restore_dns,
    PolicyPhase.DNS_RESTORED: FirewallBootstrap.open_for_collection,
    PolicyPhase.COLLECTING: FirewallBootstrap.build_allowlist,
    PolicyPhase.ALLOWLIST_READY: FirewallBootstrap.detect_host,
    PolicyPhase.HOST_DETECTED: FirewallBootstrap.lock_down,
    PolicyPhase.LOCKED_DOWN: FirewallBootstrap.verify,
}
