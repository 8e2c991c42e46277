"""Allow-list collection.

Two independent sources feed the ipset that the final OUTPUT policy matches:

  remote ranges     GitHub's /meta document, one list of CIDRs per category
                    (web, api, git, ...). Fetched with the caller's token,
                    validated, IPv6 dropped, then collapsed into the minimal
                    set of covering networks.
  resolved domains  A fixed list of service hostnames resolved through the
                    system resolver; only IPv4 results are kept.

Entries are validated twice: against a strict dotted-quad pattern (with an
optional prefix length) and by parsing them as IPv4 networks, so values like
"999.1.1.1/33" never reach ipset. A bad entry is skipped with a warning; a
domain that does not resolve is skipped with a warning. Only a failure of the
remote source itself is fatal.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import requests

from egressfw.errors import MetadataError

_QUAD = r"[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}\.[0-9]{1,3}"
CIDR_RE = re.compile(rf"^{_QUAD}/[0-9]{{1,2}}$")
IP_RE = re.compile(rf"^{_QUAD}$")

ERROR_FIELD = "message"


def validate_cidr(value: str) -> bool:
    if not isinstance(value, str) or not CIDR_RE.match(value):
        return False
    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError:
        return False
    return True


def validate_ip(value: str) -> bool:
    if not isinstance(value, str) or not IP_RE.match(value):
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


class Provenance(str, Enum):
    REMOTE_RANGE = "remote-range"
    RESOLVED_DOMAIN = "resolved-domain"
    HOST_NETWORK = "host-network"


@dataclass(frozen=True)
class AllowListEntry:
    network: ipaddress.IPv4Network
    provenance: Provenance
    source: str = ""

    @classmethod
    def parse(cls, value: str, provenance: Provenance, source: str = "") -> "AllowListEntry":
        if not (validate_cidr(value) or validate_ip(value)):
            raise ValueError(f"not an IPv4 address or CIDR: {value!r}")
        return cls(ipaddress.IPv4Network(value, strict=False), provenance, source)

    def __str__(self) -> str:
        if self.network.prefixlen == 32:
            return str(self.network.network_address)
        return str(self.network)


def aggregate(cidrs: Iterable[Any], source: str = "") -> List[ipaddress.IPv4Network]:
    """Drop IPv6 and invalid entries, then merge duplicate, overlapping and adjacent ranges."""
    label = f" from {source}" if source else ""
    networks: List[ipaddress.IPv4Network] = []
    for raw in cidrs:
        if isinstance(raw, str) and ":" in raw:
            continue
        if not (validate_cidr(raw) or validate_ip(raw)):
            logging.warning(f"Skipping invalid CIDR{label}: {raw}")
            continue
        networks.append(ipaddress.IPv4Network(raw, strict=False))
    return list(ipaddress.collapse_addresses(networks))


def validate_document(payload: Any, required: Sequence[str]) -> Dict[str, List[Any]]:
    """Check a /meta response in order: non-empty, not an error envelope, all categories present."""
    if payload is None or payload == {} or payload == "":
        raise MetadataError("Metadata endpoint returned an empty response")
    if not isinstance(payload, dict):
        raise MetadataError(f"Malformed metadata response: expected a JSON object, got {type(payload).__name__}")
    if ERROR_FIELD in payload:
        raise MetadataError(f"Metadata API error: {payload[ERROR_FIELD]}")

    keys = ", ".join(sorted(str(k) for k in payload))
    missing = [c for c in required if c not in payload]
    if missing:
        raise MetadataError(f"Metadata response missing required fields: {', '.join(missing)} "
                            f"(response keys: {keys})")
    for category in required:
        if not isinstance(payload[category], list):
            raise MetadataError(f"Metadata field {category!r} is not a list (response keys: {keys})")
    return payload


class MetaClient:
    """Authenticated GET of the remote IP range document."""

    def __init__(self, url: str, token: str, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def fetch(self) -> Any:
        headers = {
            "Accept": "application/vnd.github+json",
            "Authorization": f"Bearer {self.token}",
            "User-Agent": "egressfw",
        }
        try:
            response = self.session.get(self.url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise MetadataError(f"Failed to fetch IP ranges from {self.url}: {e}")

        if not response.text.strip():
            raise MetadataError("Metadata endpoint returned an empty response")
        try:
            payload = response.json()
        except ValueError:
            raise MetadataError(f"Metadata response from {self.url} is not valid JSON (HTTP {response.status_code})")

        # an error envelope is reported by validate_document whatever the status
        if not response.ok and not (isinstance(payload, dict) and ERROR_FIELD in payload):
            raise MetadataError(f"Metadata endpoint returned HTTP {response.status_code}")
        return payload


class RemoteRangeResolver:
    def __init__(self, client: MetaClient, required_categories: Sequence[str]):
        if not required_categories:
            raise ValueError("at least one required category is needed")
        self.client = client
        self.required_categories = tuple(required_categories)

    def fetch(self) -> Dict[str, List[Any]]:
        logging.info(f"Fetching IP ranges from {self.client.url}...")
        return validate_document(self.client.fetch(), self.required_categories)

    def entries(self, document: Dict[str, List[Any]]) -> List[AllowListEntry]:
        raw: List[Any] = []
        for category in self.required_categories:
            raw.extend(document[category])

        entries: List[AllowListEntry] = []
        for network in aggregate(raw, source="remote ranges"):
            text = str(network)
            if not validate_cidr(text):
                logging.warning(f"Skipping invalid aggregated CIDR: {text}")
                continue
            entries.append(AllowListEntry(network, Provenance.REMOTE_RANGE, "+".join(self.required_categories)))
        logging.info(f"Aggregated {len(raw)} remote entries into {len(entries)} IPv4 range(s)")
        return entries


def system_resolve(domain: str) -> List[str]:
    ips: List[str] = []
    for info in socket.getaddrinfo(domain, None, socket.AF_INET, socket.SOCK_STREAM):
        ip = info[4][0]
        if ip not in ips:
            ips.append(ip)
    return ips


class DomainResolver:
    def __init__(self, domains: Sequence[str], resolve: Callable[[str], List[str]] = system_resolve):
        self.domains = tuple(domains)
        self.resolve = resolve

    def entries(self) -> List[AllowListEntry]:
        entries: List[AllowListEntry] = []
        for domain in self.domains:
            try:
                ips = self.resolve(domain)
            except (OSError, UnicodeError) as e:
                logging.warning(f"Failed to resolve {domain} (skipping): {e}")
                continue
            if not ips:
                logging.warning(f"Failed to resolve {domain} (skipping)")
                continue
            for ip in ips:
                if not validate_ip(ip):
                    logging.warning(f"Skipping invalid IP for {domain}: {ip}")
                    continue
                entries.append(AllowListEntry.parse(ip, Provenance.RESOLVED_DOMAIN, domain))
            logging.debug(f"Resolved {domain} -> {', '.join(ips)}")
        return entries


@dataclass
class AllowListReport:
    members: List[str] = field(default_factory=list)
    counts: Dict[Provenance, int] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)

    def count(self, provenance: Provenance) -> int:
        return self.counts.get(provenance, 0)


class AllowListBuilder:
    """Creates the allow-list ipset and fills it; the only writer of that set."""

    def __init__(self, netfilter, set_name: str):
        self.netfilter = netfilter
        self.set_name = set_name

    def build(self, entries: Iterable[AllowListEntry]) -> AllowListReport:
        self.netfilter.create_set(self.set_name, "hash:net")
        report = AllowListReport()
        for entry in entries:
            text = str(entry)
            if text in report.members:
                continue
            if self.netfilter.add_to_set(self.set_name, text):
                report.members.append(text)
                report.counts[entry.provenance] = report.count(entry.provenance) + 1
            else:
                report.failed.append(text)
                logging.warning(f"Failed to add {text} ({entry.source}) to ipset {self.set_name}")
        return report
