"""Runtime configuration, read from environment variables.

Environment Variables:
  LOG_LEVEL                    (default INFO)
  DRY_RUN                      (default false) -> only log mutating commands
  EGRESSFW_IPSET               (default allowed-domains)
  EGRESSFW_META_URL            (default https://api.github.com/meta)
  EGRESSFW_REQUIRED_CATEGORIES (default web,api,git)
  EGRESSFW_EXTRA_DOMAINS       (default empty) -> appended to the built-in domains
  EGRESSFW_BLOCKED_URL         (default https://example.com)
  EGRESSFW_REQUIRED_URL        (default https://api.github.com/zen)
  EGRESSFW_BEST_EFFORT_URL     (default https://registry.npmjs.org)
  EGRESSFW_FETCH_TIMEOUT       (default 10) -> seconds for the metadata fetch
  EGRESSFW_LOCK_FILE           (default /run/egressfw.lock)
  EGRESSFW_DOCKER_DNS          (default 127.0.0.11)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

DEFAULT_ALLOWED_DOMAINS: Tuple[str, ...] = (
    "registry.npmjs.org",
    "api.anthropic.com",
    "sentry.io",
    "statsig.anthropic.com",
    "statsig.com",
    "marketplace.visualstudio.com",
    "vscode.blob.core.windows.net",
    "update.code.visualstudio.com",
    "aiplatform.googleapis.com",
    "oauth2.googleapis.com",
    "accounts.google.com",
)

DEFAULT_REQUIRED_CATEGORIES: Tuple[str, ...] = ("web", "api", "git")


def env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).strip().lower() in {"1", "true", "yes", "on"}


def env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class FirewallConfig:
    ipset_name: str = "allowed-domains"
    meta_url: str = "https://api.github.com/meta"
    required_categories: Tuple[str, ...] = DEFAULT_REQUIRED_CATEGORIES
    allowed_domains: Tuple[str, ...] = DEFAULT_ALLOWED_DOMAINS
    blocked_url: str = "https://example.com"
    required_url: str = "https://api.github.com/zen"
    best_effort_url: str = "https://registry.npmjs.org"
    blocked_timeout: float = 3.0
    probe_timeout: float = 5.0
    fetch_timeout: float = 10.0
    docker_dns: str = "127.0.0.11"
    lock_file: str = "/run/egressfw.lock"
    dry_run: bool = False

    @classmethod
    def from_env(cls) -> "FirewallConfig":
        extra = env_list("EGRESSFW_EXTRA_DOMAINS")
        domains = DEFAULT_ALLOWED_DOMAINS + tuple(d for d in extra if d not in DEFAULT_ALLOWED_DOMAINS)
        categories = env_list("EGRESSFW_REQUIRED_CATEGORIES", DEFAULT_REQUIRED_CATEGORIES)
        if not categories:
            raise ValueError("EGRESSFW_REQUIRED_CATEGORIES must name at least one category")
        return cls(
            ipset_name=os.getenv("EGRESSFW_IPSET", cls.ipset_name),
            meta_url=os.getenv("EGRESSFW_META_URL", cls.meta_url),
            required_categories=categories,
            allowed_domains=domains,
            blocked_url=os.getenv("EGRESSFW_BLOCKED_URL", cls.blocked_url),
            required_url=os.getenv("EGRESSFW_REQUIRED_URL", cls.required_url),
            best_effort_url=os.getenv("EGRESSFW_BEST_EFFORT_URL", cls.best_effort_url),
            fetch_timeout=env_float("EGRESSFW_FETCH_TIMEOUT", cls.fetch_timeout),
            docker_dns=os.getenv("EGRESSFW_DOCKER_DNS", cls.docker_dns),
            lock_file=os.getenv("EGRESSFW_LOCK_FILE", cls.lock_file),
            dry_run=env_bool("DRY_RUN", False),
        )
