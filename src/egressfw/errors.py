"""
Exception types for the firewall bootstrap.

Every fatal condition has its own class so that the log line printed by the
entry point identifies it. Recoverable conditions (a bad CIDR, an unresolved
domain, a DNS rule that fails to replay) are logged as warnings and never
raised.
"""

from typing import List, Optional


class FirewallError(Exception):
    """Base class for all fatal bootstrap errors."""


class MissingToolError(FirewallError):
    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"{tool} is not installed")


class CommandError(FirewallError):
    """Raised when a mandatory system command exits non-zero or times out."""

    def __init__(self, cmd: List[str], detail: Optional[str] = None):
        self.cmd = cmd
        self.detail = detail
        full = f"Command failed: {' '.join(cmd)}"
        if detail:
            full = f"{full}: {detail}"
        super().__init__(full)


class CredentialError(FirewallError):
    pass


class MetadataError(FirewallError):
    """Raised when the remote IP range document cannot be trusted."""


class LockError(FirewallError):
    pass


class HostNetworkError(FirewallError):
    pass


class VerificationError(FirewallError):
    pass


__all__ = [
    "FirewallError",
    "MissingToolError",
    "CommandError",
    "CredentialError",
    "MetadataError",
    "LockError",
    "HostNetworkError",
    "VerificationError",
]
