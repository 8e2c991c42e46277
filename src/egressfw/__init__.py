"""egressfw: default-deny egress firewall bootstrap for agent containers."""

__version__ = "1.0.0"
