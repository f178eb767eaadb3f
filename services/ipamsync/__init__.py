"""ipamsync: declarative reconciliation for a remote IPAM service."""

__version__ = "0.1.0"
