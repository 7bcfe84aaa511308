"""vulnsync: multi-source vulnerability analysis and reconciliation."""

__version__ = "0.1.0"
