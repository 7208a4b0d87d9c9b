"""Run project commands on ephemeral cloud VMs."""

__version__ = "0.1.0"
