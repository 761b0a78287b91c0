"""Forwarder process launching and supervision (socat)."""

from .launcher import SocatLauncher
from .supervisor import ProcessSupervisor, is_port_bound

__all__ = ["SocatLauncher", "ProcessSupervisor", "is_port_bound"]
