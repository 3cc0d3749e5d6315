"""Service supervisor interface, systemd implementation and unit descriptor."""

from nodeward.supervisor.systemd import (
    ServiceSupervisor,
    SystemdSupervisor,
    find_processes,
    terminate_processes,
)
from nodeward.supervisor.unit import UnitDescriptor

__all__ = [
    "ServiceSupervisor",
    "SystemdSupervisor",
    "UnitDescriptor",
    "find_processes",
    "terminate_processes",
]
