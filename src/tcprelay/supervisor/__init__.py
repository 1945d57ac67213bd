"""Self-supervision: restart policy, health monitoring and process wiring."""

from tcprelay.supervisor.monitor import HealthMonitor
from tcprelay.supervisor.restart import RestartScheduler, RestartState, spawn_detached
from tcprelay.supervisor.root import SupervisorRoot

__all__ = [
    "HealthMonitor",
    "RestartScheduler",
    "RestartState",
    "SupervisorRoot",
    "spawn_detached",
]
