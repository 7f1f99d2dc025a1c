"""
Tunnel lifecycle and health enumerations.

A tunnel is LISTENING only after the forwarder printed its ready marker;
any exit after that point is reported as ERRORED.
"""

from enum import Enum


class TunnelState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    LISTENING = "LISTENING"
    ERRORED = "ERRORED"


class HealthStatus(str, Enum):
    """Result of combining process liveness with a local port probe."""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    UNKNOWN = "UNKNOWN"
