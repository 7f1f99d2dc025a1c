"""
Schemas for SSH Tunnel Management

Data classes for tunnel, process and health information.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from .enums import TunnelState, HealthStatus

BIND_HOST = "127.0.0.1"


def ready_marker(local_port: int, target_host: str, target_port: int) -> str:
    """The single stdout line the forwarder prints once its listener is bound."""
    return f"Tunnel listening on {BIND_HOST}:{local_port} -> {target_host}:{target_port}"


@dataclass
class TunnelInfo:
    """Snapshot of a session's tunnel."""
    local_port: Optional[int] = None
    target_host: Optional[str] = None
    target_port: Optional[int] = None
    state: TunnelState = TunnelState.STOPPED
    pid: Optional[int] = None
    started_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    exit_code: Optional[int] = None


@dataclass
class TunnelResult:
    """Outcome of a start request: success with a message, or an error."""
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


@dataclass
class ProcessInfo:
    """Information about the forwarder process."""
    pid: int
    is_alive: bool
    status: Optional[str] = None
    cpu_percent: float = 0.0
    memory_mb: float = 0.0


@dataclass
class TunnelHealthInfo:
    """Health information for a tunnel."""
    is_healthy: bool
    state: TunnelState
    process: Optional[ProcessInfo] = None
    port_connectivity: bool = False
    last_test: datetime = field(default_factory=datetime.utcnow)
    health_status: HealthStatus = HealthStatus.UNKNOWN
    error_message: Optional[str] = None
