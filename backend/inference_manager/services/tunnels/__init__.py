"""
SSH Tunnel Management Package

Per-session forwarder processes that expose a compute node's service port
on a local port.
"""

from .tunnel_manager import TunnelManager
from .enums import TunnelState, HealthStatus
from .schemas import TunnelInfo, TunnelResult, TunnelHealthInfo

__all__ = [
    'TunnelManager',
    'TunnelState',
    'HealthStatus',
    'TunnelInfo',
    'TunnelResult',
    'TunnelHealthInfo',
]
