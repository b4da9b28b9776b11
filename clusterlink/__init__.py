"""clusterlink - keep one DX cluster connection alive and share it locally."""

from .config import ClusterConfig, ClusterDefinition
from .connection import ClusterConnection, ClusterNotConnected, ClusterSendError
from .events import EventHook
from .framer import LineFramer
from .manager import ClusterManager, backoff_delays
from .relay import RelayServer, link_relay

__all__ = [
    "ClusterConfig",
    "ClusterDefinition",
    "ClusterConnection",
    "ClusterNotConnected",
    "ClusterSendError",
    "EventHook",
    "LineFramer",
    "ClusterManager",
    "backoff_delays",
    "RelayServer",
    "link_relay",
]
