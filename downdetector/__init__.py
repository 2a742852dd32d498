"""
downdetector - website downtime detector with Discord webhook notifications.

Each configured URL is probed on its own fixed-period ticker. A notification is
sent when a site flips from UP to DOWN and again when it recovers.
"""

from downdetector.config import MonitorConfig, MonitorTarget, NotificationConfig, load_config
from downdetector.main import Monitor, run_monitor

__all__ = [
    "Monitor",
    "MonitorConfig",
    "MonitorTarget",
    "NotificationConfig",
    "load_config",
    "run_monitor",
]
