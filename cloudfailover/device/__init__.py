"""Device facts collaborator."""
from .client import DeviceClient, parse_traffic_group_stats

__all__ = ["DeviceClient", "parse_traffic_group_stats"]
