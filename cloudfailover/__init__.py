"""Cloud failover for active/standby network appliance clusters."""

__version__ = "1.0.0"
