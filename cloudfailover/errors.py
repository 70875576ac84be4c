"""Failover error taxonomy."""

from __future__ import annotations


class FailoverError(Exception):
    """Base class for every error raised by the failover packages."""


class ConfigurationError(FailoverError):
    """Declaration or settings are missing required values."""


class TransientCloudError(FailoverError):
    """Throttling or a network blip talking to the cloud API. Safe to retry."""


class DiscoveryAmbiguityError(FailoverError):
    """Discovery could not resolve a required cloud object (bucket, NIC, next hop)."""


class RecoveryImpossibleError(FailoverError):
    """A task needs recovery but its checkpoint carries no operations to replay."""


class TaskInProgressError(FailoverError):
    """Another failover task is still RUNNING inside its staleness window."""


class DeviceError(FailoverError):
    """The local device API returned an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
