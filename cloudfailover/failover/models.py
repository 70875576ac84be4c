"""Failover data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from cloudfailover.errors import DiscoveryAmbiguityError


class TaskState(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    NEVER_RUN = "NEVER_RUN"


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class FailoverState:
    """The single durable checkpoint, stored as JSON in cloud storage."""

    task_state: TaskState
    message: str = ""
    timestamp: str = field(default_factory=utc_timestamp)
    instance: str = "none"
    failover_operations: dict[str, Any] = field(default_factory=dict)

    @property
    def addresses(self) -> dict[str, Any]:
        return self.failover_operations.get("addresses") or {}

    @property
    def routes(self) -> dict[str, Any]:
        return self.failover_operations.get("routes") or {}

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        started = parse_timestamp(self.timestamp)
        if started is None:
            return None
        return ((now or datetime.now(timezone.utc)) - started).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskState": self.task_state.value,
            "message": self.message,
            "timestamp": self.timestamp,
            "instance": self.instance,
            "failoverOperations": self.failover_operations,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailoverState:
        try:
            task_state = TaskState(data["taskState"])
        except (KeyError, ValueError):
            raise DiscoveryAmbiguityError(f"State file has an unknown taskState: {data.get('taskState')!r}") from None
        timestamp = data.get("timestamp") or ""
        if not isinstance(timestamp, str):
            raise DiscoveryAmbiguityError(f"State file timestamp is not a string: {timestamp!r}")
        operations = data.get("failoverOperations") or {}
        if not isinstance(operations, dict):
            raise DiscoveryAmbiguityError("State file failoverOperations is not an object")
        return cls(
            task_state=task_state,
            message=data.get("message", ""),
            timestamp=timestamp,
            instance=data.get("instance", "none"),
            failover_operations=operations,
        )


@dataclass
class TaskResolution:
    """Outcome of inspecting the previous task before a new cycle."""

    recover_previous_task: bool
    state: Optional[FailoverState] = None


@dataclass(frozen=True)
class TrafficGroupStat:
    traffic_group: str
    device_name: str
    failover_state: str


@dataclass(frozen=True)
class TrafficGroup:
    name: str


@dataclass
class DeviceSnapshot:
    """Device facts fetched together at the start of a cycle."""

    hostname: str
    traffic_group_stats: dict[str, TrafficGroupStat] = field(default_factory=dict)
    self_addresses: list[dict[str, Any]] = field(default_factory=list)
    virtual_addresses: list[dict[str, Any]] = field(default_factory=list)
    snat_addresses: list[dict[str, Any]] = field(default_factory=list)
    nat_addresses: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class AddressClassification:
    local: list[str] = field(default_factory=list)
    failover: list[str] = field(default_factory=list)
