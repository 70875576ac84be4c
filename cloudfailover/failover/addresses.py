"""Traffic group resolution and local/failover address classification."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from cloudfailover.constants import DeviceStatus

from .models import AddressClassification, DeviceSnapshot, TrafficGroup, TrafficGroupStat

logger = logging.getLogger("cloudfailover.addresses")


def get_traffic_groups(
    stats: dict[str, TrafficGroupStat],
    hostname: str,
    status: DeviceStatus,
) -> list[TrafficGroup]:
    """Traffic groups this device holds in ``status``.

    The device name reported by the cluster may carry a domain suffix, so the
    hostname only has to appear inside it.
    """
    groups: list[TrafficGroup] = []
    for stat in stats.values():
        if hostname and hostname in stat.device_name and stat.failover_state == status.value:
            groups.append(TrafficGroup(name=stat.traffic_group))
    return groups


def strip_address(address: str) -> str:
    """Drop the ``/prefix`` and ``%route-domain`` decorations from a device address."""
    return address.split("/")[0].split("%")[0]


def _group_matches(groups: Iterable[TrafficGroup], traffic_group: str | None) -> bool:
    if not traffic_group:
        return False
    for group in groups:
        if group.name == traffic_group or group.name.endswith("/" + traffic_group.lstrip("/")):
            return True
    return False


def classify_addresses(
    snapshot: DeviceSnapshot,
    active_groups: list[TrafficGroup],
) -> AddressClassification:
    """Split device addresses into ``local`` and ``failover`` sets.

    Self addresses belonging to an active-here traffic group follow the
    failover; every other self address stays local. Virtual, SNAT and NAT
    addresses of active-here traffic groups are always failover addresses.
    """
    result = AddressClassification()

    for item in snapshot.self_addresses:
        address = strip_address(item["address"])
        if _group_matches(active_groups, item.get("trafficGroup")):
            result.failover.append(address)
        else:
            result.local.append(address)

    floating: list[tuple[dict[str, Any], str]] = (
        [(item, "address") for item in snapshot.virtual_addresses]
        + [(item, "address") for item in snapshot.snat_addresses]
        + [(item, "translationAddress") for item in snapshot.nat_addresses]
    )
    for item, key in floating:
        if _group_matches(active_groups, item.get("trafficGroup")):
            result.failover.append(strip_address(item[key]))

    logger.debug("Local addresses: %s", result.local)
    logger.debug("Failover addresses: %s", result.failover)
    return result
