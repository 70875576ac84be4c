"""Local device facts over the iControl REST API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp

from cloudfailover.config.settings import Settings
from cloudfailover.errors import DeviceError
from cloudfailover.failover.models import TrafficGroupStat

logger = logging.getLogger("cloudfailover.device")


def _description(entries: dict[str, Any], name: str) -> str:
    return (entries.get(name) or {}).get("description", "")


def parse_traffic_group_stats(body: dict[str, Any]) -> dict[str, TrafficGroupStat]:
    """Flatten the nested ``cm/traffic-group/stats`` response."""
    stats: dict[str, TrafficGroupStat] = {}
    for key, entry in (body.get("entries") or {}).items():
        nested = ((entry.get("nestedStats") or {}).get("entries")) or {}
        stats[key] = TrafficGroupStat(
            traffic_group=_description(nested, "trafficGroup"),
            device_name=_description(nested, "deviceName"),
            failover_state=_description(nested, "failoverState"),
        )
    return stats


class DeviceClient:
    """Reads hostname, traffic group state and address inventories from the device."""

    def __init__(self, settings: Settings, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._base = f"https://{settings.device_host}:{settings.device_port}/mgmt/tm"
        self._auth = aiohttp.BasicAuth(settings.device_user, settings.device_password)
        self._timeout = aiohttp.ClientTimeout(total=settings.device_timeout_s)
        self._session = session

    async def _get(self, path: str) -> dict[str, Any]:
        url = f"{self._base}/{path}"
        session = self._session or aiohttp.ClientSession(timeout=self._timeout)
        try:
            # The local management certificate is self-signed
            async with session.get(url, auth=self._auth, ssl=False) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise DeviceError(f"GET {path} returned {resp.status}: {text[:200]}", status=resp.status)
                return await resp.json(content_type=None)
        except aiohttp.ClientError as exc:
            raise DeviceError(f"GET {path} failed: {exc}") from exc
        finally:
            if self._session is None:
                await session.close()

    async def _items(self, path: str) -> list[dict[str, Any]]:
        body = await self._get(path)
        return body.get("items") or []

    async def get_global_settings(self) -> dict[str, Any]:
        return await self._get("sys/global-settings")

    async def get_traffic_groups_stats(self) -> dict[str, TrafficGroupStat]:
        return parse_traffic_group_stats(await self._get("cm/traffic-group/stats"))

    async def get_self_addresses(self) -> list[dict[str, Any]]:
        return await self._items("net/self")

    async def get_virtual_addresses(self) -> list[dict[str, Any]]:
        return await self._items("ltm/virtual-address")

    async def get_snat_translation_addresses(self) -> list[dict[str, Any]]:
        return await self._items("ltm/snat-translation")

    async def get_nat_addresses(self) -> list[dict[str, Any]]:
        return await self._items("ltm/nat")
