"""Failover declaration: parsing, validation and file persistence."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from cloudfailover import constants
from cloudfailover.constants import CloudEnvironment
from cloudfailover.errors import ConfigurationError

logger = logging.getLogger("cloudfailover.config")


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NextHopAddresses:
    discovery_type: str = constants.NEXT_HOP_ROUTE_TAG
    items: tuple[str, ...] = ()


@dataclass(frozen=True)
class ScopingAddressRange:
    ranges: tuple[str, ...]
    next_hop_addresses: Optional[NextHopAddresses] = None


@dataclass(frozen=True)
class FailoverAddresses:
    enabled: bool = False
    scoping_tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FailoverRoutes:
    enabled: bool = False
    scoping_tags: dict[str, str] = field(default_factory=dict)
    scoping_address_ranges: tuple[ScopingAddressRange, ...] = ()
    default_next_hop_addresses: Optional[NextHopAddresses] = None


@dataclass(frozen=True)
class ExternalStorage:
    scoping_tags: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Declaration:
    environment: CloudEnvironment
    failover_addresses: FailoverAddresses = field(default_factory=FailoverAddresses)
    failover_routes: FailoverRoutes = field(default_factory=FailoverRoutes)
    external_storage: ExternalStorage = field(default_factory=ExternalStorage)
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Declaration:
        """Validate a camelCase declaration body and build the typed model."""
        if not isinstance(raw, dict):
            raise ConfigurationError("Declaration must be an object")

        environment = raw.get("environment")
        if not environment:
            raise ConfigurationError("Environment information has not been provided")
        try:
            env = CloudEnvironment(str(environment).lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported environment: {environment}") from None

        addresses = _parse_addresses(raw.get(constants.IP_FAILOVER))
        routes = _parse_routes(raw.get(constants.ROUTE_FAILOVER))

        storage_raw = raw.get("externalStorage") or {}
        storage_tags = _tags(storage_raw.get("scopingTags"), "externalStorage.scopingTags")
        if not storage_tags:
            raise ConfigurationError("externalStorage.scopingTags is required")

        return cls(
            environment=env,
            failover_addresses=addresses,
            failover_routes=routes,
            external_storage=ExternalStorage(scoping_tags=storage_tags),
            raw=dict(raw),
        )


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def _enabled(section: Optional[dict[str, Any]]) -> bool:
    # A section without an explicit flag is enabled, a missing section is not
    if section is None:
        return False
    return bool(section.get("enabled", True))


def _tags(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a mapping of tag key to value")
    return {str(k): str(v) for k, v in value.items()}


def _next_hop(value: Any) -> Optional[NextHopAddresses]:
    if not value:
        return None
    discovery_type = value.get("discoveryType") or constants.NEXT_HOP_ROUTE_TAG
    if discovery_type not in (constants.NEXT_HOP_ROUTE_TAG, constants.NEXT_HOP_STATIC):
        raise ConfigurationError(f"Unknown next hop discoveryType: {discovery_type}")
    items = tuple(str(i) for i in value.get("items") or ())
    if discovery_type == constants.NEXT_HOP_STATIC and not items:
        raise ConfigurationError("static next hop discovery requires items")
    return NextHopAddresses(discovery_type=discovery_type, items=items)


def _parse_addresses(section: Optional[dict[str, Any]]) -> FailoverAddresses:
    enabled = _enabled(section)
    tags = _tags((section or {}).get("scopingTags"), "failoverAddresses.scopingTags")
    if enabled and not tags:
        raise ConfigurationError("failoverAddresses.scopingTags is required when address failover is enabled")
    return FailoverAddresses(enabled=enabled, scoping_tags=tags)


def _parse_routes(section: Optional[dict[str, Any]]) -> FailoverRoutes:
    enabled = _enabled(section)
    section = section or {}
    tags = _tags(section.get("scopingTags"), "failoverRoutes.scopingTags")
    if enabled and not tags:
        raise ConfigurationError("failoverRoutes.scopingTags is required when route failover is enabled")

    ranges: list[ScopingAddressRange] = []
    for entry in section.get("scopingAddressRanges") or []:
        value = entry.get("range")
        if not value:
            raise ConfigurationError("failoverRoutes.scopingAddressRanges entries require a range")
        cidrs = tuple(value) if isinstance(value, list) else (str(value),)
        ranges.append(ScopingAddressRange(
            ranges=cidrs,
            next_hop_addresses=_next_hop(entry.get("nextHopAddresses")),
        ))

    return FailoverRoutes(
        enabled=enabled,
        scoping_tags=tags,
        scoping_address_ranges=tuple(ranges),
        default_next_hop_addresses=_next_hop(section.get("defaultNextHopAddresses")),
    )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class ConfigWorker:
    """Loads and saves the declaration as a file on local disk."""

    def __init__(self, path: str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _atomic_write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            os.write(fd, data)
            os.fsync(fd)
            os.close(fd)
            fd = -1
            os.replace(tmp, path)
        except BaseException:
            if fd >= 0:
                os.close(fd)
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def load_raw(self) -> dict[str, Any]:
        """Raw declaration body, or ``{}`` when none has been posted yet."""
        if not self._path.exists():
            return {}
        with open(self._path, "r") as f:
            return yaml.safe_load(f) or {}

    async def get_config(self) -> Declaration:
        raw = await asyncio.to_thread(self.load_raw)
        return Declaration.from_dict(raw)

    async def process_config_request(self, body: dict[str, Any]) -> Declaration:
        """Validate ``body`` and persist it. Invalid bodies are never written."""
        declaration = Declaration.from_dict(body)
        data = json.dumps(body, indent=2, ensure_ascii=False).encode()
        await asyncio.to_thread(self._atomic_write, self._path, data)
        logger.info("Declaration saved to %s", self._path)
        return declaration
