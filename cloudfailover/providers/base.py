"""Cloud provider capability contract and the options derived from a declaration."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from cloudfailover import constants
from cloudfailover.config.declaration import Declaration, NextHopAddresses


@dataclass(frozen=True)
class NextHopSpec:
    type: str
    items: tuple[str, ...] = ()
    tag: str = constants.ROUTE_NEXT_HOP_ADDRESS_TAG


@dataclass(frozen=True)
class RouteAddressRange:
    route_addresses: tuple[str, ...]
    next_hop: NextHopSpec


@dataclass(frozen=True)
class ProviderOptions:
    tags: dict[str, str] = field(default_factory=dict)
    route_tags: dict[str, str] = field(default_factory=dict)
    route_address_ranges: tuple[RouteAddressRange, ...] = ()
    storage_tags: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_declaration(cls, declaration: Declaration) -> ProviderOptions:
        routes = declaration.failover_routes
        default = routes.default_next_hop_addresses

        def _resolve(spec: Optional[NextHopAddresses]) -> NextHopSpec:
            # Ranges without their own next hop fall back to the declaration default
            chosen = spec or default
            if chosen is None:
                return NextHopSpec(type=constants.NEXT_HOP_ROUTE_TAG)
            return NextHopSpec(type=chosen.discovery_type, items=chosen.items)

        return cls(
            tags=dict(declaration.failover_addresses.scoping_tags),
            route_tags=dict(routes.scoping_tags),
            route_address_ranges=tuple(
                RouteAddressRange(route_addresses=r.ranges, next_hop=_resolve(r.next_hop_addresses))
                for r in routes.scoping_address_ranges
            ),
            storage_tags=dict(declaration.external_storage.scoping_tags),
        )


class CloudProvider(Protocol):
    """Operations every vendor implementation provides.

    Plans are plain JSON-compatible dicts so they can be embedded in the
    failover state and replayed after a crash. ``update_addresses`` and
    ``update_routes`` run in one of three modes: discover only, apply a given
    plan, or discover then apply.
    """

    environment: constants.CloudEnvironment

    async def init(self, options: ProviderOptions) -> None: ...

    async def discover_addresses(self, local: list[str], failover: list[str]) -> dict[str, Any]: ...

    async def apply_addresses(self, plan: dict[str, Any]) -> None: ...

    async def discover_routes(self, local: list[str]) -> dict[str, Any]: ...

    async def apply_routes(self, plan: dict[str, Any]) -> None: ...

    async def update_addresses(
        self,
        local: Optional[list[str]] = None,
        failover: Optional[list[str]] = None,
        discover_only: bool = False,
        update_operations: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]: ...

    async def update_routes(
        self,
        local: Optional[list[str]] = None,
        discover_only: bool = False,
        update_operations: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]: ...

    async def upload_state(self, key: str, data: dict[str, Any]) -> None: ...

    async def download_state(self, key: str) -> dict[str, Any]: ...

    async def inspect(self) -> dict[str, Any]: ...
