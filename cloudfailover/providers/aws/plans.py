"""AWS operation plans. Serialised as camelCase JSON inside the failover state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class PublicAddressOperation:
    """Move an Elastic IP from its current private address to a target one."""

    public_ip: str
    allocation_id: str
    current_private_address: Optional[str]
    association_id: Optional[str]
    target_private_address: str
    target_nic_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": {
                "privateAddress": self.current_private_address,
                "associationId": self.association_id,
            },
            "target": {
                "privateAddress": self.target_private_address,
                "nicId": self.target_nic_id,
            },
            "allocationId": self.allocation_id,
        }

    @classmethod
    def from_dict(cls, public_ip: str, data: dict[str, Any]) -> PublicAddressOperation:
        current = data.get("current") or {}
        target = data.get("target") or {}
        return cls(
            public_ip=public_ip,
            allocation_id=data.get("allocationId", ""),
            current_private_address=current.get("privateAddress"),
            association_id=current.get("associationId"),
            target_private_address=target.get("privateAddress", ""),
            target_nic_id=target.get("nicId", ""),
        )


@dataclass
class NicAddress:
    address: str
    public_address: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"address": self.address, "publicAddress": self.public_address}


@dataclass
class NicAddressBatch:
    nic_id: str
    addresses: list[NicAddress] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"nicId": self.nic_id, "addresses": [a.to_dict() for a in self.addresses]}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NicAddressBatch:
        return cls(
            nic_id=data["nicId"],
            addresses=[
                NicAddress(address=a["address"], public_address=a.get("publicAddress"))
                for a in data.get("addresses") or []
            ],
        )


@dataclass
class AddressPlan:
    public_addresses: dict[str, PublicAddressOperation] = field(default_factory=dict)
    disassociate: list[NicAddressBatch] = field(default_factory=list)
    associate: list[NicAddressBatch] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.public_addresses or self.disassociate or self.associate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "publicAddresses": {ip: op.to_dict() for ip, op in self.public_addresses.items()},
            "interfaces": {
                "disassociate": [b.to_dict() for b in self.disassociate],
                "associate": [b.to_dict() for b in self.associate],
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> AddressPlan:
        data = data or {}
        interfaces = data.get("interfaces") or {}
        return cls(
            public_addresses={
                ip: PublicAddressOperation.from_dict(ip, op)
                for ip, op in (data.get("publicAddresses") or {}).items()
            },
            disassociate=[NicAddressBatch.from_dict(b) for b in interfaces.get("disassociate") or []],
            associate=[NicAddressBatch.from_dict(b) for b in interfaces.get("associate") or []],
        )


@dataclass
class RouteOperation:
    route_table_id: str
    cidr: str
    ip_version: str
    target_nic_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeTableId": self.route_table_id,
            "cidr": self.cidr,
            "ipVersion": self.ip_version,
            "targetNicId": self.target_nic_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RouteOperation:
        return cls(
            route_table_id=data["routeTableId"],
            cidr=data["cidr"],
            ip_version=str(data.get("ipVersion", "4")),
            target_nic_id=data["targetNicId"],
        )


@dataclass
class RoutePlan:
    operations: list[RouteOperation] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def to_dict(self) -> dict[str, Any]:
        return {"operations": [op.to_dict() for op in self.operations]}

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> RoutePlan:
        return cls(operations=[RouteOperation.from_dict(op) for op in (data or {}).get("operations") or []])
