"""In-memory EC2 used by the AWS provider tests."""

from __future__ import annotations

import copy
import itertools
from typing import Any, Callable, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from cloudfailover import constants
from cloudfailover.failover.retrier import RetryPolicy
from cloudfailover.providers.aws.cloud import AwsCloudProvider
from cloudfailover.providers.base import ProviderOptions, RouteAddressRange

LABEL = {"f5_cloud_failover_label": "mydeployment"}
THIS_INSTANCE = "i-aaa"
PEER_INSTANCE = "i-bbb"


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _tags(item: dict[str, Any], key: str) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in item.get(key, [])}


def _filtered(items: list[dict[str, Any]], filters: list[dict[str, Any]], tag_key: str,
              resolvers: dict[str, Callable[[dict[str, Any]], list[Optional[str]]]]) -> list[dict[str, Any]]:
    result = []
    for item in items:
        ok = True
        for f in filters:
            wanted = set(f["Values"])
            if f["Name"].startswith("tag:"):
                ok = _tags(item, tag_key).get(f["Name"][4:]) in wanted
            else:
                ok = bool(wanted & set(resolvers[f["Name"]](item)))
            if not ok:
                break
        if ok:
            result.append(copy.deepcopy(item))
    return result


class FakeEc2:
    """Just enough EC2 for address and route failover, including side effects."""

    def __init__(self) -> None:
        self.addresses: list[dict[str, Any]] = []
        self.nics: list[dict[str, Any]] = []
        self.route_tables: list[dict[str, Any]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._assoc_ids = itertools.count(1)

    @property
    def mutations(self) -> list[tuple[str, dict[str, Any]]]:
        return [c for c in self.calls if not c[0].startswith("describe_")]

    async def call(self, operation: str, params: dict[str, Any],
                   ignore_codes: frozenset[str] = frozenset()) -> dict[str, Any]:
        self.calls.append((operation, params))
        try:
            return getattr(self, operation)(**params)
        except ClientError as exc:
            if exc.response["Error"]["Code"] in ignore_codes:
                return {}
            raise

    # -- lookups --------------------------------------------------------------

    def nic(self, nic_id: str) -> dict[str, Any]:
        return next(n for n in self.nics if n["NetworkInterfaceId"] == nic_id)

    def eip(self, public_ip: str) -> dict[str, Any]:
        return next(a for a in self.addresses if a["PublicIp"] == public_ip)

    def nic_addresses(self, nic_id: str) -> list[str]:
        return [p["PrivateIpAddress"] for p in self.nic(nic_id)["PrivateIpAddresses"]]

    # -- describe -------------------------------------------------------------

    def describe_addresses(self, Filters=()) -> dict[str, Any]:
        return {"Addresses": _filtered(self.addresses, Filters, "Tags", {
            "instance-id": lambda a: [a.get("InstanceId")],
            "public-ip": lambda a: [a.get("PublicIp")],
        })}

    def describe_network_interfaces(self, Filters=()) -> dict[str, Any]:
        return {"NetworkInterfaces": _filtered(self.nics, Filters, "TagSet", {
            "attachment.instance-id": lambda n: [n.get("Attachment", {}).get("InstanceId")],
            "network-interface-id": lambda n: [n["NetworkInterfaceId"]],
            "private-ip-address": lambda n: [p["PrivateIpAddress"] for p in n["PrivateIpAddresses"]],
            "ipv6-addresses.ipv6-address": lambda n: [p["Ipv6Address"] for p in n.get("Ipv6Addresses", [])],
        })}

    def describe_route_tables(self, Filters=()) -> dict[str, Any]:
        return {"RouteTables": _filtered(self.route_tables, Filters, "Tags", {
            "route.instance-id": lambda t: [r.get("InstanceId") for r in t["Routes"]],
        })}

    # -- mutations ------------------------------------------------------------

    def disassociate_address(self, AssociationId: str) -> dict[str, Any]:
        eip = next((a for a in self.addresses if a.get("AssociationId") == AssociationId), None)
        if eip is None:
            raise _client_error("InvalidAssociationID.NotFound", "DisassociateAddress")
        self._detach(eip)
        return {}

    def associate_address(self, AllocationId: str, NetworkInterfaceId: str, PrivateIpAddress: str,
                          AllowReassociation: bool = False) -> dict[str, Any]:
        eip = next(a for a in self.addresses if a["AllocationId"] == AllocationId)
        if eip.get("AssociationId"):
            if not AllowReassociation:
                raise _client_error("Resource.AlreadyAssociated", "AssociateAddress")
            self._detach(eip)
        nic = self.nic(NetworkInterfaceId)
        private = next(p for p in nic["PrivateIpAddresses"] if p["PrivateIpAddress"] == PrivateIpAddress)
        assoc_id = f"eipassoc-{next(self._assoc_ids)}"
        eip.update({
            "AssociationId": assoc_id,
            "NetworkInterfaceId": NetworkInterfaceId,
            "PrivateIpAddress": PrivateIpAddress,
            "InstanceId": nic["Attachment"]["InstanceId"],
        })
        private["Association"] = {"PublicIp": eip["PublicIp"]}
        return {"AssociationId": assoc_id}

    def unassign_private_ip_addresses(self, NetworkInterfaceId: str, PrivateIpAddresses: list[str]) -> dict[str, Any]:
        nic = self.nic(NetworkInterfaceId)
        current = self.nic_addresses(NetworkInterfaceId)
        missing = [a for a in PrivateIpAddresses if a not in current]
        if missing:
            raise _client_error("InvalidParameterValue", "UnassignPrivateIpAddresses")
        for eip in self.addresses:
            if eip.get("NetworkInterfaceId") == NetworkInterfaceId and eip.get("PrivateIpAddress") in PrivateIpAddresses:
                self._detach(eip)
        nic["PrivateIpAddresses"] = [
            p for p in nic["PrivateIpAddresses"] if p["PrivateIpAddress"] not in PrivateIpAddresses
        ]
        return {}

    def assign_private_ip_addresses(self, NetworkInterfaceId: str, PrivateIpAddresses: list[str],
                                    AllowReassignment: bool = False) -> dict[str, Any]:
        for other in self.nics:
            if other["NetworkInterfaceId"] == NetworkInterfaceId:
                continue
            taken = [a for a in PrivateIpAddresses if a in self.nic_addresses(other["NetworkInterfaceId"])]
            if taken:
                if not AllowReassignment:
                    raise _client_error("PrivateIpAddressLimitExceeded", "AssignPrivateIpAddresses")
                self.unassign_private_ip_addresses(other["NetworkInterfaceId"], taken)
        nic = self.nic(NetworkInterfaceId)
        for address in PrivateIpAddresses:
            if address not in self.nic_addresses(NetworkInterfaceId):
                nic["PrivateIpAddresses"].append({"PrivateIpAddress": address, "Primary": False})
        return {}

    def replace_route(self, RouteTableId: str, NetworkInterfaceId: str,
                      DestinationCidrBlock: Optional[str] = None,
                      DestinationIpv6CidrBlock: Optional[str] = None) -> dict[str, Any]:
        table = next(t for t in self.route_tables if t["RouteTableId"] == RouteTableId)
        for route in table["Routes"]:
            if DestinationCidrBlock and route.get("DestinationCidrBlock") == DestinationCidrBlock:
                break
            if DestinationIpv6CidrBlock and route.get("DestinationIpv6CidrBlock") == DestinationIpv6CidrBlock:
                break
        else:
            raise _client_error("InvalidRoute.NotFound", "ReplaceRoute")
        route.pop("InstanceId", None)
        route["NetworkInterfaceId"] = NetworkInterfaceId
        return {}

    # -- helpers --------------------------------------------------------------

    def _detach(self, eip: dict[str, Any]) -> None:
        nic_id = eip.pop("NetworkInterfaceId", None)
        private_address = eip.pop("PrivateIpAddress", None)
        eip.pop("AssociationId", None)
        eip.pop("InstanceId", None)
        if nic_id:
            for private in self.nic(nic_id)["PrivateIpAddresses"]:
                if private["PrivateIpAddress"] == private_address:
                    private.pop("Association", None)


def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def _nic(nic_id: str, instance: str, nic_map: str, primary: str, *secondary: str) -> dict[str, Any]:
    return {
        "NetworkInterfaceId": nic_id,
        "Attachment": {"InstanceId": instance},
        "TagSet": _tag_list({**LABEL, constants.NIC_TAG: nic_map}),
        "PrivateIpAddresses": [{"PrivateIpAddress": primary, "Primary": True}]
        + [{"PrivateIpAddress": a, "Primary": False} for a in secondary],
    }


@pytest.fixture
def ec2() -> FakeEc2:
    """Peer instance currently holds the external VIP EIP and the internal floating address."""
    fake = FakeEc2()
    fake.nics = [
        _nic("eni-a-ext", THIS_INSTANCE, "external", "10.0.1.10", "10.0.1.101"),
        _nic("eni-b-ext", PEER_INSTANCE, "external", "10.0.1.11", "10.0.1.100"),
        _nic("eni-a-int", THIS_INSTANCE, "internal", "10.0.2.10"),
        _nic("eni-b-int", PEER_INSTANCE, "internal", "10.0.2.11", "10.0.2.50"),
    ]
    fake.addresses = [
        {
            "PublicIp": "203.0.113.50",
            "AllocationId": "eipalloc-50",
            "Tags": _tag_list({**LABEL, "VIPS": "10.0.1.100,10.0.1.101"}),
        },
        {
            "PublicIp": "203.0.113.60",
            "AllocationId": "eipalloc-60",
            "Tags": _tag_list(LABEL),
        },
    ]
    fake.associate_address("eipalloc-50", "eni-b-ext", "10.0.1.100")
    fake.associate_address("eipalloc-60", "eni-b-int", "10.0.2.50")
    fake.route_tables = [
        {
            "RouteTableId": "rtb-1",
            "VpcId": "vpc-1",
            "Tags": _tag_list({**LABEL, constants.ROUTE_NEXT_HOP_ADDRESS_TAG: "10.0.1.10, 10.0.1.11"}),
            "Routes": [
                {"DestinationCidrBlock": "192.0.2.0/24", "NetworkInterfaceId": "eni-b-ext"},
                {"DestinationCidrBlock": "0.0.0.0/0", "GatewayId": "igw-1"},
                {"DestinationIpv6CidrBlock": "2001:db8:1::/64", "NetworkInterfaceId": "eni-b-ext"},
            ],
        },
        {
            "RouteTableId": "rtb-other",
            "VpcId": "vpc-1",
            "Tags": _tag_list({"f5_cloud_failover_label": "someone-else"}),
            "Routes": [{"DestinationCidrBlock": "192.0.2.0/24", "NetworkInterfaceId": "eni-b-ext"}],
        },
    ]
    fake.calls.clear()
    return fake


@pytest.fixture
def make_provider(ec2: FakeEc2):
    def _make(route_ranges: tuple[RouteAddressRange, ...] = ()) -> AwsCloudProvider:
        provider = AwsCloudProvider(session=MagicMock(), region="us-east-1", retry_policy=RetryPolicy(2, 0))
        provider.instance_id = THIS_INSTANCE
        provider.options = ProviderOptions(
            tags=dict(LABEL),
            route_tags=dict(LABEL),
            route_address_ranges=route_ranges,
            storage_tags=dict(LABEL),
        )
        provider._ec2_once = ec2.call
        return provider
    return _make
