"""AWS cloud provider: Elastic IPs, secondary private addresses and route tables."""

from __future__ import annotations

import asyncio
import ipaddress
import json
import logging
from dataclasses import replace
from typing import Any, Iterable, Optional

import aiohttp
import aioboto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cloudfailover import constants
from cloudfailover.constants import CloudEnvironment
from cloudfailover.errors import (
    ConfigurationError,
    DiscoveryAmbiguityError,
    TransientCloudError,
)
from cloudfailover.failover.retrier import CLOUD_API_RETRY, RetryPolicy, retry

from ..base import NextHopSpec, ProviderOptions, RouteAddressRange
from .plans import (
    AddressPlan,
    NicAddress,
    NicAddressBatch,
    PublicAddressOperation,
    RouteOperation,
    RoutePlan,
)
from .storage import S3StateStore, _normalize_tags

logger = logging.getLogger("cloudfailover.aws")

IMDS_URL = "http://169.254.169.254"
IMDS_TOKEN_TTL_S = 21600

THROTTLING_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "SlowDown",
    "ServiceUnavailable",
    "InternalError",
})

# Paginated describe calls and the key their items live under
_PAGINATED = {
    "describe_network_interfaces": "NetworkInterfaces",
    "describe_route_tables": "RouteTables",
}

Filter = tuple[str, Optional[str]]


def _build_filters(tags: Optional[dict[str, str]] = None, extra: Iterable[Filter] = ()) -> list[dict[str, Any]]:
    filters = [{"Name": f"tag:{key}", "Values": [value]} for key, value in (tags or {}).items()]
    filters.extend({"Name": name, "Values": [value]} for name, value in extra if value)
    return filters


def _resolve_route_cidr_block(route: dict[str, Any]) -> tuple[Optional[str], str]:
    """Destination CIDR of a route and its IP version ("4" unless the route is IPv6)."""
    if route.get("DestinationIpv6CidrBlock"):
        return route["DestinationIpv6CidrBlock"], "6"
    return route.get("DestinationCidrBlock"), "4"


class AwsCloudProvider:
    """Reference CloudProvider implementation on EC2 + S3."""

    environment = CloudEnvironment.AWS

    def __init__(
        self,
        session: Optional[aioboto3.Session] = None,
        *,
        region: str = "",
        retry_policy: RetryPolicy = CLOUD_API_RETRY,
        metadata_timeout_s: float = 5.0,
    ) -> None:
        self._session = session or aioboto3.Session()
        self._retry = retry_policy
        # Describe calls only retry transient faults, mutations retry everything
        self._read_retry = replace(retry_policy, retry_on=(TransientCloudError,))
        self._metadata_timeout_s = metadata_timeout_s
        self.region = region
        self.instance_id = ""
        self.options = ProviderOptions()
        self.storage: Optional[S3StateStore] = None

    # -- initialisation -------------------------------------------------------

    async def init(self, options: ProviderOptions) -> None:
        self.options = options
        identity = await retry(self._get_instance_identity_doc, policy=self._retry)
        self.region = self.region or identity["region"]
        self.instance_id = identity["instanceId"]

        self.storage = S3StateStore(self._session, self.region, retry_policy=self._retry)
        await self.storage.find_bucket_by_tags(options.storage_tags)
        logger.info("AWS provider ready: instance=%s region=%s bucket=%s",
                    self.instance_id, self.region, self.storage.bucket)

    async def _get_instance_identity_doc(self) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self._metadata_timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as sess:
            async with sess.put(
                f"{IMDS_URL}/latest/api/token",
                headers={"X-aws-ec2-metadata-token-ttl-seconds": str(IMDS_TOKEN_TTL_S)},
            ) as resp:
                resp.raise_for_status()
                token = await resp.text()
            async with sess.get(
                f"{IMDS_URL}/latest/dynamic/instance-identity/document",
                headers={"X-aws-ec2-metadata-token": token},
            ) as resp:
                resp.raise_for_status()
                return json.loads(await resp.text())

    # -- EC2 plumbing ---------------------------------------------------------

    async def _ec2_once(self, operation: str, params: dict[str, Any],
                        ignore_codes: frozenset[str] = frozenset()) -> dict[str, Any]:
        try:
            async with self._session.client("ec2", region_name=self.region) as ec2:
                result_key = _PAGINATED.get(operation)
                if result_key is None:
                    return await getattr(ec2, operation)(**params)
                items: list[dict[str, Any]] = []
                async for page in ec2.get_paginator(operation).paginate(**params):
                    items.extend(page.get(result_key, []))
                return {result_key: items}
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in ignore_codes:
                logger.info("%s: %s already applied", operation, code)
                return {}
            if code in THROTTLING_CODES:
                raise TransientCloudError(f"{operation} throttled: {code}") from exc
            raise
        except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as exc:
            raise TransientCloudError(f"{operation} connection error: {exc}") from exc

    async def _describe(self, operation: str, **params: Any) -> dict[str, Any]:
        return await retry(self._ec2_once, operation, params, policy=self._read_retry)

    async def _mutate(self, operation: str, ignore_codes: frozenset[str] = frozenset(),
                      **params: Any) -> dict[str, Any]:
        return await retry(self._ec2_once, operation, params, ignore_codes, policy=self._retry)

    async def _get_elastic_ips(self, tags: Optional[dict[str, str]] = None,
                               instance_id: Optional[str] = None,
                               public_address: Optional[str] = None) -> list[dict[str, Any]]:
        filters = _build_filters(tags, [("instance-id", instance_id), ("public-ip", public_address)])
        resp = await self._describe("describe_addresses", Filters=filters)
        return resp.get("Addresses", [])

    async def _list_nics(self, tags: Optional[dict[str, str]] = None,
                         extra: Iterable[Filter] = ()) -> list[dict[str, Any]]:
        resp = await self._describe("describe_network_interfaces", Filters=_build_filters(tags, extra))
        return resp.get("NetworkInterfaces", [])

    async def _get_route_tables(self, tags: Optional[dict[str, str]] = None,
                                instance_id: Optional[str] = None) -> list[dict[str, Any]]:
        filters = _build_filters(tags, [("route.instance-id", instance_id)])
        resp = await self._describe("describe_route_tables", Filters=filters)
        return resp.get("RouteTables", [])

    async def _get_private_secondary_ips(self) -> dict[str, str]:
        """Secondary private addresses attached to this instance, mapped to their NIC id."""
        nics = await self._list_nics(extra=[("attachment.instance-id", self.instance_id)])
        secondary: dict[str, str] = {}
        for nic in nics:
            for private in nic.get("PrivateIpAddresses", []):
                if not private.get("Primary"):
                    secondary[private["PrivateIpAddress"]] = nic["NetworkInterfaceId"]
        return secondary

    async def _get_network_interface_id(self, address: str) -> str:
        try:
            version = ipaddress.ip_address(address).version
        except ValueError:
            raise DiscoveryAmbiguityError(f"Invalid next hop address: {address}") from None
        filter_name = "private-ip-address" if version == 4 else "ipv6-addresses.ipv6-address"
        nics = await self._list_nics(tags=self.options.tags, extra=[(filter_name, address)])
        if not nics:
            raise DiscoveryAmbiguityError(f"No network interface found for address {address}")
        return nics[0]["NetworkInterfaceId"]

    # -- address discovery ----------------------------------------------------

    def _generate_public_address_operations(
        self,
        eips: list[dict[str, Any]],
        secondary_ips: dict[str, str],
    ) -> dict[str, PublicAddressOperation]:
        operations: dict[str, PublicAddressOperation] = {}
        for eip in eips:
            tags = _normalize_tags(eip.get("Tags"))
            vips = next((tags[k] for k in constants.AWS_VIPS_TAGS if k in tags), "")
            local_targets = [t for t in (v.strip() for v in vips.split(",")) if t in secondary_ips]
            current = eip.get("PrivateIpAddress")
            # Already on one of this instance's listed addresses
            if not local_targets or current in local_targets:
                continue
            target = local_targets[0]
            logger.debug("Moving public address %s to %s, off of %s", eip["PublicIp"], target, current)
            operations[eip["PublicIp"]] = PublicAddressOperation(
                public_ip=eip["PublicIp"],
                allocation_id=eip.get("AllocationId", ""),
                current_private_address=current,
                association_id=eip.get("AssociationId"),
                target_private_address=target,
                target_nic_id=secondary_ips[target],
            )
        return operations

    @staticmethod
    def _parse_nics(
        nics: list[dict[str, Any]],
        local_addresses: list[str],
        failover_addresses: list[str],
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """Split NICs into ``mine`` (local addresses) and ``theirs`` (failover addresses).

        A NIC carrying both is only ever ``mine``.
        """
        local, failover = set(local_addresses), set(failover_addresses)
        mine: dict[str, dict[str, Any]] = {}
        theirs: dict[str, dict[str, Any]] = {}
        for nic in nics:
            addresses = {p["PrivateIpAddress"] for p in nic.get("PrivateIpAddresses", [])}
            if addresses & local:
                mine.setdefault(nic["NetworkInterfaceId"], nic)
            if addresses & failover:
                theirs.setdefault(nic["NetworkInterfaceId"], nic)
        for nic_id in mine:
            theirs.pop(nic_id, None)
        return list(mine.values()), list(theirs.values())

    def _generate_nic_operations(
        self,
        nics: list[dict[str, Any]],
        local_addresses: list[str],
        failover_addresses: list[str],
    ) -> tuple[list[NicAddressBatch], list[NicAddressBatch]]:
        mine, theirs = self._parse_nics(nics, local_addresses, failover_addresses)
        logger.debug("Parsed NICs: mine=%s theirs=%s",
                     [n["NetworkInterfaceId"] for n in mine], [n["NetworkInterfaceId"] for n in theirs])
        failover = set(failover_addresses)
        disassociate: list[NicAddressBatch] = []
        associate: list[NicAddressBatch] = []

        for their_nic in theirs:
            group = _normalize_tags(their_nic.get("TagSet")).get(constants.NIC_TAG)
            if not group:
                continue
            my_nic = next(
                (n for n in mine if _normalize_tags(n.get("TagSet")).get(constants.NIC_TAG) == group),
                None,
            )
            if my_nic is None:
                continue
            moving = [
                NicAddress(
                    address=p["PrivateIpAddress"],
                    public_address=(p.get("Association") or {}).get("PublicIp"),
                )
                for p in their_nic.get("PrivateIpAddresses", [])
                if not p.get("Primary") and p["PrivateIpAddress"] in failover
            ]
            if not moving:
                continue
            disassociate.append(NicAddressBatch(nic_id=their_nic["NetworkInterfaceId"], addresses=moving))
            associate.append(NicAddressBatch(nic_id=my_nic["NetworkInterfaceId"], addresses=list(moving)))
        return disassociate, associate

    async def discover_addresses(self, local: list[str], failover: list[str]) -> dict[str, Any]:
        eips, secondary_ips, nics = await asyncio.gather(
            self._get_elastic_ips(tags=self.options.tags),
            self._get_private_secondary_ips(),
            self._list_nics(tags=self.options.tags),
        )
        logger.debug("Found Elastic IPs: %s", [e.get("PublicIp") for e in eips])
        logger.debug("Found secondary private IPs: %s", secondary_ips)

        plan = AddressPlan(public_addresses=self._generate_public_address_operations(eips, secondary_ips))
        plan.disassociate, plan.associate = self._generate_nic_operations(nics, local, failover)
        logger.info("Discovered %d public address and %d NIC operations",
                    len(plan.public_addresses), len(plan.associate))
        return plan.to_dict()

    # -- address apply --------------------------------------------------------

    async def _disassociate_public_address(self, association_id: str) -> None:
        logger.debug("Disassociating address using %s", association_id)
        await self._mutate("disassociate_address",
                           ignore_codes=frozenset({"InvalidAssociationID.NotFound"}),
                           AssociationId=association_id)

    async def _associate_public_address(self, allocation_id: str, nic_id: str, private_address: str) -> None:
        logger.debug("Associating %s to %s using %s", private_address, nic_id, allocation_id)
        await self._mutate("associate_address",
                           AllocationId=allocation_id,
                           NetworkInterfaceId=nic_id,
                           PrivateIpAddress=private_address,
                           AllowReassociation=True)

    async def _reassociate_public_addresses(self, operations: dict[str, PublicAddressOperation]) -> None:
        ops = list(operations.values())
        # Free every EIP first, in case it was not created to allow reassociation
        await asyncio.gather(*(
            self._disassociate_public_address(op.association_id) for op in ops if op.association_id
        ))
        to_associate = [op for op in ops if op.allocation_id and op.target_nic_id and op.target_private_address]
        await asyncio.gather(*(
            self._associate_public_address(op.allocation_id, op.target_nic_id, op.target_private_address)
            for op in to_associate
        ))
        if to_associate:
            logger.info("Association of Elastic IP addresses successful")

    async def _reassociate_public_address_to_nic(self, public_address: str, nic_id: str,
                                                 private_address: str) -> None:
        logger.debug("Reassociating %s to %s attached to NIC %s", public_address, private_address, nic_id)
        found = await self._get_elastic_ips(public_address=public_address)
        if not found:
            raise DiscoveryAmbiguityError(f"Elastic IP {public_address} not found")
        eip = found[0]
        if eip.get("NetworkInterfaceId") == nic_id and eip.get("PrivateIpAddress") == private_address:
            return
        if eip.get("AssociationId"):
            await self._disassociate_public_address(eip["AssociationId"])
        await self._associate_public_address(eip["AllocationId"], nic_id, private_address)

    async def _unassign_addresses(self, batch: NicAddressBatch) -> None:
        # A replayed plan may find some addresses already gone from the old NIC
        nics = await self._list_nics(extra=[("network-interface-id", batch.nic_id)])
        present = {p["PrivateIpAddress"] for nic in nics for p in nic.get("PrivateIpAddresses", [])}
        addresses = [a.address for a in batch.addresses if a.address in present]
        if not addresses:
            logger.info("Addresses already removed from %s", batch.nic_id)
            return
        logger.debug("Disassociating %s from %s", addresses, batch.nic_id)
        await self._mutate("unassign_private_ip_addresses",
                           NetworkInterfaceId=batch.nic_id, PrivateIpAddresses=addresses)

    async def _reassociate_nic_addresses(self, disassociate: list[NicAddressBatch],
                                         associate: list[NicAddressBatch]) -> None:
        # Secondary addresses are unique per VPC, so they must leave the old NIC first
        await asyncio.gather(*(
            self._unassign_addresses(batch) for batch in disassociate if batch.addresses
        ))
        await asyncio.gather(*(
            self._mutate("assign_private_ip_addresses",
                         NetworkInterfaceId=batch.nic_id,
                         PrivateIpAddresses=[a.address for a in batch.addresses],
                         AllowReassignment=True)
            for batch in associate if batch.addresses
        ))
        await asyncio.gather(*(
            self._reassociate_public_address_to_nic(a.public_address, batch.nic_id, a.address)
            for batch in associate for a in batch.addresses if a.public_address
        ))

    async def apply_addresses(self, plan: dict[str, Any]) -> None:
        operations = AddressPlan.from_dict(plan)
        if operations.is_empty:
            logger.info("No address operations to perform")
            return
        await self._reassociate_public_addresses(operations.public_addresses)
        await self._reassociate_nic_addresses(operations.disassociate, operations.associate)
        logger.info("Addresses reassociated successfully")

    async def update_addresses(
        self,
        local: Optional[list[str]] = None,
        failover: Optional[list[str]] = None,
        discover_only: bool = False,
        update_operations: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        if discover_only:
            return await self.discover_addresses(local or [], failover or [])
        if update_operations is not None:
            await self.apply_addresses(update_operations)
            return None
        plan = await self.discover_addresses(local or [], failover or [])
        await self.apply_addresses(plan)
        return plan

    # -- routes ---------------------------------------------------------------

    def _match_route_to_address_range(self, cidr: Optional[str]) -> Optional[RouteAddressRange]:
        if not cidr:
            return None
        for address_range in self.options.route_address_ranges:
            if cidr in address_range.route_addresses:
                return address_range
        return None

    @staticmethod
    def _discover_next_hop_address(
        local_addresses: list[str],
        route_table_tags: dict[str, str],
        next_hop: NextHopSpec,
    ) -> Optional[str]:
        if next_hop.type == constants.NEXT_HOP_STATIC:
            candidates = list(next_hop.items)
        elif next_hop.type == constants.NEXT_HOP_ROUTE_TAG:
            value = route_table_tags.get(next_hop.tag, "")
            candidates = [v.strip() for v in value.split(",") if v.strip()]
        else:
            raise ConfigurationError(f"Invalid next hop discovery type: {next_hop.type}")

        matches = [address for address in local_addresses if address in candidates]
        if not matches:
            logger.warning("No local next hop address found in %s", candidates)
            return None
        if len(matches) > 1:
            logger.warning("Multiple next hop addresses found %s, using %s", matches, matches[0])
        return matches[0]

    async def discover_routes(self, local: list[str]) -> dict[str, Any]:
        tables = await self._get_route_tables(tags=self.options.route_tags)

        pending: list[tuple[str, dict[str, Any], str, str, str]] = []
        for table in tables:
            table_tags = _normalize_tags(table.get("Tags"))
            for route in table.get("Routes", []):
                cidr, ip_version = _resolve_route_cidr_block(route)
                matched = self._match_route_to_address_range(cidr)
                if matched is None:
                    continue
                next_hop = self._discover_next_hop_address(local, table_tags, matched.next_hop)
                if next_hop is None:
                    continue
                pending.append((table["RouteTableId"], route, cidr, ip_version, next_hop))

        next_hops = list(dict.fromkeys(item[4] for item in pending))
        nic_ids = dict(zip(next_hops, await asyncio.gather(
            *(self._get_network_interface_id(address) for address in next_hops)
        )))

        plan = RoutePlan()
        for table_id, route, cidr, ip_version, next_hop in pending:
            nic_id = nic_ids[next_hop]
            if route.get("NetworkInterfaceId") == nic_id:
                logger.debug("Route %s in %s already targets %s", cidr, table_id, nic_id)
                continue
            plan.operations.append(RouteOperation(
                route_table_id=table_id, cidr=cidr, ip_version=ip_version, target_nic_id=nic_id,
            ))
        logger.info("Discovered %d route operations", len(plan.operations))
        return plan.to_dict()

    async def _replace_route(self, operation: RouteOperation) -> None:
        logger.debug("Updating route %s in %s to %s",
                     operation.cidr, operation.route_table_id, operation.target_nic_id)
        destination = "DestinationIpv6CidrBlock" if operation.ip_version == "6" else "DestinationCidrBlock"
        await self._mutate("replace_route", **{
            destination: operation.cidr,
            "NetworkInterfaceId": operation.target_nic_id,
            "RouteTableId": operation.route_table_id,
        })

    async def apply_routes(self, plan: dict[str, Any]) -> None:
        operations = RoutePlan.from_dict(plan)
        if operations.is_empty:
            logger.info("No route operations to run")
            return
        await asyncio.gather(*(self._replace_route(op) for op in operations.operations))
        logger.info("Route(s) updated successfully")

    async def update_routes(
        self,
        local: Optional[list[str]] = None,
        discover_only: bool = False,
        update_operations: Optional[dict[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        if discover_only:
            return await self.discover_routes(local or [])
        if update_operations is not None:
            await self.apply_routes(update_operations)
            return None
        plan = await self.discover_routes(local or [])
        await self.apply_routes(plan)
        return plan

    # -- state and inspection -------------------------------------------------

    def _storage(self) -> S3StateStore:
        if self.storage is None:
            raise ConfigurationError("Cloud provider has not been initialised")
        return self.storage

    async def upload_state(self, key: str, data: dict[str, Any]) -> None:
        await self._storage().upload_json(key, data)

    async def download_state(self, key: str) -> dict[str, Any]:
        return await self._storage().download_json(key)

    async def inspect(self) -> dict[str, Any]:
        eips, tables = await asyncio.gather(
            self._get_elastic_ips(instance_id=self.instance_id),
            self._get_route_tables(instance_id=self.instance_id),
        )
        return {
            "instance": self.instance_id,
            "addresses": [
                {
                    "publicIpAddress": eip.get("PublicIp"),
                    "privateIpAddress": eip.get("PrivateIpAddress"),
                    "networkInterfaceId": eip.get("NetworkInterfaceId"),
                }
                for eip in eips
            ],
            "routes": [
                {
                    "routeTableId": table.get("RouteTableId"),
                    "routeTableName": None,
                    "networkId": table.get("VpcId"),
                }
                for table in tables
            ],
        }
