"""Address planning for the topology's subnets.

Carves a single base address block into non-overlapping subnets across at
most three availability zones. Every zone receives one public and one private
subnet. Slots are numbered by a single counter shared by both visibilities,
starting at 1, and slot ``n`` is the ``n``-th (0-based) sub-block of the
requested prefix length. The first sub-block of the base is therefore never
allocated.

Example:
    >>> subnets = plan("10.0.0.0/16", ["us-east-1a", "us-east-1b"], 20)
    >>> [(s.name, str(s.block)) for s in subnets]  # doctest: +NORMALIZE_WHITESPACE
    [('publicSubnet-us-east-1a', '10.0.16.0/20'),
     ('privateSubnet-us-east-1a', '10.0.32.0/20'),
     ('publicSubnet-us-east-1b', '10.0.48.0/20'),
     ('privateSubnet-us-east-1b', '10.0.64.0/20')]
"""

import ipaddress
from enum import Enum
from typing import Sequence, Union

from attrs import define, field
from attrs.validators import ge, instance_of

import common.constants as constants
from topology.errors import (
    AddressSpaceExhausted,
    InsufficientSubnets,
    InvalidAddressBlock,
)

AddressBlock = ipaddress.IPv4Network


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


@define(slots=True, frozen=True)
class ZoneSlot:
    zone: str = field(validator=instance_of(str))
    index: int = field(validator=[instance_of(int), ge(1)])
    visibility: Visibility = field(validator=instance_of(Visibility))


@define(slots=True, frozen=True)
class Subnet:
    block: AddressBlock = field(validator=instance_of(AddressBlock))
    slot: ZoneSlot = field(validator=instance_of(ZoneSlot))

    @property
    def name(self) -> str:
        return f"{self.slot.visibility.value}Subnet-{self.slot.zone}"

    @property
    def zone(self) -> str:
        return self.slot.zone

    @property
    def is_public(self) -> bool:
        return self.slot.visibility is Visibility.PUBLIC

    @property
    def cidr(self) -> str:
        return str(self.block)


def parse_address_block(text: Union[str, AddressBlock]) -> AddressBlock:
    """Parse a CIDR string such as ``10.0.0.0/16``.

    Host bits must be zero and the prefix length must be explicit.

    Raises:
        InvalidAddressBlock: If the text is not a valid IPv4 network.
    """
    if isinstance(text, AddressBlock):
        return text
    if not isinstance(text, str) or "/" not in text:
        raise InvalidAddressBlock(f"Invalid address block: {text!r}")
    try:
        return ipaddress.IPv4Network(text, strict=True)
    except ValueError as e:
        raise InvalidAddressBlock(f"Invalid address block: {text!r}") from e


def effective_zone_count(zone_count: int) -> int:
    """Number of zones the topology spans: at most three, at least one."""
    if zone_count < 1:
        raise InsufficientSubnets("At least one availability zone is required")
    return min(zone_count, constants.MAX_ZONES)


def nth_subnet(base: AddressBlock, prefix_length: int, n: int) -> AddressBlock:
    """Return the ``n``-th (0-based) sub-block of ``base`` with ``prefix_length``."""
    if prefix_length < base.prefixlen or prefix_length > base.max_prefixlen:
        raise InvalidAddressBlock(
            f"Subnet prefix /{prefix_length} does not fit inside {base}"
        )
    available = 2 ** (prefix_length - base.prefixlen)
    if n < 0 or n >= available:
        raise AddressSpaceExhausted(
            f"{base} holds {available} /{prefix_length} sub-blocks, "
            f"sub-block {n} requested"
        )
    size = 2 ** (base.max_prefixlen - prefix_length)
    address = int(base.network_address) + n * size
    return ipaddress.IPv4Network((address, prefix_length))


def plan(
    base: Union[str, AddressBlock],
    zones: Union[int, Sequence[str]],
    subnet_prefix: int = constants.DEFAULT_SUBNET_PREFIX,
) -> list[Subnet]:
    """Plan public and private subnets for up to three zones.

    Args:
        base: The address block to partition, as a network or CIDR string.
        zones: Zone identifiers in the order they should be visited, or a
            zone count, in which case the zones are named ``zone1..zoneN``.
        subnet_prefix: Prefix length of every planned subnet.

    Returns:
        ``2 * min(len(zones), 3)`` subnets ordered public, private per zone.

    Raises:
        InvalidAddressBlock: If ``base`` or ``subnet_prefix`` is invalid.
        AddressSpaceExhausted: If the base block is too small.
        InsufficientSubnets: If no zones are given.
    """
    block = parse_address_block(base)
    if isinstance(zones, int):
        zone_names = [f"zone{i}" for i in range(1, zones + 1)]
    else:
        zone_names = list(zones)
    count = effective_zone_count(len(zone_names))

    if isinstance(subnet_prefix, bool) or not isinstance(subnet_prefix, int):
        raise InvalidAddressBlock(f"Invalid subnet prefix: {subnet_prefix!r}")
    if subnet_prefix < block.prefixlen or subnet_prefix > block.max_prefixlen:
        raise InvalidAddressBlock(
            f"Subnet prefix /{subnet_prefix} does not fit inside {block}"
        )
    available = 2 ** (subnet_prefix - block.prefixlen)
    if 2 * count >= available:
        raise AddressSpaceExhausted(
            f"{block} cannot hold {2 * count} /{subnet_prefix} subnets "
            f"starting at slot 1 ({available} sub-blocks available)"
        )

    subnets: list[Subnet] = []
    slot_index = 1
    for zone in zone_names[:count]:
        for visibility in (Visibility.PUBLIC, Visibility.PRIVATE):
            subnets.append(
                Subnet(
                    block=nth_subnet(block, subnet_prefix, slot_index),
                    slot=ZoneSlot(zone=zone, index=slot_index, visibility=visibility),
                )
            )
            slot_index += 1
    return subnets
