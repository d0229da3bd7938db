import ipaddress
from dataclasses import dataclass
from itertools import combinations

import pytest

from topology.errors import AddressSpaceExhausted, InsufficientSubnets, InvalidAddressBlock
from topology.planner import (
    Visibility,
    effective_zone_count,
    nth_subnet,
    parse_address_block,
    plan,
)

ZONES = ["zoneA", "zoneB", "zoneC", "zoneD", "zoneE"]


@dataclass(frozen=True)
class PlanTestCase:
    id: str
    base: str
    zones: int
    prefix: int


PLAN_CASES = (
    PlanTestCase(id="one-zone-16-20", base="10.0.0.0/16", zones=1, prefix=20),
    PlanTestCase(id="two-zones-16-20", base="10.0.0.0/16", zones=2, prefix=20),
    PlanTestCase(id="three-zones-16-24", base="10.0.0.0/16", zones=3, prefix=24),
    PlanTestCase(id="five-zones-8-16", base="10.0.0.0/8", zones=5, prefix=16),
    PlanTestCase(id="three-zones-24-27", base="192.168.1.0/24", zones=3, prefix=27),
)


# ------------------- Scenario A / B -------------------
def test_two_zones_yield_four_ordered_subnets():
    subnets = plan("10.0.0.0/16", ZONES[:2], 20)

    assert [s.name for s in subnets] == [
        "publicSubnet-zoneA",
        "privateSubnet-zoneA",
        "publicSubnet-zoneB",
        "privateSubnet-zoneB",
    ]
    assert [s.slot.index for s in subnets] == [1, 2, 3, 4]
    assert [s.cidr for s in subnets] == [
        "10.0.16.0/20",
        "10.0.32.0/20",
        "10.0.48.0/20",
        "10.0.64.0/20",
    ]


def test_more_than_three_zones_saturates_at_three():
    assert plan("10.0.0.0/16", ZONES, 20) == plan("10.0.0.0/16", ZONES[:3], 20)
    assert len(plan("10.0.0.0/16", 5, 20)) == 6
    assert plan("10.0.0.0/16", 5, 20) == plan("10.0.0.0/16", 3, 20)


def test_zone_count_names_zones_in_order():
    subnets = plan("10.0.0.0/16", 2, 20)
    assert [s.zone for s in subnets] == ["zone1", "zone1", "zone2", "zone2"]


# ------------------- Properties -------------------
@pytest.mark.parametrize("case", PLAN_CASES, ids=lambda test: test.id)
def test_plan_properties(case: PlanTestCase):
    base = ipaddress.IPv4Network(case.base)
    subnets = plan(case.base, ZONES[: case.zones], case.prefix)
    expected_zones = ZONES[: min(case.zones, 3)]

    assert len(subnets) == 2 * min(case.zones, 3)
    for subnet in subnets:
        assert subnet.block.subnet_of(base)
        assert subnet.block.prefixlen == case.prefix
    for first, second in combinations(subnets, 2):
        assert not first.block.overlaps(second.block)
    assert [s.zone for s in subnets[::2]] == expected_zones
    assert [s.zone for s in subnets[1::2]] == expected_zones
    assert all(s.slot.visibility is Visibility.PUBLIC for s in subnets[::2])
    assert all(s.slot.visibility is Visibility.PRIVATE for s in subnets[1::2])


def test_first_sub_block_is_never_allocated():
    subnets = plan("10.0.0.0/16", ZONES[:3], 20)
    first = ipaddress.IPv4Network("10.0.0.0/20")
    assert all(not s.block.overlaps(first) for s in subnets)


def test_nth_subnet_is_zero_based():
    base = parse_address_block("10.0.0.0/16")
    assert str(nth_subnet(base, 20, 0)) == "10.0.0.0/20"
    assert str(nth_subnet(base, 20, 15)) == "10.0.240.0/20"
    with pytest.raises(AddressSpaceExhausted):
        nth_subnet(base, 20, 16)


@pytest.mark.parametrize("zones,expected", [(1, 1), (2, 2), (3, 3), (4, 3), (9, 3)])
def test_effective_zone_count(zones: int, expected: int):
    assert effective_zone_count(zones) == expected


# ------------------- Errors -------------------
@pytest.mark.parametrize(
    "text", ["10.0.0.0", "10.0.0.1/16", "300.0.0.0/8", "not-a-block", "10.0.0.0/33", ""]
)
def test_invalid_address_block(text: str):
    with pytest.raises(InvalidAddressBlock):
        parse_address_block(text)


@pytest.mark.parametrize("prefix", [8, 33])
def test_prefix_outside_base_is_invalid(prefix: int):
    with pytest.raises(InvalidAddressBlock):
        plan("10.0.0.0/16", 2, prefix)


def test_base_too_small_is_exhausted():
    # A /16 holds four /18 blocks; slot 0 is skipped, so six subnets cannot fit.
    with pytest.raises(AddressSpaceExhausted):
        plan("10.0.0.0/16", 3, 18)


def test_exact_fit_after_skipped_slot():
    # Eight /19 blocks: slots 1..6 fit.
    subnets = plan("10.0.0.0/16", 3, 19)
    assert subnets[-1].cidr == "10.0.192.0/19"


def test_no_zones_is_insufficient():
    with pytest.raises(InsufficientSubnets):
        plan("10.0.0.0/16", [], 20)
    with pytest.raises(InsufficientSubnets):
        effective_zone_count(0)
