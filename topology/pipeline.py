"""Provisioning pipeline.

Runs the stages in their fixed order::

    Network -> Routing -> Security -> Data -> Messaging -> Compute -> LoadBalancing

The ``core`` branch holds every stage up to Messaging. Two independent
branches fork from it: ``serverless`` (the topic consumer) and ``compute``
(instances, scaling, load balancing and DNS). A failure aborts only the
branch owning the failed node and whatever depends on it; nothing is rolled
back and nothing is retried.
"""

from enum import Enum
from typing import Any, Optional, Sequence

from attrs import define, field
from aws_lambda_powertools import Logger

import common.constants as constants
from topology.config import Tier, TopologyConfig, check_zones
from topology.deferred import Deferred, all_of
from topology.errors import InsufficientSubnets, ProvisioningError
from topology.planner import Subnet, effective_zone_count, plan
from topology.resources import (
    NodeStatus,
    Provisioner,
    ProvisioningBackend,
    ResourceNode,
    Stage,
)
from topology.stages import COMPUTE, CORE, SERVERLESS, TopologyBuilder
from topology.zones import resolve_zones

logger = Logger(service=constants.SERVICE_NAME, child=True)


class BranchStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    DISABLED = "disabled"


@define(slots=True)
class BranchOutcome:
    name: str
    status: BranchStatus
    error: Optional[Exception] = None
    nodes: list[str] = field(factory=list)
    waiting_on: list[str] = field(factory=list)

    @property
    def failed_node(self) -> Optional[str]:
        if isinstance(self.error, ProvisioningError):
            return self.error.node
        return None

    @property
    def failed_stage(self) -> Optional[str]:
        if isinstance(self.error, ProvisioningError):
            return self.error.stage
        return None

    def describe(self) -> str:
        if self.status is BranchStatus.FAILED:
            return (
                f"branch '{self.name}' failed at stage {self.failed_stage}, "
                f"node '{self.failed_node}': {self.error}"
            )
        if self.status is BranchStatus.PENDING:
            return f"branch '{self.name}' is still waiting on: {', '.join(self.waiting_on)}"
        return f"branch '{self.name}' {self.status.value}"


@define(slots=True)
class PipelineResult:
    zones: list[str]
    subnets: list[Subnet]
    nodes: dict[str, ResourceNode]
    branches: dict[str, BranchOutcome]
    outputs: dict[str, Any] = field(factory=dict)

    @property
    def failures(self) -> list[BranchOutcome]:
        return [b for b in self.branches.values() if b.status is BranchStatus.FAILED]

    @property
    def ok(self) -> bool:
        return all(
            b.status in (BranchStatus.COMPLETED, BranchStatus.DISABLED)
            for b in self.branches.values()
        )

    def diagnostics(self) -> list[str]:
        return [
            b.describe()
            for b in self.branches.values()
            if b.status in (BranchStatus.FAILED, BranchStatus.PENDING)
        ]


def compute_subnet_ids(
    public_subnets: Sequence[ResourceNode], zone_count: int
) -> list[Deferred[Any]]:
    """Ids of the public subnets the scaling group spans, one per zone.

    Raises:
        InsufficientSubnets: If fewer public subnets than zones exist.
    """
    if len(public_subnets) < zone_count:
        raise InsufficientSubnets(
            f"The compute tier needs {zone_count} public subnets, "
            f"{len(public_subnets)} exist"
        )
    return [node.id for node in public_subnets[:zone_count]]


class Pipeline:
    """Plans the address space and provisions the topology on a backend.

    Args:
        config: The topology configuration.
        backend: Where resources are created.
        zones: Availability zones to use. Defaults to the configured zones,
            or the zones discovered in the configured region.
    """

    def __init__(
        self,
        config: TopologyConfig,
        backend: ProvisioningBackend,
        zones: Optional[Sequence[str]] = None,
    ) -> None:
        self.config = config
        self.backend = backend
        self.zones = zones

    def run(self) -> PipelineResult:
        """Provision every enabled tier and report each branch's outcome.

        Raises:
            ConfigError: If zones cannot be determined or repeat a zone.
            InvalidAddressBlock: If the base block does not parse.
            AddressSpaceExhausted: If the base block is too small.
            InsufficientSubnets: If too few zones or public subnets exist.
        """
        zones = list(
            check_zones(self.zones if self.zones is not None else resolve_zones(self.config))
        )
        zone_count = effective_zone_count(len(zones))
        network_config = self.config.network
        subnets = plan(network_config.cidr_block, zones, network_config.subnet_prefix)
        logger.info(
            "Planned subnets",
            zones=zones[:zone_count],
            subnets={subnet.name: subnet.cidr for subnet in subnets},
        )

        provisioner = Provisioner(self.backend)
        builder = TopologyBuilder(provisioner, self.config)

        logger.info("Entering stage", stage=Stage.NETWORK.label)
        network = builder.build_network(subnets)
        logger.info("Entering stage", stage=Stage.ROUTING.label)
        builder.build_routing(network)
        logger.info("Entering stage", stage=Stage.SECURITY.label)
        security = builder.build_security(network)
        logger.info("Entering stage", stage=Stage.DATA.label)
        data = builder.build_data(network, security)
        logger.info("Entering stage", stage=Stage.MESSAGING.label)
        messaging = builder.build_messaging()

        exports: dict[str, Deferred[Any]] = {
            "vpc_id": network.vpc.id,
            "public_subnet_ids": all_of(*(n.id for n in network.public_subnets)),
            "private_subnet_ids": all_of(*(n.id for n in network.private_subnets)),
        }
        if data.database:
            exports["db_endpoint"] = data.database.attr("endpoint")
        if messaging.topic:
            exports["topic_arn"] = messaging.topic.attr("arn")

        if self.config.enabled(Tier.SERVERLESS):
            logger.info("Forking branch", branch=SERVERLESS)
            function = builder.build_serverless(data, messaging)
            exports["function_arn"] = function.attr("arn")

        if self.config.enabled(Tier.COMPUTE):
            public_subnet_ids = compute_subnet_ids(network.public_subnets, zone_count)
            logger.info("Forking branch", branch=COMPUTE)
            compute = builder.build_compute(
                network, security, data, messaging, public_subnet_ids
            )
            if compute.load_balancer:
                exports["load_balancer_dns_name"] = compute.load_balancer.attr("dns_name")

        self.backend.settle()

        branches = {
            CORE: self._outcome(CORE, provisioner),
            SERVERLESS: self._outcome(
                SERVERLESS, provisioner, enabled=self.config.enabled(Tier.SERVERLESS)
            ),
            COMPUTE: self._outcome(
                COMPUTE, provisioner, enabled=self.config.enabled(Tier.COMPUTE)
            ),
        }
        for outcome in branches.values():
            if outcome.status is BranchStatus.FAILED:
                logger.error(
                    "Branch failed",
                    branch=outcome.name,
                    stage=outcome.failed_stage,
                    node=outcome.failed_node,
                    error=str(outcome.error),
                )
            elif outcome.status is BranchStatus.PENDING:
                logger.warning(
                    "Branch did not complete", branch=outcome.name, waiting_on=outcome.waiting_on
                )
            else:
                logger.info("Branch finished", branch=outcome.name, status=outcome.status.value)

        return PipelineResult(
            zones=zones[:zone_count],
            subnets=subnets,
            nodes=dict(provisioner.nodes),
            branches=branches,
            outputs={
                key: deferred.result()
                for key, deferred in exports.items()
                if deferred.is_resolved
            },
        )

    @staticmethod
    def _outcome(
        branch: str, provisioner: Provisioner, enabled: bool = True
    ) -> BranchOutcome:
        nodes = provisioner.nodes_in(branch)
        names = [node.name for node in nodes]
        if not enabled:
            return BranchOutcome(name=branch, status=BranchStatus.DISABLED, nodes=names)

        done = all_of(*(node.outputs for node in nodes), label=branch)
        if done.is_failed:
            return BranchOutcome(
                name=branch, status=BranchStatus.FAILED, error=done.error, nodes=names
            )
        if done.is_pending:
            waiting = [
                node.name
                for node in nodes
                if node.status in (NodeStatus.ISSUED, NodeStatus.DECLARED)
            ]
            return BranchOutcome(
                name=branch, status=BranchStatus.PENDING, nodes=names, waiting_on=waiting
            )
        return BranchOutcome(name=branch, status=BranchStatus.COMPLETED, nodes=names)
