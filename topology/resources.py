"""Resource nodes and the provisioner that sequences their creation.

A `ResourceNode` is one unit of desired state. Its properties may contain
`Deferred` values anywhere, nested in lists or dicts. `Provisioner.declare`
collects those inputs, combines them with `all_of` and hands the backend's
create-operation to the combined value as its continuation, so a node is never
created before every one of its inputs has resolved.
"""

from enum import Enum, IntEnum
from typing import Any, Iterable, Iterator, Mapping, Optional, Protocol, Union

from attrs import define, field
from attrs.validators import instance_of
from aws_lambda_powertools import Logger

import common.constants as constants
from topology.deferred import Deferred, all_of
from topology.errors import AlreadyResolved, ProvisioningError

logger = Logger(service=constants.SERVICE_NAME, child=True)


class Stage(IntEnum):
    NETWORK = 1
    ROUTING = 2
    SECURITY = 3
    DATA = 4
    MESSAGING = 5
    COMPUTE = 6
    LOAD_BALANCING = 7

    @property
    def label(self) -> str:
        return "".join(part.capitalize() for part in self.name.split("_"))


class Provider(str, Enum):
    AWS = "aws"
    GCP = "gcp"


class ResourceKind(str, Enum):
    VPC = "vpc"
    INTERNET_GATEWAY = "internet_gateway"
    GATEWAY_ATTACHMENT = "gateway_attachment"
    ROUTE_TABLE = "route_table"
    SUBNET = "subnet"
    ROUTE_TABLE_ASSOCIATION = "route_table_association"
    ROUTE = "route"
    SECURITY_GROUP = "security_group"
    SECURITY_GROUP_RULE = "security_group_rule"
    DB_PARAMETER_GROUP = "db_parameter_group"
    DB_SUBNET_GROUP = "db_subnet_group"
    DB_INSTANCE = "db_instance"
    TOPIC = "topic"
    SERVICE_ACCOUNT = "service_account"
    SERVICE_ACCOUNT_KEY = "service_account_key"
    BUCKET_IAM_MEMBER = "bucket_iam_member"
    KEY_VALUE_TABLE = "key_value_table"
    IAM_ROLE = "iam_role"
    IAM_POLICY = "iam_policy"
    ROLE_POLICY_ATTACHMENT = "role_policy_attachment"
    INSTANCE_PROFILE = "instance_profile"
    FUNCTION = "function"
    FUNCTION_PERMISSION = "function_permission"
    TOPIC_SUBSCRIPTION = "topic_subscription"
    LAUNCH_TEMPLATE = "launch_template"
    SCALING_GROUP = "scaling_group"
    SCALING_POLICY = "scaling_policy"
    METRIC_ALARM = "metric_alarm"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    TARGET_GROUP_ATTACHMENT = "target_group_attachment"
    LISTENER = "listener"
    DNS_RECORD = "dns_record"

    @property
    def provider(self) -> Provider:
        if self in _GCP_KINDS:
            return Provider.GCP
        return Provider.AWS


_GCP_KINDS = frozenset(
    {
        ResourceKind.SERVICE_ACCOUNT,
        ResourceKind.SERVICE_ACCOUNT_KEY,
        ResourceKind.BUCKET_IAM_MEMBER,
    }
)


@define(slots=True, frozen=True)
class Outputs(Mapping[str, Any]):
    """Identifying properties a backend returns for a created resource."""

    resource: str = field(validator=instance_of(str))
    attributes: Mapping[str, Any] = field(factory=dict)

    def __getitem__(self, key: str) -> Any:
        try:
            return self.attributes[key]
        except KeyError:
            raise KeyError(f"'{self.resource}' does not export '{key}'") from None

    def __iter__(self) -> Iterator[str]:
        return iter(self.attributes)

    def __len__(self) -> int:
        return len(self.attributes)

    @property
    def id(self) -> Any:
        return self["id"]


class ProvisioningBackend(Protocol):
    """Boundary to a system that actually creates resources."""

    def create(
        self, kind: ResourceKind, name: str, properties: Mapping[str, Any]
    ) -> Union[Outputs, Deferred[Outputs]]: ...

    def lookup_image(self, name_filter: str) -> str: ...

    def settle(self) -> None: ...


class NodeStatus(str, Enum):
    DECLARED = "declared"
    ISSUED = "issued"
    CREATED = "created"
    FAILED = "failed"
    SKIPPED = "skipped"


@define(slots=True, eq=False)
class ResourceNode:
    name: str
    kind: ResourceKind
    stage: Stage
    branch: str
    properties: dict[str, Any] = field(factory=dict)
    inputs: list[Deferred[Any]] = field(factory=list)
    status: NodeStatus = NodeStatus.DECLARED
    outputs: Deferred[Outputs] = field(init=False, default=None)

    @property
    def provider(self) -> Provider:
        return self.kind.provider

    @property
    def id(self) -> Deferred[Any]:
        return self.attr("id")

    def attr(self, attribute: str) -> Deferred[Any]:
        """Deferred of a single exported attribute of this node."""
        return self.outputs.map(
            lambda outputs: outputs[attribute], label=f"{self.name}.{attribute}"
        )


class Provisioner:
    """Declares resource nodes and issues their create-operations in order."""

    def __init__(self, backend: ProvisioningBackend) -> None:
        self.backend = backend
        self.nodes: dict[str, ResourceNode] = {}
        self._branch_stages: dict[str, Stage] = {}

    def declare(
        self,
        kind: ResourceKind,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
        *,
        stage: Stage,
        branch: str,
        depends_on: Iterable[Deferred[Any]] = (),
    ) -> ResourceNode:
        """Declare a node; its create is issued once all inputs resolve.

        Args:
            kind: The kind of resource to create.
            name: Stable, unique name of the node.
            properties: Desired state. May contain deferred values.
            stage: Pipeline stage the node belongs to.
            branch: Branch that owns the node.
            depends_on: Extra deferred values to wait for without using them.

        Raises:
            ValueError: If the name is taken or the stage goes backwards
                within the branch.
        """
        if name in self.nodes:
            raise ValueError(f"Resource node '{name}' is already declared")
        latest = self._branch_stages.get(branch)
        if latest is not None and stage < latest:
            raise ValueError(
                f"Cannot declare '{name}' in stage {stage.label} after "
                f"stage {latest.label} in branch '{branch}'"
            )
        self._branch_stages[branch] = stage

        props = dict(properties or {})
        references = _collect_deferreds(props)
        waits = [d for d in depends_on if all(d is not r for r in references)]
        node = ResourceNode(
            name=name,
            kind=kind,
            stage=stage,
            branch=branch,
            properties=props,
            inputs=references + waits,
        )
        self.nodes[name] = node

        combined = all_of(*node.inputs, label=name)
        node.outputs = combined.bind(
            lambda values: self._issue(node, references, values[: len(references)]),
            label=name,
        )
        node.outputs.add_callbacks(
            lambda _: self._on_created(node), lambda e: self._on_failed(node, e)
        )
        return node

    def nodes_in(self, branch: str) -> list[ResourceNode]:
        return [node for node in self.nodes.values() if node.branch == branch]

    # ---------- create ----------
    def _issue(
        self,
        node: ResourceNode,
        references: list[Deferred[Any]],
        values: tuple,
    ) -> Deferred[Outputs]:
        resolved = {id(ref): value for ref, value in zip(references, values)}
        properties = _substitute(node.properties, resolved)
        node.status = NodeStatus.ISSUED
        logger.info(
            "Creating resource",
            node=node.name,
            kind=node.kind.value,
            stage=node.stage.label,
            branch=node.branch,
        )
        try:
            result = self.backend.create(node.kind, node.name, properties)
        except (AlreadyResolved, ProvisioningError):
            raise
        except Exception as e:
            raise ProvisioningError(node.name, node.stage.label, e) from e

        if not isinstance(result, Deferred):
            result = Deferred.resolved(result, label=node.name)
        return result.map_failure(lambda error: _wrap(node, error))

    def _on_created(self, node: ResourceNode) -> None:
        node.status = NodeStatus.CREATED
        logger.debug("Resource created", node=node.name, stage=node.stage.label)

    def _on_failed(self, node: ResourceNode, error: Exception) -> None:
        if node.status is NodeStatus.ISSUED:
            node.status = NodeStatus.FAILED
            logger.error(
                "Resource creation failed",
                node=node.name,
                stage=node.stage.label,
                branch=node.branch,
                error=str(error),
            )
        else:
            node.status = NodeStatus.SKIPPED
            logger.warning(
                "Skipping resource, an input failed",
                node=node.name,
                stage=node.stage.label,
                branch=node.branch,
            )


def _wrap(node: ResourceNode, error: Exception) -> Exception:
    if isinstance(error, ProvisioningError):
        return error
    return ProvisioningError(node.name, node.stage.label, error)


def _collect_deferreds(value: Any, found: Optional[list] = None) -> list:
    found = [] if found is None else found
    if isinstance(value, Deferred):
        if all(value is not seen for seen in found):
            found.append(value)
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_deferreds(item, found)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_deferreds(item, found)
    return found


def _substitute(value: Any, resolved: Mapping[int, Any]) -> Any:
    if isinstance(value, Deferred):
        return resolved[id(value)]
    if isinstance(value, Mapping):
        return {key: _substitute(item, resolved) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(item, resolved) for item in value]
    if isinstance(value, tuple):
        return tuple(_substitute(item, resolved) for item in value)
    return value
