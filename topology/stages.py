"""Stage builders: the resource nodes of each tier of the topology.

Each ``build_*`` method declares the nodes of one stage (or one branch) on the
provisioner and returns handles to the nodes later stages reference. Nodes in
the serverless and compute branches are gated on `all_of` combinations of the
deferred values they need, so their creates are issued only once those
values exist.
"""

from typing import Any, Optional

from attrs import define, field

import common.constants as constants
from topology.bootstrap import render_user_data
from topology.config import Tier, TopologyConfig
from topology.deferred import Deferred, all_of
from topology.errors import AlreadyResolved, ProvisioningError
from topology.planner import Subnet
from topology.resources import (
    Provisioner,
    ResourceKind,
    ResourceNode,
    Stage,
)

CORE = "core"
SERVERLESS = "serverless"
COMPUTE = "compute"


# ------------------- Stage handles -------------------
@define(slots=True)
class NetworkHandles:
    vpc: ResourceNode
    internet_gateway: ResourceNode
    subnets: list[tuple[Subnet, ResourceNode]] = field(factory=list)

    @property
    def public_subnets(self) -> list[ResourceNode]:
        return [node for subnet, node in self.subnets if subnet.is_public]

    @property
    def private_subnets(self) -> list[ResourceNode]:
        return [node for subnet, node in self.subnets if not subnet.is_public]


@define(slots=True)
class SecurityHandles:
    load_balancer: ResourceNode
    application: ResourceNode
    database: Optional[ResourceNode] = None


@define(slots=True)
class DataHandles:
    database: Optional[ResourceNode] = None
    key_value_table: Optional[ResourceNode] = None


@define(slots=True)
class MessagingHandles:
    topic: Optional[ResourceNode] = None
    service_account: Optional[ResourceNode] = None
    service_account_key: Optional[ResourceNode] = None


@define(slots=True)
class ComputeHandles:
    launch_template: ResourceNode
    scaling_group: ResourceNode
    load_balancer: Optional[ResourceNode] = None
    dns_record: Optional[ResourceNode] = None


def trust_policy(service: str) -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Principal": {"Service": service},
                "Effect": "Allow",
                "Sid": "",
            }
        ],
    }


def _tcp(from_port: int, to_port: int, **peer: Any) -> dict[str, Any]:
    return {"protocol": "tcp", "from_port": from_port, "to_port": to_port, **peer}


class TopologyBuilder:
    """Declares the topology's nodes, one stage at a time."""

    def __init__(self, provisioner: Provisioner, config: TopologyConfig) -> None:
        self.provisioner = provisioner
        self.config = config
        self.naming = config.naming

    def _declare(
        self,
        kind: ResourceKind,
        name: str,
        properties: Optional[dict[str, Any]] = None,
        *,
        stage: Stage,
        branch: str = CORE,
        depends_on: tuple = (),
    ) -> ResourceNode:
        return self.provisioner.declare(
            kind,
            name,
            properties,
            stage=stage,
            branch=branch,
            depends_on=depends_on,
        )

    # ---------- network ----------
    def build_network(self, subnets: list[Subnet]) -> NetworkHandles:
        network = self.config.network
        vpc = self._declare(
            ResourceKind.VPC,
            network.vpc_name,
            {"cidr_block": network.cidr_block, "tags": self.naming.tags(network.vpc_name)},
            stage=Stage.NETWORK,
        )
        internet_gateway = self._declare(
            ResourceKind.INTERNET_GATEWAY,
            network.internet_gateway_name,
            {"tags": self.naming.tags(network.internet_gateway_name)},
            stage=Stage.NETWORK,
        )
        self._declare(
            ResourceKind.GATEWAY_ATTACHMENT,
            network.internet_gateway_attachment_name,
            {"vpc_id": vpc.id, "internet_gateway_id": internet_gateway.id},
            stage=Stage.NETWORK,
        )
        handles = NetworkHandles(vpc=vpc, internet_gateway=internet_gateway)
        for subnet in subnets:
            node = self._declare(
                ResourceKind.SUBNET,
                subnet.name,
                {
                    "vpc_id": vpc.id,
                    "cidr_block": subnet.cidr,
                    "availability_zone": subnet.zone,
                    "visibility": subnet.slot.visibility.value,
                    "tags": self.naming.tags(subnet.name),
                },
                stage=Stage.NETWORK,
            )
            handles.subnets.append((subnet, node))
        return handles

    # ---------- routing ----------
    def build_routing(self, network: NetworkHandles) -> None:
        config = self.config.network
        public_table = self._declare(
            ResourceKind.ROUTE_TABLE,
            config.public_route_table_name,
            {"vpc_id": network.vpc.id, "tags": self.naming.tags("Public Route Table")},
            stage=Stage.ROUTING,
        )
        private_table = self._declare(
            ResourceKind.ROUTE_TABLE,
            config.private_route_table_name,
            {"vpc_id": network.vpc.id, "tags": self.naming.tags("Private Route Table")},
            stage=Stage.ROUTING,
        )
        zones = list(dict.fromkeys(subnet.zone for subnet, _ in network.subnets))
        for subnet, node in network.subnets:
            table = public_table if subnet.is_public else private_table
            position = zones.index(subnet.zone) + 1
            self._declare(
                ResourceKind.ROUTE_TABLE_ASSOCIATION,
                f"{subnet.slot.visibility.value}Subnet{position}-RouteTableAssociation",
                {"subnet_id": node.id, "route_table_id": table.id},
                stage=Stage.ROUTING,
            )
        self._declare(
            ResourceKind.ROUTE,
            config.public_route_name,
            {
                "route_table_id": public_table.id,
                "destination_cidr_block": constants.ANY_IPV4_CIDR,
                "gateway_id": network.internet_gateway.id,
            },
            stage=Stage.ROUTING,
        )

    # ---------- security ----------
    def build_security(self, network: NetworkHandles) -> SecurityHandles:
        anywhere = {"cidr_blocks": [constants.ANY_IPV4_CIDR]}
        lb_group = self._declare(
            ResourceKind.SECURITY_GROUP,
            "lbSecurityGroup",
            {
                "vpc_id": network.vpc.id,
                "description": "Load balancer security group",
                "ingress": [
                    _tcp(constants.HTTP_PORT, constants.HTTP_PORT, **anywhere),
                    _tcp(constants.HTTPS_PORT, constants.HTTPS_PORT, **anywhere),
                ],
                "tags": self.naming.tags("lbSecurityGroup"),
            },
            stage=Stage.SECURITY,
        )
        self._rule(
            "lbEgressRule",
            "egress",
            lb_group,
            _tcp(constants.ALL_TCP_FROM, constants.ALL_TCP_TO, **anywhere),
        )

        app_group = self._declare(
            ResourceKind.SECURITY_GROUP,
            "appSecurityGroup",
            {
                "vpc_id": network.vpc.id,
                "description": "Allow TLS inbound traffic",
                "ingress": [],
                "tags": self.naming.tags("appSecurityGroup"),
            },
            stage=Stage.SECURITY,
        )
        for port in (self.config.compute.app_port, constants.SSH_PORT):
            self._rule(
                f"appIngressRule-{port}",
                "ingress",
                app_group,
                _tcp(port, port, source_security_group_id=lb_group.id),
            )
        self._rule(
            "appEgressRule",
            "egress",
            app_group,
            _tcp(constants.ALL_TCP_FROM, constants.ALL_TCP_TO, **anywhere),
        )
        handles = SecurityHandles(load_balancer=lb_group, application=app_group)

        if self.config.enabled(Tier.DATABASE):
            db_port = self.config.database.port
            db_group = self._declare(
                ResourceKind.SECURITY_GROUP,
                "dbSecurityGroup",
                {
                    "vpc_id": network.vpc.id,
                    "description": "DB Security Group",
                    "ingress": [],
                    "tags": self.naming.tags("dbSecurityGroup"),
                },
                stage=Stage.SECURITY,
            )
            self._rule(
                "dbIngressRule",
                "ingress",
                db_group,
                _tcp(db_port, db_port, source_security_group_id=app_group.id),
            )
            self._rule(
                "dbEgressRule",
                "egress",
                db_group,
                _tcp(
                    constants.ALL_TCP_FROM,
                    constants.ALL_TCP_TO,
                    destination_security_group_id=app_group.id,
                ),
            )
            handles.database = db_group
        return handles

    def _rule(
        self, name: str, direction: str, group: ResourceNode, rule: dict[str, Any]
    ) -> ResourceNode:
        return self._declare(
            ResourceKind.SECURITY_GROUP_RULE,
            name,
            {"type": direction, "security_group_id": group.id, **rule},
            stage=Stage.SECURITY,
        )

    # ---------- data ----------
    def build_data(
        self, network: NetworkHandles, security: SecurityHandles
    ) -> DataHandles:
        handles = DataHandles()
        if self.config.enabled(Tier.DATABASE):
            database = self.config.database
            parameter_group = self._declare(
                ResourceKind.DB_PARAMETER_GROUP,
                "dbParameterGroup",
                {
                    "family": database.parameter_family,
                    "description": f"{database.engine} parameters",
                },
                stage=Stage.DATA,
            )
            subnet_group = self._declare(
                ResourceKind.DB_SUBNET_GROUP,
                "dbSubnetGroup",
                {
                    "description": "Private subnets of the database",
                    "subnet_ids": [node.id for node in network.private_subnets],
                    "tags": self.naming.tags("dbSubnetGroup"),
                },
                stage=Stage.DATA,
            )
            handles.database = self._declare(
                ResourceKind.DB_INSTANCE,
                "rdsInstance",
                {
                    "identifier": database.identifier,
                    "db_name": database.name,
                    "engine": database.engine,
                    "engine_version": database.engine_version,
                    "instance_class": database.instance_class,
                    "allocated_storage": database.allocated_storage,
                    "username": database.username,
                    "password": database.password,
                    "port": database.port,
                    "parameter_group_name": parameter_group.attr("name"),
                    "subnet_group_name": subnet_group.attr("name"),
                    "security_group_ids": [security.database.id],
                    "multi_az": False,
                    "publicly_accessible": False,
                    "skip_final_snapshot": True,
                },
                stage=Stage.DATA,
            )

        if self.config.enabled(Tier.SERVERLESS):
            capacity = constants.KEY_VALUE_CAPACITY
            attributes = constants.KEY_VALUE_ATTRIBUTES
            handles.key_value_table = self._declare(
                ResourceKind.KEY_VALUE_TABLE,
                "keyValueTable",
                {
                    "table_name": self.naming.build_resource_name("table"),
                    "hash_key": attributes[0],
                    "attributes": [{"name": name, "type": "S"} for name in attributes],
                    "read_capacity": capacity,
                    "write_capacity": capacity,
                    "global_secondary_indexes": [
                        {
                            "name": name,
                            "hash_key": name,
                            "projection_type": "ALL",
                            "read_capacity": capacity,
                            "write_capacity": capacity,
                        }
                        for name in attributes[1:]
                    ],
                },
                stage=Stage.DATA,
            )
        return handles

    # ---------- messaging ----------
    def build_messaging(self) -> MessagingHandles:
        handles = MessagingHandles()
        if self.config.enabled(Tier.MESSAGING):
            handles.topic = self._declare(
                ResourceKind.TOPIC,
                "notificationTopic",
                {"tags": self.naming.tags("notificationTopic")},
                stage=Stage.MESSAGING,
            )

        if self.config.enabled(Tier.SERVERLESS):
            serverless = self.config.serverless
            account = self._declare(
                ResourceKind.SERVICE_ACCOUNT,
                "serviceAccount",
                {
                    "account_id": serverless.service_account_id,
                    "display_name": "Service Account",
                    "email": serverless.service_account_email,
                },
                stage=Stage.MESSAGING,
            )
            handles.service_account = account
            handles.service_account_key = self._declare(
                ResourceKind.SERVICE_ACCOUNT_KEY,
                "serviceAccountKey",
                {
                    "service_account_id": account.attr("name"),
                    "public_key_type": constants.SERVICE_ACCOUNT_KEY_TYPE,
                },
                stage=Stage.MESSAGING,
            )
            self._declare(
                ResourceKind.BUCKET_IAM_MEMBER,
                "bucketMember",
                {
                    "bucket": serverless.gcp_bucket_name,
                    "role": constants.BUCKET_ROLE,
                    "member": f"serviceAccount:{serverless.service_account_email}",
                },
                stage=Stage.MESSAGING,
                depends_on=(account.outputs,),
            )
        return handles

    # ---------- serverless branch ----------
    def build_serverless(
        self, data: DataHandles, messaging: MessagingHandles
    ) -> ResourceNode:
        """Consumer function subscribed to the topic.

        Waits for the key material, topic identifier and table name; does not
        depend on the database.
        """
        serverless = self.config.serverless
        private_key = messaging.service_account_key.attr("private_key")
        topic_arn = messaging.topic.attr("arn")
        table_name = data.key_value_table.attr("name")
        ready = all_of(private_key, topic_arn, table_name, label="serverless-inputs")

        role = self._declare(
            ResourceKind.IAM_ROLE,
            "consumerRole",
            {"assume_role_policy": trust_policy("lambda.amazonaws.com")},
            stage=Stage.MESSAGING,
            branch=SERVERLESS,
            depends_on=(ready,),
        )
        attachments = self._attach_policies(
            role,
            SERVERLESS,
            Stage.MESSAGING,
            {
                "LambdaFullAccess": constants.POLICY_LAMBDA_FULL_ACCESS,
                "LambdaBasicExecution": constants.POLICY_LAMBDA_BASIC_EXECUTION,
                "DynamoDBAccess": constants.POLICY_DYNAMODB_FULL_ACCESS,
            },
        )
        function = self._declare(
            ResourceKind.FUNCTION,
            "consumerFunction",
            {
                "function_name": self.naming.build_resource_name(
                    "function", action="consumer"
                ),
                "role_arn": role.attr("arn"),
                "runtime": serverless.runtime,
                "handler": serverless.handler,
                "timeout": serverless.timeout,
                "code_bucket": serverless.code_bucket,
                "code_key": serverless.code_key,
                "environment": {
                    "GCPKEY": private_key,
                    "GCBUCKET": serverless.gcp_bucket_name,
                    "DYNAMOTB": table_name,
                    "MANDRILLKEY": serverless.mandrill_key or "",
                },
            },
            stage=Stage.MESSAGING,
            branch=SERVERLESS,
            depends_on=tuple(node.outputs for node in attachments),
        )
        self._declare(
            ResourceKind.FUNCTION_PERMISSION,
            "consumerPermission",
            {
                "action": "lambda:InvokeFunction",
                "function_name": function.attr("name"),
                "principal": "sns.amazonaws.com",
                "source_arn": topic_arn,
            },
            stage=Stage.MESSAGING,
            branch=SERVERLESS,
        )
        self._declare(
            ResourceKind.TOPIC_SUBSCRIPTION,
            "consumerSubscription",
            {
                "endpoint": function.attr("arn"),
                "protocol": "lambda",
                "topic_arn": topic_arn,
            },
            stage=Stage.MESSAGING,
            branch=SERVERLESS,
        )
        return function

    # ---------- compute branch ----------
    def build_compute(
        self,
        network: NetworkHandles,
        security: SecurityHandles,
        data: DataHandles,
        messaging: MessagingHandles,
        public_subnet_ids: list[Deferred[Any]],
    ) -> ComputeHandles:
        """Instances, scaling and, when enabled, load balancing and DNS.

        The launch template's user data embeds the database endpoint and the
        topic identifier, so nothing in this branch is created before both
        have resolved.
        """
        compute = self.config.compute
        endpoint = data.database.attr("endpoint")
        topic_arn = messaging.topic.attr("arn")
        ready = all_of(endpoint, topic_arn, label="compute-inputs")
        user_data = ready.map(
            lambda values: render_user_data(values[0], values[1], self.config.database)
        )

        role = self._declare(
            ResourceKind.IAM_ROLE,
            "instanceRole",
            {"assume_role_policy": trust_policy("ec2.amazonaws.com")},
            stage=Stage.COMPUTE,
            branch=COMPUTE,
            depends_on=(ready,),
        )
        attachments = self._attach_policies(
            role,
            COMPUTE,
            Stage.COMPUTE,
            {
                "CloudWatchAgent": constants.POLICY_CLOUDWATCH_AGENT,
                "LambdaFullAccess": constants.POLICY_LAMBDA_FULL_ACCESS,
                "LambdaBasicExecution": constants.POLICY_LAMBDA_BASIC_EXECUTION,
            },
        )
        publish_policy = self._declare(
            ResourceKind.IAM_POLICY,
            "topicPublishPolicy",
            {
                "policy": {
                    "Version": "2012-10-17",
                    "Statement": [
                        {"Effect": "Allow", "Action": "sns:Publish", "Resource": "*"}
                    ],
                },
            },
            stage=Stage.COMPUTE,
            branch=COMPUTE,
        )
        attachments += self._attach_policies(
            role, COMPUTE, Stage.COMPUTE, {"TopicPublish": publish_policy.attr("arn")}
        )
        profile = self._declare(
            ResourceKind.INSTANCE_PROFILE,
            "instanceProfile",
            {"role": role.attr("name")},
            stage=Stage.COMPUTE,
            branch=COMPUTE,
        )
        image_id = ready.bind(lambda _: self._lookup_image(), label="image")

        launch_template = self._declare(
            ResourceKind.LAUNCH_TEMPLATE,
            "launchTemplate",
            {
                "name": self.naming.build_resource_name("launch-template"),
                "image_id": image_id,
                "instance_type": compute.instance_type,
                "user_data": user_data,
                "key_name": self.config.network.ssh_key_name,
                "associate_public_ip_address": True,
                "security_group_ids": [security.application.id],
                "instance_profile_name": profile.attr("name"),
            },
            stage=Stage.COMPUTE,
            branch=COMPUTE,
            depends_on=tuple(node.outputs for node in attachments),
        )
        scaling_group = self._declare(
            ResourceKind.SCALING_GROUP,
            "scalingGroup",
            {
                "name": self.naming.build_resource_name("asg"),
                "launch_template_id": launch_template.id,
                "launch_template_version": launch_template.attr("latest_version"),
                "min_size": compute.min_size,
                "max_size": compute.max_size,
                "desired_capacity": compute.desired_capacity,
                "cooldown": constants.SCALING_COOLDOWN,
                "health_check_grace_period": constants.HEALTH_CHECK_GRACE_PERIOD,
                "subnet_ids": list(public_subnet_ids),
                "tags": [
                    {
                        "key": "AutoScaleTag",
                        "value": "AutoScaleGpTag",
                        "propagate_at_launch": True,
                    }
                ],
            },
            stage=Stage.COMPUTE,
            branch=COMPUTE,
        )
        alarms = [
            self._scaling_rule(scaling_group, "scaleUp", 1, "cpuHigh",
                               "GreaterThanThreshold", constants.CPU_HIGH_THRESHOLD),
            self._scaling_rule(scaling_group, "scaleDown", -1, "cpuLow",
                               "LessThanThreshold", constants.CPU_LOW_THRESHOLD),
        ]
        handles = ComputeHandles(launch_template=launch_template, scaling_group=scaling_group)

        if self.config.enabled(Tier.LOAD_BALANCER):
            self._build_load_balancing(
                handles, network, security, public_subnet_ids, alarms
            )
        return handles

    def _lookup_image(self) -> str:
        name_filter = self.config.network.ami_name
        try:
            return self.provisioner.backend.lookup_image(name_filter)
        except (AlreadyResolved, ProvisioningError):
            raise
        except Exception as e:
            raise ProvisioningError("imageLookup", Stage.COMPUTE.label, e) from e

    def _scaling_rule(
        self,
        scaling_group: ResourceNode,
        policy_name: str,
        adjustment: int,
        alarm_name: str,
        comparison: str,
        threshold: float,
    ) -> ResourceNode:
        policy = self._declare(
            ResourceKind.SCALING_POLICY,
            policy_name,
            {
                "scaling_group_name": scaling_group.attr("name"),
                "adjustment_type": "ChangeInCapacity",
                "scaling_adjustment": adjustment,
                "policy_type": "SimpleScaling",
            },
            stage=Stage.COMPUTE,
            branch=COMPUTE,
        )
        direction = "up" if adjustment > 0 else "down"
        return self._declare(
            ResourceKind.METRIC_ALARM,
            alarm_name,
            {
                "comparison_operator": comparison,
                "evaluation_periods": constants.ALARM_EVALUATION_PERIODS,
                "metric_name": "CPUUtilization",
                "namespace": "AWS/EC2",
                "period": constants.ALARM_PERIOD,
                "statistic": "Average",
                "threshold": threshold,
                "dimensions": {"AutoScalingGroupName": scaling_group.attr("name")},
                "description": f"Monitors instance CPU utilization and scales {direction}",
                "alarm_actions": [policy.attr("arn")],
            },
            stage=Stage.COMPUTE,
            branch=COMPUTE,
        )

    def _attach_policies(
        self,
        role: ResourceNode,
        branch: str,
        stage: Stage,
        policies: dict[str, Any],
    ) -> list[ResourceNode]:
        return [
            self._declare(
                ResourceKind.ROLE_POLICY_ATTACHMENT,
                f"{role.name}-{label}",
                {"role": role.attr("name"), "policy_arn": policy_arn},
                stage=stage,
                branch=branch,
            )
            for label, policy_arn in policies.items()
        ]

    # ---------- load balancing ----------
    def _build_load_balancing(
        self,
        handles: ComputeHandles,
        network: NetworkHandles,
        security: SecurityHandles,
        public_subnet_ids: list[Deferred[Any]],
        alarms: list[ResourceNode],
    ) -> None:
        compute = self.config.compute
        load_balancer = self._declare(
            ResourceKind.LOAD_BALANCER,
            "loadBalancer",
            {
                "internal": False,
                "type": "application",
                "security_group_ids": [security.load_balancer.id],
                "subnet_ids": list(public_subnet_ids),
                "deletion_protection": False,
                "tags": {"Environment": self.config.environment},
            },
            stage=Stage.LOAD_BALANCING,
            branch=COMPUTE,
            depends_on=tuple(alarm.outputs for alarm in alarms),
        )
        target_group = self._declare(
            ResourceKind.TARGET_GROUP,
            "targetGroup",
            {
                "port": compute.app_port,
                "protocol": "HTTP",
                "vpc_id": network.vpc.id,
                "health_check": {
                    "enabled": True,
                    "interval": 30,
                    "path": compute.health_check_path,
                    "timeout": 5,
                    "port": "traffic-port",
                    "protocol": "HTTP",
                    "matcher": "200",
                },
            },
            stage=Stage.LOAD_BALANCING,
            branch=COMPUTE,
            depends_on=(load_balancer.outputs,),
        )
        self._declare(
            ResourceKind.TARGET_GROUP_ATTACHMENT,
            "targetGroupAttachment",
            {
                "scaling_group_name": handles.scaling_group.attr("name"),
                "target_group_arn": target_group.attr("arn"),
            },
            stage=Stage.LOAD_BALANCING,
            branch=COMPUTE,
            depends_on=(load_balancer.outputs,),
        )
        if compute.certificate_arn:
            listener = {
                "port": constants.HTTPS_PORT,
                "protocol": "HTTPS",
                "ssl_policy": constants.SSL_POLICY,
                "certificate_arn": compute.certificate_arn,
            }
        else:
            listener = {"port": constants.HTTP_PORT, "protocol": "HTTP"}
        self._declare(
            ResourceKind.LISTENER,
            "listener",
            {
                "load_balancer_arn": load_balancer.attr("arn"),
                "target_group_arn": target_group.attr("arn"),
                **listener,
            },
            stage=Stage.LOAD_BALANCING,
            branch=COMPUTE,
        )
        handles.load_balancer = load_balancer

        dns = self.config.dns
        if dns.enabled:
            handles.dns_record = self._declare(
                ResourceKind.DNS_RECORD,
                "dnsRecord",
                {
                    "name": dns.record_name,
                    "type": "A",
                    "zone_id": dns.hosted_zone_id,
                    "alias": {
                        "name": load_balancer.attr("dns_name"),
                        "zone_id": load_balancer.attr("zone_id"),
                        "evaluate_target_health": False,
                    },
                },
                stage=Stage.LOAD_BALANCING,
                branch=COMPUTE,
            )
