"""AWS CDK provisioning backend.

Turns resource nodes into CloudFormation L1 constructs inside a CDK scope.
Every create resolves synchronously: the returned outputs are CDK tokens
(``Ref``/``Fn::GetAtt``) that CloudFormation resolves at deploy time.

Two kinds have no standalone CloudFormation resource and are folded into the
resource they modify: role policy attachments extend the role's
``ManagedPolicyArns`` and target group attachments extend the scaling group's
``TargetGroupARNs``.
"""

from typing import Any, Callable, Mapping, Optional

from aws_cdk import (
    CfnTag,
    Fn,
    RemovalPolicy,
    aws_autoscaling as autoscaling,
    aws_cloudwatch as cloudwatch,
    aws_dynamodb as dynamodb,
    aws_ec2 as ec2,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_rds as rds,
    aws_route53 as route53,
    aws_sns as sns,
)
from aws_lambda_powertools import Logger
from constructs import Construct

import common.constants as constants
from common.naming import ResourceNaming
from topology.resources import Outputs, ResourceKind

logger = Logger(service=constants.SERVICE_NAME, child=True)

Props = Mapping[str, Any]


def _tags(props: Props) -> Optional[list[CfnTag]]:
    tags = props.get("tags")
    if not tags:
        return None
    return [CfnTag(key=key, value=str(value)) for key, value in tags.items()]


class CdkBackend:
    """Creates AWS resources as CloudFormation constructs in ``scope``."""

    def __init__(self, scope: Construct, naming: Optional[ResourceNaming] = None) -> None:
        self.scope = scope
        self.naming = naming or ResourceNaming()
        self.constructs: dict[str, Construct] = {}
        self._roles: dict[str, iam.CfnRole] = {}
        self._scaling_groups: dict[str, autoscaling.CfnAutoScalingGroup] = {}
        self._handlers: dict[ResourceKind, Callable[[str, str, Props], dict[str, Any]]] = {
            ResourceKind.VPC: self._create_vpc,
            ResourceKind.INTERNET_GATEWAY: self._create_internet_gateway,
            ResourceKind.GATEWAY_ATTACHMENT: self._create_gateway_attachment,
            ResourceKind.ROUTE_TABLE: self._create_route_table,
            ResourceKind.SUBNET: self._create_subnet,
            ResourceKind.ROUTE_TABLE_ASSOCIATION: self._create_route_table_association,
            ResourceKind.ROUTE: self._create_route,
            ResourceKind.SECURITY_GROUP: self._create_security_group,
            ResourceKind.SECURITY_GROUP_RULE: self._create_security_group_rule,
            ResourceKind.DB_PARAMETER_GROUP: self._create_db_parameter_group,
            ResourceKind.DB_SUBNET_GROUP: self._create_db_subnet_group,
            ResourceKind.DB_INSTANCE: self._create_db_instance,
            ResourceKind.TOPIC: self._create_topic,
            ResourceKind.KEY_VALUE_TABLE: self._create_key_value_table,
            ResourceKind.IAM_ROLE: self._create_role,
            ResourceKind.IAM_POLICY: self._create_policy,
            ResourceKind.ROLE_POLICY_ATTACHMENT: self._attach_role_policy,
            ResourceKind.INSTANCE_PROFILE: self._create_instance_profile,
            ResourceKind.FUNCTION: self._create_function,
            ResourceKind.FUNCTION_PERMISSION: self._create_function_permission,
            ResourceKind.TOPIC_SUBSCRIPTION: self._create_topic_subscription,
            ResourceKind.LAUNCH_TEMPLATE: self._create_launch_template,
            ResourceKind.SCALING_GROUP: self._create_scaling_group,
            ResourceKind.SCALING_POLICY: self._create_scaling_policy,
            ResourceKind.METRIC_ALARM: self._create_metric_alarm,
            ResourceKind.LOAD_BALANCER: self._create_load_balancer,
            ResourceKind.TARGET_GROUP: self._create_target_group,
            ResourceKind.TARGET_GROUP_ATTACHMENT: self._attach_target_group,
            ResourceKind.LISTENER: self._create_listener,
            ResourceKind.DNS_RECORD: self._create_dns_record,
        }

    # ---------- backend protocol ----------
    def create(self, kind: ResourceKind, name: str, properties: Props) -> Outputs:
        handler = self._handlers.get(kind)
        if handler is None:
            raise ValueError(f"CDK backend cannot create resources of kind '{kind.value}'")
        construct_id = self.naming.build_resource_id(name)
        attributes = handler(construct_id, name, properties)
        logger.debug("Synthesized resource", node=name, construct_id=construct_id)
        return Outputs(resource=name, attributes=attributes)

    def lookup_image(self, name_filter: str) -> str:
        image = ec2.MachineImage.lookup(name=name_filter).get_image(self.scope)
        return image.image_id

    def settle(self) -> None:
        """Nothing is outstanding: every create resolves immediately."""

    def _keep(self, name: str, construct: Construct) -> None:
        self.constructs[name] = construct

    # ---------- network ----------
    def _create_vpc(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        vpc = ec2.CfnVPC(
            self.scope,
            construct_id,
            cidr_block=props["cidr_block"],
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=_tags(props),
        )
        self._keep(name, vpc)
        return {"id": vpc.ref, "cidr_block": vpc.attr_cidr_block}

    def _create_internet_gateway(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        gateway = ec2.CfnInternetGateway(self.scope, construct_id, tags=_tags(props))
        self._keep(name, gateway)
        return {"id": gateway.ref}

    def _create_gateway_attachment(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        attachment = ec2.CfnVPCGatewayAttachment(
            self.scope,
            construct_id,
            vpc_id=props["vpc_id"],
            internet_gateway_id=props["internet_gateway_id"],
        )
        self._keep(name, attachment)
        return {"id": attachment.ref}

    def _create_subnet(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        subnet = ec2.CfnSubnet(
            self.scope,
            construct_id,
            vpc_id=props["vpc_id"],
            cidr_block=props["cidr_block"],
            availability_zone=props["availability_zone"],
            map_public_ip_on_launch=props.get("visibility") == "public",
            tags=_tags(props),
        )
        self._keep(name, subnet)
        return {"id": subnet.ref, "availability_zone": props["availability_zone"]}

    # ---------- routing ----------
    def _create_route_table(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        table = ec2.CfnRouteTable(
            self.scope, construct_id, vpc_id=props["vpc_id"], tags=_tags(props)
        )
        self._keep(name, table)
        return {"id": table.ref}

    def _create_route_table_association(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        association = ec2.CfnSubnetRouteTableAssociation(
            self.scope,
            construct_id,
            subnet_id=props["subnet_id"],
            route_table_id=props["route_table_id"],
        )
        self._keep(name, association)
        return {"id": association.ref}

    def _create_route(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        route = ec2.CfnRoute(
            self.scope,
            construct_id,
            route_table_id=props["route_table_id"],
            destination_cidr_block=props["destination_cidr_block"],
            gateway_id=props["gateway_id"],
        )
        for construct in self.constructs.values():
            if isinstance(construct, ec2.CfnVPCGatewayAttachment):
                route.add_dependency(construct)
        self._keep(name, route)
        return {"id": route.ref}

    # ---------- security ----------
    def _create_security_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        ingress = [
            ec2.CfnSecurityGroup.IngressProperty(
                ip_protocol=rule["protocol"],
                from_port=rule["from_port"],
                to_port=rule["to_port"],
                cidr_ip=cidr,
            )
            for rule in props.get("ingress", [])
            for cidr in rule.get("cidr_blocks", [])
        ]
        group = ec2.CfnSecurityGroup(
            self.scope,
            construct_id,
            group_description=props["description"],
            vpc_id=props["vpc_id"],
            security_group_ingress=ingress or None,
            tags=_tags(props),
        )
        self._keep(name, group)
        return {"id": group.attr_group_id}

    def _create_security_group_rule(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        cidr_blocks = props.get("cidr_blocks") or [None]
        if len(cidr_blocks) > 1:
            raise ValueError(f"'{name}' may name at most one CIDR block")
        rule_props = {
            "group_id": props["security_group_id"],
            "ip_protocol": props["protocol"],
            "from_port": props["from_port"],
            "to_port": props["to_port"],
            "cidr_ip": cidr_blocks[0],
        }
        if props["type"] == "ingress":
            rule = ec2.CfnSecurityGroupIngress(
                self.scope,
                construct_id,
                source_security_group_id=props.get("source_security_group_id"),
                **rule_props,
            )
        elif props["type"] == "egress":
            rule = ec2.CfnSecurityGroupEgress(
                self.scope,
                construct_id,
                destination_security_group_id=props.get("destination_security_group_id"),
                **rule_props,
            )
        else:
            raise ValueError(f"Unknown security group rule type: {props['type']!r}")
        self._keep(name, rule)
        return {"id": rule.ref}

    # ---------- data ----------
    def _create_db_parameter_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        group = rds.CfnDBParameterGroup(
            self.scope,
            construct_id,
            family=props["family"],
            description=props["description"],
        )
        self._keep(name, group)
        return {"id": group.ref, "name": group.ref}

    def _create_db_subnet_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        group = rds.CfnDBSubnetGroup(
            self.scope,
            construct_id,
            db_subnet_group_description=props["description"],
            subnet_ids=list(props["subnet_ids"]),
            tags=_tags(props),
        )
        self._keep(name, group)
        return {"id": group.ref, "name": group.ref}

    def _create_db_instance(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        instance = rds.CfnDBInstance(
            self.scope,
            construct_id,
            db_instance_identifier=props["identifier"],
            db_name=props["db_name"],
            engine=props["engine"],
            engine_version=props["engine_version"],
            db_instance_class=props["instance_class"],
            allocated_storage=str(props["allocated_storage"]),
            master_username=props["username"],
            master_user_password=props["password"],
            port=str(props["port"]),
            db_parameter_group_name=props["parameter_group_name"],
            db_subnet_group_name=props["subnet_group_name"],
            vpc_security_groups=list(props["security_group_ids"]),
            multi_az=props["multi_az"],
            publicly_accessible=props["publicly_accessible"],
        )
        if props.get("skip_final_snapshot"):
            instance.apply_removal_policy(RemovalPolicy.DESTROY)
        self._keep(name, instance)
        address = instance.attr_endpoint_address
        port = instance.attr_endpoint_port
        return {
            "id": instance.ref,
            "address": address,
            "port": port,
            "endpoint": f"{address}:{port}",
        }

    def _create_key_value_table(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        def throughput(settings: Props) -> dynamodb.CfnTable.ProvisionedThroughputProperty:
            return dynamodb.CfnTable.ProvisionedThroughputProperty(
                read_capacity_units=settings["read_capacity"],
                write_capacity_units=settings["write_capacity"],
            )

        table = dynamodb.CfnTable(
            self.scope,
            construct_id,
            table_name=props.get("table_name"),
            attribute_definitions=[
                dynamodb.CfnTable.AttributeDefinitionProperty(
                    attribute_name=attribute["name"],
                    attribute_type=attribute["type"],
                )
                for attribute in props["attributes"]
            ],
            key_schema=[
                dynamodb.CfnTable.KeySchemaProperty(
                    attribute_name=props["hash_key"], key_type="HASH"
                )
            ],
            provisioned_throughput=throughput(props),
            global_secondary_indexes=[
                dynamodb.CfnTable.GlobalSecondaryIndexProperty(
                    index_name=index["name"],
                    key_schema=[
                        dynamodb.CfnTable.KeySchemaProperty(
                            attribute_name=index["hash_key"], key_type="HASH"
                        )
                    ],
                    projection=dynamodb.CfnTable.ProjectionProperty(
                        projection_type=index["projection_type"]
                    ),
                    provisioned_throughput=throughput(index),
                )
                for index in props.get("global_secondary_indexes", [])
            ]
            or None,
        )
        table.apply_removal_policy(RemovalPolicy.DESTROY)
        self._keep(name, table)
        return {"id": table.ref, "name": table.ref, "arn": table.attr_arn}

    # ---------- messaging ----------
    def _create_topic(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        topic = sns.CfnTopic(self.scope, construct_id, tags=_tags(props))
        self._keep(name, topic)
        name_attr = topic.get_att("TopicName").to_string()
        return {"id": topic.ref, "arn": topic.ref, "name": name_attr}

    def _create_topic_subscription(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        subscription = sns.CfnSubscription(
            self.scope,
            construct_id,
            protocol=props["protocol"],
            topic_arn=props["topic_arn"],
            endpoint=props["endpoint"],
        )
        self._keep(name, subscription)
        return {"id": subscription.ref, "arn": subscription.ref}

    # ---------- identity ----------
    def _create_role(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        role = iam.CfnRole(
            self.scope,
            construct_id,
            assume_role_policy_document=props["assume_role_policy"],
            managed_policy_arns=list(props.get("managed_policy_arns", [])) or None,
        )
        ref = role.ref
        self._roles[ref] = role
        self._keep(name, role)
        return {"id": ref, "name": ref, "arn": role.attr_arn}

    def _create_policy(self, construct_id: str, name: str, props: Props) -> dict[str, Any]:
        policy = iam.CfnManagedPolicy(
            self.scope, construct_id, policy_document=props["policy"]
        )
        self._keep(name, policy)
        return {"id": policy.ref, "arn": policy.ref}

    def _attach_role_policy(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        role = self._roles.get(props["role"])
        if role is None:
            raise LookupError(f"'{name}' refers to a role this stack does not define")
        role.managed_policy_arns = [*(role.managed_policy_arns or []), props["policy_arn"]]
        return {"id": f"{role.ref}/{construct_id}"}

    def _create_instance_profile(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        profile = iam.CfnInstanceProfile(self.scope, construct_id, roles=[props["role"]])
        self._keep(name, profile)
        return {"id": profile.ref, "name": profile.ref, "arn": profile.attr_arn}

    # ---------- serverless ----------
    def _create_function(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        if not props.get("code_bucket") or not props.get("code_key"):
            raise ValueError(
                "serverless.code_bucket and serverless.code_key must point at the "
                "function bundle"
            )
        function = _lambda.CfnFunction(
            self.scope,
            construct_id,
            function_name=props.get("function_name"),
            role=props["role_arn"],
            runtime=props["runtime"],
            handler=props["handler"],
            timeout=props["timeout"],
            code=_lambda.CfnFunction.CodeProperty(
                s3_bucket=props["code_bucket"], s3_key=props["code_key"]
            ),
            environment=_lambda.CfnFunction.EnvironmentProperty(
                variables={key: str(value) for key, value in props["environment"].items()}
            ),
        )
        self._keep(name, function)
        return {"id": function.ref, "name": function.ref, "arn": function.attr_arn}

    def _create_function_permission(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        permission = _lambda.CfnPermission(
            self.scope,
            construct_id,
            action=props["action"],
            function_name=props["function_name"],
            principal=props["principal"],
            source_arn=props.get("source_arn"),
        )
        self._keep(name, permission)
        return {"id": permission.ref}

    # ---------- compute ----------
    def _create_launch_template(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        data = ec2.CfnLaunchTemplate.LaunchTemplateDataProperty(
            image_id=props["image_id"],
            instance_type=props["instance_type"],
            key_name=props.get("key_name"),
            user_data=Fn.base64(props["user_data"]),
            iam_instance_profile=ec2.CfnLaunchTemplate.IamInstanceProfileProperty(
                name=props["instance_profile_name"]
            ),
            network_interfaces=[
                ec2.CfnLaunchTemplate.NetworkInterfaceProperty(
                    associate_public_ip_address=props["associate_public_ip_address"],
                    device_index=0,
                    groups=list(props["security_group_ids"]),
                )
            ],
        )
        template = ec2.CfnLaunchTemplate(
            self.scope,
            construct_id,
            launch_template_name=props.get("name"),
            launch_template_data=data,
        )
        self._keep(name, template)
        return {
            "id": template.ref,
            "latest_version": template.attr_latest_version_number,
        }

    def _create_scaling_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        group = autoscaling.CfnAutoScalingGroup(
            self.scope,
            construct_id,
            auto_scaling_group_name=props.get("name"),
            min_size=str(props["min_size"]),
            max_size=str(props["max_size"]),
            desired_capacity=str(props["desired_capacity"]),
            cooldown=str(props["cooldown"]),
            health_check_grace_period=props["health_check_grace_period"],
            vpc_zone_identifier=list(props["subnet_ids"]),
            launch_template=autoscaling.CfnAutoScalingGroup.LaunchTemplateSpecificationProperty(
                launch_template_id=props["launch_template_id"],
                version=props["launch_template_version"],
            ),
            tags=[
                autoscaling.CfnAutoScalingGroup.TagPropertyProperty(
                    key=tag["key"],
                    value=tag["value"],
                    propagate_at_launch=tag["propagate_at_launch"],
                )
                for tag in props.get("tags", [])
            ],
        )
        ref = group.ref
        self._scaling_groups[ref] = group
        self._keep(name, group)
        return {"id": ref, "name": ref}

    def _create_scaling_policy(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        policy = autoscaling.CfnScalingPolicy(
            self.scope,
            construct_id,
            auto_scaling_group_name=props["scaling_group_name"],
            adjustment_type=props["adjustment_type"],
            scaling_adjustment=props["scaling_adjustment"],
            policy_type=props["policy_type"],
        )
        self._keep(name, policy)
        return {"id": policy.ref, "arn": policy.ref}

    def _create_metric_alarm(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        alarm = cloudwatch.CfnAlarm(
            self.scope,
            construct_id,
            comparison_operator=props["comparison_operator"],
            evaluation_periods=props["evaluation_periods"],
            metric_name=props["metric_name"],
            namespace=props["namespace"],
            period=props["period"],
            statistic=props["statistic"],
            threshold=props["threshold"],
            alarm_description=props.get("description"),
            alarm_actions=list(props.get("alarm_actions", [])),
            dimensions=[
                cloudwatch.CfnAlarm.DimensionProperty(name=key, value=value)
                for key, value in props.get("dimensions", {}).items()
            ],
        )
        self._keep(name, alarm)
        return {"id": alarm.ref, "arn": alarm.attr_arn}

    # ---------- load balancing ----------
    def _create_load_balancer(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        load_balancer = elbv2.CfnLoadBalancer(
            self.scope,
            construct_id,
            scheme="internal" if props["internal"] else "internet-facing",
            type=props["type"],
            security_groups=list(props["security_group_ids"]),
            subnets=list(props["subnet_ids"]),
            load_balancer_attributes=[
                elbv2.CfnLoadBalancer.LoadBalancerAttributeProperty(
                    key="deletion_protection.enabled",
                    value=str(props["deletion_protection"]).lower(),
                )
            ],
            tags=_tags(props),
        )
        self._keep(name, load_balancer)
        return {
            "id": load_balancer.ref,
            "arn": load_balancer.ref,
            "dns_name": load_balancer.attr_dns_name,
            "zone_id": load_balancer.attr_canonical_hosted_zone_id,
        }

    def _create_target_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        health = props["health_check"]
        target_group = elbv2.CfnTargetGroup(
            self.scope,
            construct_id,
            port=props["port"],
            protocol=props["protocol"],
            vpc_id=props["vpc_id"],
            health_check_enabled=health["enabled"],
            health_check_interval_seconds=health["interval"],
            health_check_path=health["path"],
            health_check_timeout_seconds=health["timeout"],
            health_check_port=health["port"],
            health_check_protocol=health["protocol"],
            matcher=elbv2.CfnTargetGroup.MatcherProperty(http_code=health["matcher"]),
        )
        self._keep(name, target_group)
        return {"id": target_group.ref, "arn": target_group.ref}

    def _attach_target_group(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        group = self._scaling_groups.get(props["scaling_group_name"])
        if group is None:
            raise LookupError(f"'{name}' refers to a scaling group this stack does not define")
        group.target_group_arns = [*(group.target_group_arns or []), props["target_group_arn"]]
        return {"id": f"{group.ref}/{construct_id}"}

    def _create_listener(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        certificate_arn = props.get("certificate_arn")
        listener = elbv2.CfnListener(
            self.scope,
            construct_id,
            load_balancer_arn=props["load_balancer_arn"],
            port=props["port"],
            protocol=props["protocol"],
            ssl_policy=props.get("ssl_policy"),
            certificates=(
                [elbv2.CfnListener.CertificateProperty(certificate_arn=certificate_arn)]
                if certificate_arn
                else None
            ),
            default_actions=[
                elbv2.CfnListener.ActionProperty(
                    type="forward", target_group_arn=props["target_group_arn"]
                )
            ],
        )
        self._keep(name, listener)
        return {"id": listener.ref, "arn": listener.ref}

    def _create_dns_record(
        self, construct_id: str, name: str, props: Props
    ) -> dict[str, Any]:
        alias = props["alias"]
        record = route53.CfnRecordSet(
            self.scope,
            construct_id,
            name=props["name"],
            type=props["type"],
            hosted_zone_id=props["zone_id"],
            alias_target=route53.CfnRecordSet.AliasTargetProperty(
                dns_name=alias["name"],
                hosted_zone_id=alias["zone_id"],
                evaluate_target_health=alias["evaluate_target_health"],
            ),
        )
        self._keep(name, record)
        return {"id": record.ref}
