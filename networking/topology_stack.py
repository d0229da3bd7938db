from typing import Optional, Sequence

from aws_cdk import CfnOutput, Fn, Stack, aws_ssm as ssm
from constructs import Construct

from networking.cdk_backend import CdkBackend
from topology.backends import CompositeBackend
from topology.config import TopologyConfig
from topology.pipeline import Pipeline, PipelineResult
from topology.resources import Provider, ProvisioningBackend


class TopologyStack(Stack):
    """Synthesizes the whole topology into one CloudFormation stack.

    AWS resources become L1 constructs of this stack. Google Cloud resources
    have no CloudFormation representation and go to ``gcp_backend``. Without
    one they are rejected, which fails the serverless branch.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: TopologyConfig,
        zones: Optional[Sequence[str]] = None,
        gcp_backend: Optional[ProvisioningBackend] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.config = config
        self.cdk_backend = CdkBackend(self, config.naming)
        self.gcp_backend = gcp_backend
        backends: dict[Provider, ProvisioningBackend] = {Provider.AWS: self.cdk_backend}
        if gcp_backend is not None:
            backends[Provider.GCP] = gcp_backend
        backend = CompositeBackend(backends)
        self.result: PipelineResult = Pipeline(config, backend, zones=zones).run()

        self.create_vpc_id_ssm_parameter()
        self.create_outputs()

    def create_vpc_id_ssm_parameter(self) -> Optional[ssm.StringParameter]:
        """Persist the VPC id in SSM for stacks deployed later."""
        vpc_id = self.result.outputs.get("vpc_id")
        if vpc_id is None:
            return None
        parameter_name = self.config.naming.build_resource_name("vpc-id")
        return ssm.StringParameter(
            self,
            "TopologyVpcIdParameter",
            description="Contains the topology VPC ID",
            parameter_name=parameter_name,
            string_value=vpc_id,
        )

    def create_outputs(self) -> None:
        outputs = self.result.outputs
        if "vpc_id" in outputs:
            CfnOutput(self, "VpcId", value=outputs["vpc_id"])
        if "public_subnet_ids" in outputs:
            CfnOutput(
                self, "PublicSubnetIds", value=Fn.join(",", list(outputs["public_subnet_ids"]))
            )
        if "private_subnet_ids" in outputs:
            CfnOutput(
                self, "PrivateSubnetIds", value=Fn.join(",", list(outputs["private_subnet_ids"]))
            )
        if "db_endpoint" in outputs:
            CfnOutput(self, "DbEndpoint", value=outputs["db_endpoint"])
        if "topic_arn" in outputs:
            CfnOutput(self, "TopicArn", value=outputs["topic_arn"])
        if "function_arn" in outputs:
            CfnOutput(self, "FunctionArn", value=outputs["function_arn"])
        if "load_balancer_dns_name" in outputs:
            dns_name = outputs["load_balancer_dns_name"]
            CfnOutput(self, "AlbDnsName", value=dns_name)
            scheme = "https://" if self.config.compute.certificate_arn else "http://"
            CfnOutput(self, "AlbUrl", value=scheme + dns_name)
