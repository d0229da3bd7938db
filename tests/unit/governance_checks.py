from stack_test_helpers import find_resources_by_type, get_single_resource_id
from governance_test_helpers import AWSService, resource_governance_doc_url

import common.constants as constants


def assert_rds_compliance(template):
    governance_doc = resource_governance_doc_url(AWSService.RDS.value)
    resources = find_resources_by_type(template, "AWS::RDS::DBInstance")
    logical_id = get_single_resource_id(resources, "AWS::RDS::DBInstance")
    props = resources[logical_id]["Properties"]
    assert props["PubliclyAccessible"] is False, (
        "RDS instances must not be publicly accessible according to "
        f"topology security standards. see {governance_doc}"
    )
    assert "DBSubnetGroupName" in props, (
        f"RDS instances must be placed in the private subnet group. see {governance_doc}"
    )


def assert_no_open_ingress_on_private_ports(template):
    """Only the load balancer listener ports may be reachable from anywhere."""
    governance_doc = resource_governance_doc_url(AWSService.EC2_Security_Group.value)
    public_ports = {constants.HTTP_PORT, constants.HTTPS_PORT}
    open_rules = []
    for resource in find_resources_by_type(template, "AWS::EC2::SecurityGroup").values():
        open_rules += resource["Properties"].get("SecurityGroupIngress", [])
    for resource in find_resources_by_type(template, "AWS::EC2::SecurityGroupIngress").values():
        open_rules.append(resource["Properties"])
    for rule in open_rules:
        if rule.get("CidrIp") == constants.ANY_IPV4_CIDR:
            assert rule["FromPort"] in public_ports and rule["ToPort"] in public_ports, (
                f"Port {rule['FromPort']} must not be open to {constants.ANY_IPV4_CIDR}. "
                f"see {governance_doc}"
            )


def assert_roles_have_service_trust(template):
    governance_doc = resource_governance_doc_url(AWSService.IAM_Role.value)
    for logical_id, resource in find_resources_by_type(template, "AWS::IAM::Role").items():
        statements = resource["Properties"]["AssumeRolePolicyDocument"]["Statement"]
        assert all("Service" in s["Principal"] for s in statements), (
            f"{logical_id} may only be assumed by AWS services. see {governance_doc}"
        )
