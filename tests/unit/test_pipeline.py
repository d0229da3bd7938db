import pytest
from stack_test_helpers import ZONES, build_config

import topology.pipeline as pipeline_module
from topology.backends import CompositeBackend, RecordingBackend
from topology.errors import ConfigError, InsufficientSubnets, ProvisioningError
from topology.pipeline import BranchStatus, Pipeline, compute_subnet_ids
from topology.resources import NodeStatus, Provider, Provisioner, ResourceKind, Stage

ENDPOINT = "db.internal:3306"
TOPIC_ARN = "arn:example:topic:1"


def run(backend=None, zones=ZONES, **overrides):
    backend = backend or RecordingBackend()
    result = Pipeline(build_config(**overrides), backend, zones=zones).run()
    return result, backend


# ------------------- Happy path -------------------
def test_all_branches_complete():
    result, backend = run()

    assert result.ok
    assert result.diagnostics() == []
    assert {b.status for b in result.branches.values()} == {BranchStatus.COMPLETED}
    assert all(node.status is NodeStatus.CREATED for node in result.nodes.values())
    assert backend.pending == []


def test_outputs_are_exported():
    result, backend = run()

    assert result.outputs["vpc_id"] == "vpc-0001"
    assert result.outputs["db_endpoint"] == "rdsInstance.recorded.internal:3306"
    assert result.outputs["topic_arn"] == "arn:recorded:topic:notificationTopic"
    assert result.outputs["load_balancer_dns_name"] == "loadBalancer.elb.recorded"
    assert len(result.outputs["public_subnet_ids"]) == 3
    assert len(result.outputs["private_subnet_ids"]) == 3


def test_subnets_follow_the_plan():
    result, backend = run()

    subnet_calls = backend.calls_of(ResourceKind.SUBNET)
    assert [c.name for c in subnet_calls] == [s.name for s in result.subnets]
    assert subnet_calls[0].properties["cidr_block"] == "10.0.16.0/20"
    assert subnet_calls[0].properties["availability_zone"] == "us-east-1a"


def test_more_than_three_zones_uses_three():
    result, backend = run(zones=[*ZONES, "us-east-1d", "us-east-1e"])

    assert result.zones == list(ZONES)
    assert len(backend.calls_of(ResourceKind.SUBNET)) == 6
    assert len(backend.call("scalingGroup").properties["subnet_ids"]) == 3


def test_compute_branch_creation_order():
    _, backend = run()
    names = backend.names
    ordered = [
        "instanceRole",
        "instanceRole-CloudWatchAgent",
        "launchTemplate",
        "scalingGroup",
        "scaleUp",
        "cpuHigh",
        "loadBalancer",
        "targetGroup",
        "targetGroupAttachment",
        "listener",
    ]
    positions = [names.index(name) for name in ordered]
    assert positions == sorted(positions)


def test_private_subnets_hold_the_database():
    result, backend = run()
    private_ids = list(result.outputs["private_subnet_ids"])
    assert backend.call("dbSubnetGroup").properties["subnet_ids"] == private_ids


# ------------------- Scenario C -------------------
def test_user_data_embeds_endpoint_and_topic_verbatim():
    backend = RecordingBackend(
        outputs={
            "rdsInstance": {"endpoint": ENDPOINT},
            "notificationTopic": {"arn": TOPIC_ARN},
        }
    )
    result, _ = run(backend)

    user_data = backend.call("launchTemplate").properties["user_data"]
    assert ENDPOINT in user_data
    assert TOPIC_ARN in user_data
    assert 'host: "db.internal"' in user_data
    assert "port: 3306" in user_data
    assert result.ok


def test_launch_template_waits_for_database():
    backend = RecordingBackend()
    pipeline = Pipeline(build_config(), backend, zones=ZONES)
    settle = backend.settle

    # Before the database and topic complete, neither branch has issued anything.
    def checked_settle():
        assert backend.issued("rdsInstance")
        assert not backend.issued("instanceRole")
        assert not backend.issued("launchTemplate")
        assert not backend.issued("consumerRole")
        settle()

    backend.settle = checked_settle
    result = pipeline.run()
    assert backend.issued("launchTemplate")
    assert result.ok


# ------------------- Scenario D -------------------
def test_database_failure_aborts_compute_only():
    backend = RecordingBackend(failures={"rdsInstance": "storage quota exceeded"})
    result, _ = run(backend)

    compute = result.branches["compute"]
    assert compute.status is BranchStatus.FAILED
    assert compute.failed_node == "rdsInstance"
    assert compute.failed_stage == "Data"
    assert isinstance(compute.error, ProvisioningError)
    assert "storage quota exceeded" in str(compute.error)

    assert not backend.issued("launchTemplate")
    assert not backend.issued("instanceRole")
    assert result.nodes["launchTemplate"].status is NodeStatus.SKIPPED
    assert result.nodes["rdsInstance"].status is NodeStatus.FAILED

    assert result.branches["serverless"].status is BranchStatus.COMPLETED
    assert backend.issued("consumerFunction")
    assert result.branches["core"].status is BranchStatus.FAILED
    assert not result.ok
    assert any("rdsInstance" in line for line in result.diagnostics())


def test_consumer_failure_leaves_compute_untouched():
    backend = RecordingBackend(failures={"consumerFunction": "bundle missing"})
    result, _ = run(backend)

    assert result.branches["serverless"].failed_node == "consumerFunction"
    assert result.branches["serverless"].failed_stage == "Messaging"
    assert result.branches["compute"].status is BranchStatus.COMPLETED
    assert result.branches["core"].status is BranchStatus.COMPLETED
    assert result.nodes["consumerSubscription"].status is NodeStatus.SKIPPED


def test_synchronous_failure_is_reported_with_stage():
    backend = RecordingBackend(failures={"appSecurityGroup": "limit exceeded"})
    result, _ = run(backend)

    core = result.branches["core"]
    assert core.failed_node == "appSecurityGroup"
    assert core.failed_stage == "Security"
    assert result.branches["compute"].status is BranchStatus.FAILED


class FailingImageBackend(RecordingBackend):
    def lookup_image(self, name_filter):
        raise LookupError(f"no image matches {name_filter}")


def test_image_lookup_failure_aborts_compute():
    result, backend = run(FailingImageBackend())

    compute = result.branches["compute"]
    assert compute.failed_node == "imageLookup"
    assert compute.failed_stage == "Compute"
    assert backend.issued("instanceRole")
    assert not backend.issued("launchTemplate")
    assert result.branches["serverless"].status is BranchStatus.COMPLETED


# ------------------- No rollback, no timeout -------------------
def test_failed_branch_does_not_roll_back_created_nodes():
    backend = RecordingBackend(failures={"loadBalancer": "quota"})
    result, _ = run(backend)

    assert result.nodes["scalingGroup"].status is NodeStatus.CREATED
    assert result.nodes["cpuLow"].status is NodeStatus.CREATED
    assert result.branches["compute"].failed_node == "loadBalancer"
    assert result.branches["compute"].failed_stage == "LoadBalancing"


def test_hung_database_leaves_dependent_branches_pending():
    backend = RecordingBackend(hold=["rdsInstance"])
    result, _ = run(backend)

    assert result.branches["core"].status is BranchStatus.PENDING
    assert "rdsInstance" in result.branches["core"].waiting_on
    assert result.branches["compute"].status is BranchStatus.PENDING
    assert result.branches["serverless"].status is BranchStatus.COMPLETED
    assert "db_endpoint" not in result.outputs
    assert not result.ok

    backend.release("rdsInstance")
    backend.settle()
    assert result.nodes["launchTemplate"].status is NodeStatus.CREATED


# ------------------- Tiers -------------------
def test_network_only_topology():
    result, backend = run(tiers=[])

    assert result.ok
    assert result.branches["serverless"].status is BranchStatus.DISABLED
    assert result.branches["compute"].status is BranchStatus.DISABLED
    assert not backend.calls_of(ResourceKind.DB_INSTANCE)
    assert not backend.issued("dbSecurityGroup")
    assert set(result.outputs) == {"vpc_id", "public_subnet_ids", "private_subnet_ids"}


def test_compute_without_load_balancer():
    result, backend = run(tiers=["database", "messaging", "compute"])

    assert result.ok
    assert backend.issued("scalingGroup")
    assert not backend.calls_of(ResourceKind.LOAD_BALANCER)
    assert not backend.calls_of(ResourceKind.KEY_VALUE_TABLE)
    assert result.branches["serverless"].status is BranchStatus.DISABLED


def test_dns_record_aliases_load_balancer():
    _, backend = run(dns={"hosted_zone_id": "Z123", "record_name": "app.example.com"})

    alias = backend.call("dnsRecord").properties["alias"]
    assert alias["name"] == "loadBalancer.elb.recorded"
    assert alias["zone_id"] == "ZRECORDED"


def test_function_permission_carries_only_permission_fields():
    _, backend = run()
    permission = backend.call("consumerPermission").properties
    assert set(permission) == {"action", "function_name", "principal", "source_arn"}
    assert permission["principal"] == "sns.amazonaws.com"


def test_https_listener_when_certificate_configured():
    _, backend = run(compute={"certificate_arn": "arn:aws:acm:us-east-1:1:certificate/x"})
    listener = backend.call("listener").properties
    assert listener["port"] == 443
    assert listener["protocol"] == "HTTPS"


def test_no_zones_is_insufficient():
    with pytest.raises(InsufficientSubnets):
        run(zones=[])


def test_duplicate_zones_abort_before_any_call():
    backend = RecordingBackend()
    with pytest.raises(ConfigError, match="Duplicate zones: us-east-1a"):
        run(backend, zones=["us-east-1a", "us-east-1a"])
    assert backend.names == []


def test_discovered_zones_are_checked(monkeypatch):
    backend = RecordingBackend()
    monkeypatch.setattr(
        pipeline_module, "resolve_zones", lambda config: ["us-east-1a", "us-east-1a"]
    )
    with pytest.raises(ConfigError, match="Duplicate zones"):
        run(backend, zones=None)
    assert backend.names == []


def test_compute_needs_a_public_subnet_per_zone():
    provisioner = Provisioner(RecordingBackend())
    subnet = provisioner.declare(
        ResourceKind.SUBNET, "publicSubnet-a", stage=Stage.NETWORK, branch="core"
    )
    assert len(compute_subnet_ids([subnet], 1)) == 1
    with pytest.raises(InsufficientSubnets, match="needs 2 public subnets, 1 exist"):
        compute_subnet_ids([subnet], 2)


# ------------------- Composite routing -------------------
def test_google_resources_route_to_their_own_backend():
    aws, gcp = RecordingBackend(), RecordingBackend()
    backend = CompositeBackend({Provider.AWS: aws, Provider.GCP: gcp})
    result, _ = run(backend)

    assert result.ok
    assert gcp.names == ["serviceAccount", "serviceAccountKey", "bucketMember"]
    assert not aws.issued("serviceAccount")
    environment = aws.call("consumerFunction").properties["environment"]
    assert environment["GCPKEY"].startswith("recorded-private-key-")
    assert environment["GCBUCKET"] == "uploads"
