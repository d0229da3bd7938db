import pytest

from topology.backends import CompositeBackend, RecordingBackend, SimulatedFailure
from topology.deferred import new_deferred
from topology.errors import ProvisioningError
from topology.resources import (
    NodeStatus,
    Outputs,
    Provider,
    Provisioner,
    ResourceKind,
    Stage,
)


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def provisioner(backend: RecordingBackend) -> Provisioner:
    return Provisioner(backend)


def test_create_is_issued_only_after_inputs_resolve(provisioner, backend):
    endpoint, resolve = new_deferred("endpoint")
    node = provisioner.declare(
        ResourceKind.LAUNCH_TEMPLATE,
        "launchTemplate",
        {"user_data": endpoint, "nested": {"ids": [endpoint, "literal"]}},
        stage=Stage.COMPUTE,
        branch="compute",
    )
    assert node.status is NodeStatus.DECLARED
    assert not backend.issued("launchTemplate")

    resolve("db.internal:3306")

    call = backend.call("launchTemplate")
    assert call.properties == {
        "user_data": "db.internal:3306",
        "nested": {"ids": ["db.internal:3306", "literal"]},
    }
    assert node.status is NodeStatus.CREATED
    assert node.outputs.result()["latest_version"] == "1"


def test_depends_on_waits_without_substituting(provisioner, backend):
    gate, resolve = new_deferred()
    provisioner.declare(
        ResourceKind.IAM_ROLE, "role", {}, stage=Stage.COMPUTE, branch="compute",
        depends_on=(gate,),
    )
    assert not backend.issued("role")
    resolve("ignored")
    assert backend.call("role").properties == {}


def test_asynchronous_outputs_resolve_on_settle(provisioner, backend):
    node = provisioner.declare(
        ResourceKind.DB_INSTANCE, "rdsInstance", {"port": 3306}, stage=Stage.DATA, branch="core"
    )
    assert node.status is NodeStatus.ISSUED
    assert node.outputs.is_pending

    backend.settle()

    assert node.attr("endpoint").result() == "rdsInstance.recorded.internal:3306"
    assert node.status is NodeStatus.CREATED


def test_backend_failure_names_node_and_stage():
    provisioner = Provisioner(RecordingBackend(failures={"vpc": "quota"}))
    node = provisioner.declare(
        ResourceKind.VPC, "vpc", {"cidr_block": "10.0.0.0/16"}, stage=Stage.NETWORK, branch="core"
    )
    error = node.outputs.error
    assert isinstance(error, ProvisioningError)
    assert (error.node, error.stage) == ("vpc", "Network")
    assert isinstance(error.cause, SimulatedFailure)
    assert node.status is NodeStatus.FAILED


def test_dependents_of_failed_node_are_skipped():
    provisioner = Provisioner(RecordingBackend(failures={"vpc": "quota"}))
    vpc = provisioner.declare(ResourceKind.VPC, "vpc", stage=Stage.NETWORK, branch="core")
    subnet = provisioner.declare(
        ResourceKind.SUBNET, "subnet", {"vpc_id": vpc.id}, stage=Stage.NETWORK, branch="core"
    )
    assert subnet.status is NodeStatus.SKIPPED
    assert subnet.outputs.error.node == "vpc"


def test_duplicate_names_are_rejected(provisioner):
    provisioner.declare(ResourceKind.VPC, "vpc", stage=Stage.NETWORK, branch="core")
    with pytest.raises(ValueError, match="already declared"):
        provisioner.declare(ResourceKind.VPC, "vpc", stage=Stage.NETWORK, branch="core")


def test_stages_cannot_go_backwards_within_a_branch(provisioner):
    provisioner.declare(ResourceKind.TOPIC, "topic", stage=Stage.MESSAGING, branch="core")
    with pytest.raises(ValueError, match="after stage Messaging"):
        provisioner.declare(ResourceKind.VPC, "vpc", stage=Stage.NETWORK, branch="core")
    provisioner.declare(ResourceKind.VPC, "other", stage=Stage.NETWORK, branch="other")


def test_nodes_in_branch(provisioner):
    provisioner.declare(ResourceKind.VPC, "vpc", stage=Stage.NETWORK, branch="core")
    provisioner.declare(ResourceKind.IAM_ROLE, "role", stage=Stage.COMPUTE, branch="compute")
    assert [n.name for n in provisioner.nodes_in("compute")] == ["role"]


def test_missing_output_attribute_names_resource():
    outputs = Outputs(resource="vpc", attributes={"id": "vpc-1"})
    assert outputs.id == "vpc-1"
    with pytest.raises(KeyError, match="'vpc' does not export 'arn'"):
        outputs["arn"]


def test_stage_labels():
    assert Stage.LOAD_BALANCING.label == "LoadBalancing"
    assert list(Stage) == sorted(Stage)


@pytest.mark.parametrize(
    "kind,provider",
    [
        (ResourceKind.SERVICE_ACCOUNT, Provider.GCP),
        (ResourceKind.SERVICE_ACCOUNT_KEY, Provider.GCP),
        (ResourceKind.BUCKET_IAM_MEMBER, Provider.GCP),
        (ResourceKind.DB_INSTANCE, Provider.AWS),
        (ResourceKind.FUNCTION, Provider.AWS),
    ],
)
def test_kind_provider(kind, provider):
    assert kind.provider is provider


def test_composite_without_provider_backend_fails_the_node():
    provisioner = Provisioner(CompositeBackend({Provider.AWS: RecordingBackend()}))
    node = provisioner.declare(
        ResourceKind.SERVICE_ACCOUNT, "serviceAccount", stage=Stage.MESSAGING, branch="core"
    )
    assert isinstance(node.outputs.error, ProvisioningError)
    assert isinstance(node.outputs.error.cause, LookupError)
