import boto3
import pytest
from botocore.stub import Stubber

from stack_test_helpers import build_config
from topology.errors import ConfigError
from topology.zones import discover_zones, resolve_zones

FILTERS = [{"Name": "state", "Values": ["available"]}]


@pytest.fixture
def ec2_client():
    return boto3.client(
        "ec2",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


def test_discover_zones_returns_sorted_names(ec2_client):
    with Stubber(ec2_client) as stubber:
        stubber.add_response(
            "describe_availability_zones",
            {
                "AvailabilityZones": [
                    {"ZoneName": "us-east-1c", "State": "available"},
                    {"ZoneName": "us-east-1a", "State": "available"},
                    {"ZoneName": "us-east-1b", "State": "available"},
                ]
            },
            {"Filters": FILTERS},
        )
        zones = discover_zones("us-east-1", client=ec2_client)

    assert zones == ["us-east-1a", "us-east-1b", "us-east-1c"]


def test_client_error_becomes_config_error(ec2_client):
    with Stubber(ec2_client) as stubber:
        stubber.add_client_error(
            "describe_availability_zones",
            service_error_code="UnauthorizedOperation",
            service_message="not allowed",
            expected_params={"Filters": FILTERS},
        )
        with pytest.raises(ConfigError, match="UnauthorizedOperation - not allowed"):
            discover_zones("us-east-1", client=ec2_client)


def test_configured_zones_skip_discovery():
    config = build_config()
    assert resolve_zones(config, client=object()) == config.zones


def test_discovery_when_no_zones_configured(ec2_client):
    config = build_config(zones=None)
    with Stubber(ec2_client) as stubber:
        stubber.add_response(
            "describe_availability_zones",
            {"AvailabilityZones": [{"ZoneName": "us-east-1a"}]},
            {"Filters": FILTERS},
        )
        assert resolve_zones(config, client=ec2_client) == ["us-east-1a"]
