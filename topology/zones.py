from typing import Any, Optional, Sequence

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

import common.constants as constants
from topology.config import TopologyConfig
from topology.errors import ConfigError

logger = Logger(service=constants.SERVICE_NAME, child=True)


def discover_zones(region: Optional[str] = None, client: Any = None) -> list[str]:
    """Names of the availability zones in ``available`` state, sorted."""
    client = client or boto3.client("ec2", region_name=region)
    try:
        response = client.describe_availability_zones(
            Filters=[{"Name": "state", "Values": ["available"]}]
        )
    except ClientError as e:
        error_info = e.response.get("Error", {})
        code = error_info.get("Code", "Unknown")
        message = error_info.get("Message", "Unknown")
        logger.error("Availability zone lookup failed", code=code, region=region)
        raise ConfigError(f"Unable to list availability zones: {code} - {message}") from e
    except BotoCoreError as e:
        logger.error("Availability zone lookup failed", region=region)
        raise ConfigError(f"Unable to list availability zones: {e}") from e

    zones = sorted(zone["ZoneName"] for zone in response.get("AvailabilityZones", []))
    logger.info("Discovered availability zones", region=region, count=len(zones))
    return zones


def resolve_zones(config: TopologyConfig, client: Any = None) -> Sequence[str]:
    """Zones listed in the configuration, otherwise the discovered ones."""
    if config.zones:
        return config.zones
    return discover_zones(config.region, client=client)
