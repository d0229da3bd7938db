"""Topology configuration.

The configuration is an explicit, immutable value handed to the pipeline. It
is read from a YAML document whose ``network`` section keeps the historical
camelCase keys (``cidrBlockAddr``, ``vpcName``, ``subnet`` ...). Every other
section uses snake_case keys matching the attribute names below.

Example document::

    network:
      cidrBlockAddr: 10.0.0.0/16
      vpcName: main-vpc
      subnet: 20
      sshKeyName: deployer
      amiName: webapp-*
      gcpbucketName: uploads
      mandrillKey: md-key
    zones: [us-east-1a, us-east-1b]
    tiers: [database, messaging, serverless, compute, load_balancer]
    database:
      password: change-me
"""

from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

import yaml
from attrs import define, field
from attrs.validators import deep_iterable, ge, instance_of, optional
from aws_lambda_powertools import Logger

import common.constants as constants
from common.naming import ResourceNaming
from topology.errors import ConfigError

logger = Logger(service=constants.SERVICE_NAME, child=True)


class Tier(str, Enum):
    DATABASE = "database"
    MESSAGING = "messaging"
    SERVERLESS = "serverless"
    COMPUTE = "compute"
    LOAD_BALANCER = "load_balancer"


ALL_TIERS = frozenset(Tier)

_TIER_REQUIREMENTS = {
    Tier.SERVERLESS: (Tier.MESSAGING,),
    Tier.COMPUTE: (Tier.DATABASE, Tier.MESSAGING),
    Tier.LOAD_BALANCER: (Tier.COMPUTE,),
}

_str = instance_of(str)
_opt_str = optional(instance_of(str))
_positive = [instance_of(int), ge(1)]


def check_zones(zones: Any) -> tuple:
    """Return ``zones`` as a tuple of distinct zone names.

    Raises:
        ConfigError: If ``zones`` is not a list or names a zone twice.
    """
    if isinstance(zones, (str, bytes)) or not isinstance(zones, Sequence):
        raise ConfigError(
            f"'zones' must be a list of zone names, got {type(zones).__name__}"
        )
    duplicates = sorted({str(zone) for zone in zones if zones.count(zone) > 1})
    if duplicates:
        raise ConfigError(f"Duplicate zones: {', '.join(duplicates)}")
    return tuple(zones)


@define(slots=True, frozen=True, kw_only=True)
class NetworkConfig:
    cidr_block: str = field(validator=_str)
    vpc_name: str = field(default="vpc", validator=_str)
    internet_gateway_name: str = field(default="internetGateway", validator=_str)
    internet_gateway_attachment_name: str = field(
        default="internetGatewayAttachment", validator=_str
    )
    public_route_table_name: str = field(default="publicRouteTable", validator=_str)
    private_route_table_name: str = field(default="privateRouteTable", validator=_str)
    public_route_name: str = field(default="publicRoute", validator=_str)
    subnet_prefix: int = field(
        default=constants.DEFAULT_SUBNET_PREFIX, validator=_positive
    )
    ssh_key_name: Optional[str] = field(default=None, validator=_opt_str)
    ami_name: Optional[str] = field(default=None, validator=_opt_str)


@define(slots=True, frozen=True, kw_only=True)
class DatabaseConfig:
    name: str = field(default=constants.DB_NAME, validator=_str)
    username: str = field(default=constants.DB_USERNAME, validator=_str)
    password: Optional[str] = field(default=None, validator=_opt_str)
    identifier: str = field(default=constants.DB_NAME, validator=_str)
    engine: str = field(default=constants.DB_ENGINE, validator=_str)
    engine_version: str = field(default=constants.DB_ENGINE_VERSION, validator=_str)
    parameter_family: str = field(
        default=constants.DB_PARAMETER_FAMILY, validator=_str
    )
    instance_class: str = field(default=constants.DB_INSTANCE_CLASS, validator=_str)
    allocated_storage: int = field(
        default=constants.DB_ALLOCATED_STORAGE, validator=_positive
    )
    port: int = field(default=constants.MYSQL_PORT, validator=_positive)


@define(slots=True, frozen=True, kw_only=True)
class ComputeConfig:
    instance_type: str = field(default=constants.INSTANCE_TYPE, validator=_str)
    min_size: int = field(default=constants.SCALING_MIN, validator=_positive)
    max_size: int = field(default=constants.SCALING_MAX, validator=_positive)
    desired_capacity: int = field(
        default=constants.SCALING_DESIRED, validator=_positive
    )
    app_port: int = field(default=constants.APP_PORT, validator=_positive)
    health_check_path: str = field(
        default=constants.HEALTH_CHECK_PATH, validator=_str
    )
    certificate_arn: Optional[str] = field(default=None, validator=_opt_str)

    def __attrs_post_init__(self) -> None:
        if not self.min_size <= self.desired_capacity <= self.max_size:
            raise ValueError(
                "compute sizes must satisfy min_size <= desired_capacity <= max_size"
            )


@define(slots=True, frozen=True, kw_only=True)
class ServerlessConfig:
    gcp_bucket_name: Optional[str] = field(default=None, validator=_opt_str)
    mandrill_key: Optional[str] = field(default=None, validator=_opt_str)
    service_account_id: str = field(default="service-account-id", validator=_str)
    gcp_project: Optional[str] = field(default=None, validator=_opt_str)
    code_bucket: Optional[str] = field(default=None, validator=_opt_str)
    code_key: Optional[str] = field(default=None, validator=_opt_str)
    runtime: str = field(default=constants.FUNCTION_RUNTIME, validator=_str)
    handler: str = field(default=constants.FUNCTION_HANDLER, validator=_str)
    timeout: int = field(default=constants.FUNCTION_TIMEOUT, validator=_positive)

    @property
    def service_account_email(self) -> str:
        project = self.gcp_project or "project"
        return f"{self.service_account_id}@{project}.iam.gserviceaccount.com"


@define(slots=True, frozen=True, kw_only=True)
class DnsConfig:
    hosted_zone_id: Optional[str] = field(default=None, validator=_opt_str)
    record_name: Optional[str] = field(default=None, validator=_opt_str)

    @property
    def enabled(self) -> bool:
        return bool(self.hosted_zone_id and self.record_name)


@define(slots=True, frozen=True, kw_only=True)
class TopologyConfig:
    network: NetworkConfig = field(validator=instance_of(NetworkConfig))
    database: DatabaseConfig = field(
        factory=DatabaseConfig, validator=instance_of(DatabaseConfig)
    )
    compute: ComputeConfig = field(
        factory=ComputeConfig, validator=instance_of(ComputeConfig)
    )
    serverless: ServerlessConfig = field(
        factory=ServerlessConfig, validator=instance_of(ServerlessConfig)
    )
    dns: DnsConfig = field(factory=DnsConfig, validator=instance_of(DnsConfig))
    tiers: frozenset = field(
        default=ALL_TIERS,
        converter=frozenset,
        validator=deep_iterable(member_validator=instance_of(Tier)),
    )
    zones: Optional[tuple] = field(
        default=None,
        converter=lambda zones: None if zones is None else check_zones(zones),
        validator=optional(deep_iterable(member_validator=_str)),
    )
    region: Optional[str] = field(default=None, validator=_opt_str)
    environment: str = field(default=constants.DEFAULT_ENV, validator=_str)

    def __attrs_post_init__(self) -> None:
        for tier, required in _TIER_REQUIREMENTS.items():
            missing = [r.value for r in required if r not in self.tiers]
            if tier in self.tiers and missing:
                raise ConfigError(
                    f"Tier '{tier.value}' requires tiers: {', '.join(missing)}"
                )
        if Tier.DATABASE in self.tiers and not self.database.password:
            raise ConfigError("database.password is required for the database tier")
        if Tier.COMPUTE in self.tiers and not self.network.ami_name:
            raise ConfigError("network.amiName is required for the compute tier")
        if Tier.SERVERLESS in self.tiers and not self.serverless.gcp_bucket_name:
            raise ConfigError(
                "network.gcpbucketName is required for the serverless tier"
            )

    @property
    def naming(self) -> ResourceNaming:
        return ResourceNaming(env=self.environment)

    def enabled(self, tier: Tier) -> bool:
        return tier in self.tiers


# ---------- loading ----------
_NETWORK_KEYS = {
    "cidrBlockAddr": "cidr_block",
    "vpcName": "vpc_name",
    "internetGatewayName": "internet_gateway_name",
    "internetGatewayAttachmentName": "internet_gateway_attachment_name",
    "publicRouteTableName": "public_route_table_name",
    "privateRouteTableName": "private_route_table_name",
    "publicRouteName": "public_route_name",
    "subnet": "subnet_prefix",
    "sshKeyName": "ssh_key_name",
    "amiName": "ami_name",
}

_SERVERLESS_NETWORK_KEYS = {
    "gcpbucketName": "gcp_bucket_name",
    "mandrillKey": "mandrill_key",
}


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    section = data.get(key) or {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"'{key}' must be a mapping, got {type(section).__name__}")
    return section


def _rename(section: Mapping[str, Any], keys: Mapping[str, str]) -> dict[str, Any]:
    return {keys[key]: value for key, value in section.items() if key in keys}


def _build(cls: type, name: str, values: Mapping[str, Any]) -> Any:
    try:
        return cls(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid '{name}' configuration: {e}") from e


def config_from_mapping(data: Any) -> TopologyConfig:
    """Build a `TopologyConfig` from a parsed configuration document.

    Raises:
        ConfigError: If a section is missing, has unknown keys or bad values.
    """
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration document must be a mapping")

    network_section = _section(data, "network")
    if "cidrBlockAddr" not in network_section:
        raise ConfigError("network.cidrBlockAddr is required")
    unknown = set(network_section) - set(_NETWORK_KEYS) - set(_SERVERLESS_NETWORK_KEYS)
    if unknown:
        raise ConfigError(f"Unknown network keys: {', '.join(sorted(unknown))}")

    serverless_values = dict(_section(data, "serverless"))
    serverless_values.update(_rename(network_section, _SERVERLESS_NETWORK_KEYS))

    try:
        tiers = [Tier(tier) for tier in data.get("tiers", [t.value for t in Tier])]
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid 'tiers' configuration: {e}") from e

    return _build(
        TopologyConfig,
        "topology",
        {
            "network": _build(
                NetworkConfig, "network", _rename(network_section, _NETWORK_KEYS)
            ),
            "database": _build(DatabaseConfig, "database", _section(data, "database")),
            "compute": _build(ComputeConfig, "compute", _section(data, "compute")),
            "serverless": _build(ServerlessConfig, "serverless", serverless_values),
            "dns": _build(DnsConfig, "dns", _section(data, "dns")),
            "tiers": tiers,
            "zones": data.get("zones"),
            "region": data.get("region"),
            "environment": data.get("environment", constants.DEFAULT_ENV),
        },
    )


def load_config(path: Union[str, Path]) -> TopologyConfig:
    """Read and validate a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated.
    """
    try:
        with open(path) as file:
            data = yaml.safe_load(file)
    except OSError as e:
        raise ConfigError(f"Error reading configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing configuration file {path}: {e}") from e

    config = config_from_mapping(data)
    logger.info(
        "Loaded topology configuration",
        path=str(path),
        cidr_block=config.network.cidr_block,
        tiers=sorted(tier.value for tier in config.tiers),
    )
    return config
