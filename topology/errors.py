"""Error taxonomy for topology provisioning.

Everything raised on purpose by this project derives from `TopologyError`,
so the entrypoint can turn any of them into a diagnostic and a non-zero exit.
"""

from typing import Optional


class TopologyError(Exception):
    """Base class for all topology errors."""


class ConfigError(TopologyError):
    """Configuration is missing or malformed. Raised before provisioning."""


class InvalidAddressBlock(TopologyError):
    """An address block or subnet prefix length does not parse."""


class AddressSpaceExhausted(TopologyError):
    """The base block cannot hold the requested number of sub-blocks."""


class InsufficientSubnets(TopologyError):
    """Fewer zones or subnets exist than the topology requires."""


class AlreadyResolved(TopologyError):
    """A deferred value was settled twice. Always a programming error."""


class DeferredNotSettled(TopologyError):
    """The result of a pending deferred value was requested."""


class ProvisioningError(TopologyError):
    """A backend failed to create a specific resource node."""

    def __init__(
        self, node: str, stage: Optional[str], cause: object = None
    ) -> None:
        self.node = node
        self.stage = stage
        self.cause = cause
        message = f"failed to provision '{node}'"
        if stage:
            message += f" in stage {stage}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
