from typing import Optional

from attrs import define, field

import common.constants as constants


@define(slots=True, frozen=True)
class ResourceNaming:
    env: str = field(
        default=constants.DEFAULT_ENV,
        metadata={"description": "Deployment environment (dev, staging, prod)"},
    )
    service: str = field(default=constants.SERVICE_NAME)

    # ---------- naming ----------
    def build_resource_name(
        self, resource_type: str, action: Optional[str] = None
    ) -> str:
        """Build a physical resource name with optional action.

        Examples:
            - Without action: topology-launch-template-dev
            - With action: topology-consumer-function-dev
        """
        if action:
            return f"{self.service}-{action}-{resource_type}-{self.env}".lower()
        return f"{self.service}-{resource_type}-{self.env}".lower()

    def build_resource_id(self, name: str) -> str:
        """Build a construct id from a node name.

        Examples:
            - publicSubnet-us-east-1a: PublicSubnetUsEast1a
            - rdsInstance: RdsInstance
        """
        parts = [part for part in _split_words(name) if part]
        return "".join(part[0].upper() + part[1:] for part in parts)

    def tags(self, name: str) -> dict[str, str]:
        return {"Name": name, "Service": self.service, "Environment": self.env}


def _split_words(name: str) -> list[str]:
    words: list[str] = []
    current = ""
    for char in name:
        if char.isalnum():
            current += char
        else:
            words.append(current)
            current = ""
    words.append(current)
    return words
