"""Instance bootstrap (user data) rendering for the compute tier."""

from textwrap import dedent

import common.constants as constants
from topology.config import DatabaseConfig


def split_endpoint(endpoint: str, default_port: int = constants.MYSQL_PORT) -> tuple[str, str]:
    """Split a ``host:port`` endpoint on its last colon.

    >>> split_endpoint("db.internal:3306")
    ('db.internal', '3306')
    >>> split_endpoint("db.internal")
    ('db.internal', '3306')
    """
    host, separator, port = endpoint.rpartition(":")
    if not separator or not host or not port:
        return endpoint, str(default_port)
    return host, port


def render_user_data(endpoint: str, topic_arn: str, database: DatabaseConfig) -> str:
    """Render the shell script that writes the application's database config.

    The endpoint and topic identifier are written verbatim, alongside the host
    and port split out of the endpoint.
    """
    host, port = split_endpoint(endpoint, database.port)
    config_file = constants.BOOTSTRAP_CONFIG_FILE
    return dedent(
        f"""\
        #!/bin/bash
        ENV_FILE="{config_file}"
        echo user: {database.username} >> ${{ENV_FILE}}
        echo password: {database.password} >> ${{ENV_FILE}}
        echo host: "{host}" >> ${{ENV_FILE}}
        echo port: {port} >> ${{ENV_FILE}}
        echo endpoint: "{endpoint}" >> ${{ENV_FILE}}
        echo db: {database.name} >> ${{ENV_FILE}}
        echo snsarn: "{topic_arn}" >> ${{ENV_FILE}}
        sudo chown {database.username}:{database.username} $ENV_FILE
        chmod 664 $ENV_FILE
        sudo /opt/aws/amazon-cloudwatch-agent/bin/amazon-cloudwatch-agent-ctl -a fetch-config -m ec2 -c {constants.CLOUDWATCH_AGENT_CONFIG} -s
        """
    )
