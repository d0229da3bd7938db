#!/usr/bin/env python3
"""AWS CDK entrypoint for provisioning the topology.

Reads the topology configuration named by the ``config`` context value
(``cdk synth -c config=path/to/topology.yaml``) and synthesizes a single
`TopologyStack` into the deployment environment sourced from the CDK CLI
defaults. Configuration and planning errors, and any branch that fails to
provision, abort the synth with exit status 1.
"""
import os
import sys

import attrs
import aws_cdk as cdk
from aws_cdk import Environment
from aws_lambda_powertools import Logger

import common.constants as constants
from networking.topology_stack import TopologyStack
from topology.config import load_config
from topology.errors import TopologyError

logger = Logger(service=constants.SERVICE_NAME, level=os.getenv("LOG_LEVEL", "INFO"))

app = cdk.App()

env = Environment(
    account=os.getenv("CDK_DEFAULT_ACCOUNT"),
    region=os.getenv("CDK_DEFAULT_REGION"),
)

try:
    config = load_config(app.node.try_get_context("config") or constants.DEFAULT_CONFIG_FILE)
    environment = app.node.try_get_context("environment")
    if environment:
        config = attrs.evolve(config, environment=environment)
    if config.region is None and env.region:
        config = attrs.evolve(config, region=env.region)
    stack = TopologyStack(app, "TopologyStack", config=config, env=env)
except TopologyError as e:
    logger.error("Topology could not be planned", error=str(e))
    sys.exit(1)

if not stack.result.ok:
    for line in stack.result.diagnostics():
        logger.error(line)
    sys.exit(1)

app.synth()
