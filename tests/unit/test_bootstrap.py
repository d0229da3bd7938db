import pytest

from topology.bootstrap import render_user_data, split_endpoint
from topology.config import DatabaseConfig


@pytest.mark.parametrize(
    "endpoint,expected",
    [
        ("db.internal:3306", ("db.internal", "3306")),
        ("db.internal", ("db.internal", "3306")),
        ("db.internal:", ("db.internal:", "3306")),
        ("10.0.32.5:5432", ("10.0.32.5", "5432")),
    ],
)
def test_split_endpoint(endpoint, expected):
    assert split_endpoint(endpoint) == expected


def test_user_data_contains_connection_settings():
    database = DatabaseConfig(name="appdb", username="app", password="s3cret")

    script = render_user_data("db.internal:3306", "arn:example:topic:1", database)

    assert script.startswith("#!/bin/bash\n")
    assert 'echo endpoint: "db.internal:3306" >> ${ENV_FILE}' in script
    assert 'echo snsarn: "arn:example:topic:1" >> ${ENV_FILE}' in script
    assert 'echo host: "db.internal" >> ${ENV_FILE}' in script
    assert "echo port: 3306 >> ${ENV_FILE}" in script
    assert "echo user: app >> ${ENV_FILE}" in script
    assert "echo password: s3cret >> ${ENV_FILE}" in script
    assert "echo db: appdb >> ${ENV_FILE}" in script
    assert "sudo chown app:app $ENV_FILE" in script
    assert "amazon-cloudwatch-agent-ctl" in script
