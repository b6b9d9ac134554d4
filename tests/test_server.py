# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License"). You may not use this file except in compliance
# with the License. A copy of the License is located at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# or in the 'license' file accompanying this file. This file is distributed on an 'AS IS' BASIS, WITHOUT WARRANTIES
# OR CONDITIONS OF ANY KIND, express or implied. See the License for the specific language governing permissions
# and limitations under the License.
"""Tests for the RDS provisioner MCP Server."""

import json
import pytest
from unittest.mock import MagicMock, patch
from conftest import create_client_error, create_mock_cluster, mock_paginator
from awslabs.rds_provisioner_mcp_server import server
from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import (
    CLUSTER_NOT_FOUND,
    SUBNET_GROUP_INVALID_STATE,
)
from awslabs.rds_provisioner_mcp_server.job_status_map import JobStatusMap
from awslabs.rds_provisioner_mcp_server.poller import RetryPolicy


class InlineThread:
    """Runs the worker on start() so jobs finish before the tool returns."""

    def __init__(self, target, args=(), daemon=None):
        self.target = target
        self.args = args

    def start(self):
        self.target(*self.args)


@pytest.fixture
def server_context(mock_session):
    context = MagicMock()
    context.session = mock_session
    context.config.region = "us-east-1"
    context.public_ip = "203.0.113.7"
    with patch.object(server, "provisioner_context", context), \
            patch.object(server, "job_status_map", JobStatusMap()), \
            patch("awslabs.rds_provisioner_mcp_server.server.threading.Thread", InlineThread):
        yield context


def test_tools_need_context():
    with patch.object(server, "provisioner_context", None):
        response = json.loads(server.describe_cluster("test-cluster"))

    assert response["status"] == "Failed"
    assert "not initialized" in response["error"]


def test_create_cluster_job(server_context, mock_rds_client):
    response = json.loads(server.create_cluster(cluster_identifier="test-cluster", engine_version="16.4"))

    assert response["status"] == "Pending"
    assert response["cluster_identifier"] == "test-cluster"

    status = server.get_job_status(response["job_id"])
    assert status["state"] == "succeeded"
    assert status["result"]["endpoint"] == "test-cluster.cluster-abc123.us-east-1.rds.amazonaws.com"
    assert "master_user_password" not in status["result"]

    cluster_call_kwargs = mock_rds_client.create_db_cluster.call_args[1]
    assert cluster_call_kwargs["EngineVersion"] == "16.4"
    assert cluster_call_kwargs["DatabaseName"] == "postgres"


def test_create_cluster_job_failure(server_context, mock_rds_client):
    mock_rds_client.create_db_cluster.side_effect = create_client_error(
        "DBClusterAlreadyExistsFault", "exists", status_code=409)

    response = json.loads(server.create_cluster(cluster_identifier="test-cluster"))

    status = server.get_job_status(response["job_id"])
    assert status["state"] == "failed"
    assert "DBClusterAlreadyExistsFault" in status["result"]


def test_create_cluster_invalid_options(server_context):
    response = json.loads(server.create_cluster(cluster_identifier="test-cluster", allocated_storage="lots"))

    assert response["status"] == "Failed"


def test_get_job_status_unknown(server_context):
    assert server.get_job_status("nope") == {"state": "not_found"}


def test_describe_cluster(server_context):
    response = json.loads(server.describe_cluster("test-cluster"))

    assert response["db_cluster_identifier"] == "test-cluster"
    assert response["status"] == "available"
    assert response["port"] == 5432


def test_describe_deleted_cluster(server_context, mock_rds_client):
    mock_rds_client.describe_db_clusters.side_effect = create_client_error(CLUSTER_NOT_FOUND, status_code=404)

    response = json.loads(server.describe_cluster("test-cluster"))

    assert response == {"db_cluster_identifier": "test-cluster", "status": "deleted"}


def test_await_cluster_status(server_context, mock_rds_client):
    mock_rds_client.describe_db_clusters.return_value = {
        "DBClusters": [create_mock_cluster(status="available")]}

    response = json.loads(server.await_cluster_status("test-cluster", "available", timeout_seconds=1.0))

    assert response["status"] == "Completed"


def test_await_cluster_status_timeout(server_context, mock_rds_client):
    mock_rds_client.describe_db_clusters.return_value = {
        "DBClusters": [create_mock_cluster(status="creating")]}

    with patch.object(server, "CLUSTER_STATUS_POLICY", RetryPolicy(retry_interval=0.01, timeout=60.0)):
        response = json.loads(server.await_cluster_status("test-cluster", "available", timeout_seconds=0.05))

    assert response["status"] == "Failed"
    assert "Timed out" in response["error"]


def test_await_cluster_status_invalid_timeout(server_context, mock_rds_client):
    response = json.loads(server.await_cluster_status("test-cluster", "available", timeout_seconds=0))

    assert response["status"] == "Failed"
    assert "timeout must be > 0" in response["error"]
    mock_rds_client.describe_db_clusters.assert_not_called()


def test_delete_cluster_job(server_context, mock_rds_client):
    response = json.loads(server.delete_cluster("test-cluster"))

    assert server.get_job_status(response["job_id"])["state"] == "succeeded"
    mock_rds_client.delete_db_cluster.assert_called_once_with(
        DBClusterIdentifier="test-cluster", SkipFinalSnapshot=True)


def test_teardown(server_context, mock_rds_client):
    paginators = {
        "describe_db_clusters": mock_paginator(
            [{"DBClusters": [{"DBClusterIdentifier": "c1"}, {"DBClusterIdentifier": "c2"}]}]),
        "describe_db_subnet_groups": mock_paginator(
            [{"DBSubnetGroups": [{"DBSubnetGroupName": "rds-provisioner-db-subnet"}]}]),
    }
    mock_rds_client.get_paginator.side_effect = lambda operation: paginators[operation]
    mock_rds_client.delete_db_subnet_group.side_effect = create_client_error(SUBNET_GROUP_INVALID_STATE)

    response = json.loads(server.teardown())

    assert [(r["identifier"], r["outcome"]) for r in response] == [
        ("c1", "deleted"),
        ("c2", "deleted"),
        ("rds-provisioner-db-subnet", "invalid-state"),
    ]


def test_main_builds_context_once():
    context = MagicMock()
    context.config.region = "eu-west-1"

    with patch.object(server, "provisioner_context", None), \
            patch("sys.argv", ["server", "--profile", "staging", "--region", "eu-west-1", "--log-level", "debug"]), \
            patch.object(server.ProvisionerContext, "from_config", return_value=context) as from_config, \
            patch.object(server.mcp, "run") as run, \
            patch.object(server, "logger"):
        server.main()
        assert server.provisioner_context is context

    from_config.assert_called_once_with(profile="staging", region="eu-west-1")
    run.assert_called_once()
