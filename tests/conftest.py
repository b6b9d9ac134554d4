import pytest
from typing import Dict, List, Optional
from unittest.mock import MagicMock, patch
from botocore.exceptions import ClientError
from loguru import logger

from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import ControlPlaneClient


def create_client_error(
    error_code: str,
    message: str = "Test error",
    status_code: int = 400,
    operation_name: str = "TestOperation"
) -> ClientError:
    """Create a botocore ClientError like the one boto3 raises for a fault."""
    return ClientError(
        error_response={
            "Error": {
                "Code": error_code,
                "Message": message
            },
            "ResponseMetadata": {"HTTPStatusCode": status_code}
        },
        operation_name=operation_name
    )


def create_mock_cluster(
    cluster_id: str = "test-cluster",
    status: str = "available",
) -> Dict:
    """Create a mock DBClusters entry."""
    return {
        "DBClusterIdentifier": cluster_id,
        "DBClusterArn": f"arn:aws:rds:us-east-1:123456789012:cluster:{cluster_id}",
        "Status": status,
        "Endpoint": f"{cluster_id}.cluster-abc123.us-east-1.rds.amazonaws.com",
        "ReaderEndpoint": f"{cluster_id}.cluster-ro-abc123.us-east-1.rds.amazonaws.com",
        "Port": 5432,
        "Engine": "postgres",
        "EngineVersion": "17.4",
        "AllocatedStorage": 32,
        "StorageType": "gp3",
        "DBClusterInstanceClass": "db.m6id.large",
        "DBSubnetGroup": "rds-provisioner-db-subnet",
        "MasterUsername": "provisioner",
        "DatabaseName": "postgres",
        "PubliclyAccessible": True,
    }


def create_mock_vpcs() -> Dict:
    return {
        "Vpcs": [
            {"VpcId": "vpc-other", "IsDefault": False},
            {"VpcId": "vpc-default", "IsDefault": True},
        ]
    }


def create_mock_subnets(vpc_id: str = "vpc-default") -> Dict:
    return {
        "Subnets": [
            {"SubnetId": "subnet-a", "VpcId": vpc_id, "DefaultForAz": True},
            {"SubnetId": "subnet-b", "VpcId": vpc_id, "DefaultForAz": True},
            {"SubnetId": "subnet-private", "VpcId": vpc_id, "DefaultForAz": False},
        ]
    }


def mock_paginator(pages: List[Dict], side_effect: Optional[Exception] = None) -> MagicMock:
    paginator = MagicMock()
    if side_effect is not None:
        paginator.paginate.side_effect = side_effect
    else:
        paginator.paginate.return_value = iter(pages)
    return paginator


@pytest.fixture
def mock_rds_client():
    """Create a mock RDS client with default successful responses."""
    client = MagicMock()
    client.describe_db_clusters.return_value = {"DBClusters": [create_mock_cluster()]}
    client.create_db_cluster.return_value = {"DBCluster": create_mock_cluster(status="creating")}
    client.delete_db_cluster.return_value = {"DBCluster": create_mock_cluster(status="deleting")}
    client.describe_db_subnet_groups.return_value = {
        "DBSubnetGroups": [{
            "DBSubnetGroupName": "rds-provisioner-db-subnet",
            "DBSubnetGroupArn": "arn:aws:rds:us-east-1:123456789012:subgrp:rds-provisioner-db-subnet",
        }]
    }
    client.create_db_subnet_group.return_value = {
        "DBSubnetGroup": {
            "DBSubnetGroupName": "rds-provisioner-db-subnet",
            "DBSubnetGroupArn": "arn:aws:rds:us-east-1:123456789012:subgrp:rds-provisioner-db-subnet",
        }
    }
    client.delete_db_subnet_group.return_value = {}
    return client


@pytest.fixture
def mock_ec2_client():
    """Create a mock EC2 client with a default VPC and its subnets."""
    client = MagicMock()
    client.describe_vpcs.return_value = create_mock_vpcs()
    client.describe_subnets.return_value = create_mock_subnets()
    client.describe_security_groups.return_value = {"SecurityGroups": []}
    client.create_security_group.return_value = {"GroupId": "sg-123"}
    client.authorize_security_group_ingress.return_value = {"Return": True}
    return client


@pytest.fixture
def mock_session(mock_rds_client, mock_ec2_client):
    session = MagicMock()
    session.client.side_effect = lambda service: {
        "rds": mock_rds_client,
        "ec2": mock_ec2_client,
    }[service]
    return session


@pytest.fixture
def control_plane_client(mock_session):
    return ControlPlaneClient(mock_session)


@pytest.fixture
def mock_logger():
    """Mock loguru logger in the poller module."""
    with patch("awslabs.rds_provisioner_mcp_server.poller.logger") as mock:
        yield mock


@pytest.fixture
def log_lines():
    """Capture every loguru message, DEBUG and up, as plain text."""
    lines = []
    handler_id = logger.add(lines.append, level="DEBUG", format="{message}")
    yield lines
    logger.remove(handler_id)
