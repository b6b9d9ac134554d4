# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""awslabs RDS provisioner MCP Server implementation."""

import argparse
import json
import os
import sys
import threading
import traceback

from awslabs.rds_provisioner_mcp_server.cluster import (
    CLUSTER_STATUS_POLICY,
    DELETED,
    ClusterLifecycle,
    ClusterSpec,
)
from awslabs.rds_provisioner_mcp_server.connection.config import ProvisionerContext
from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import (
    ControlPlaneClient,
    ProviderError,
    create_control_plane_client,
)
from awslabs.rds_provisioner_mcp_server.job_status_map import JobStatusMap
from awslabs.rds_provisioner_mcp_server.poller import RetryPolicy
from awslabs.rds_provisioner_mcp_server.teardown import teardown as teardown_all
from loguru import logger
from mcp.server.fastmcp import FastMCP
from pydantic import Field
from typing import Annotated, Optional
from datetime import datetime


job_status_map = JobStatusMap()
provisioner_context: Optional[ProvisionerContext] = None


mcp = FastMCP(
    'rds-provisioner',
    instructions='Provisions and tears down RDS database clusters for test runs')


def get_control_plane_client() -> ControlPlaneClient:
    if provisioner_context is None:
        raise ValueError('Provisioner context is not initialized, start the server through main()')
    return create_control_plane_client(provisioner_context)


def get_lifecycle(policy: RetryPolicy = CLUSTER_STATUS_POLICY) -> ClusterLifecycle:
    context = provisioner_context
    return ClusterLifecycle(
        get_control_plane_client(),
        policy=policy,
        public_ip=lambda: context.public_ip)


def failed_response(e: Exception) -> str:
    return json.dumps({"status": "Failed", "error": str(e)}, indent=2)


def start_job(kind: str, cluster_identifier: str, target, *args) -> str:
    job_id = f"{kind}-{cluster_identifier}-{datetime.now().isoformat(timespec='milliseconds')}"
    job_status_map.start(job_id)

    t = threading.Thread(target=target, args=(job_id, *args), daemon=False)
    t.start()
    return job_id


@mcp.tool(
    name='create_cluster',
    description='Create an RDS cluster and wait in the background until it is available')
def create_cluster(
    cluster_identifier: Annotated[Optional[str], Field(description='cluster identifier')] = None,
    database: Annotated[Optional[str], Field(description='default database name')] = None,
    engine_version: Annotated[Optional[str], Field(description='engine version')] = None,
    db_cluster_instance_class: Annotated[Optional[str], Field(description='DB instance class')] = None,
    allocated_storage: Annotated[Optional[int], Field(description='storage in GB')] = None,
    storage_type: Annotated[Optional[str], Field(description='storage type')] = None,
    iops: Annotated[Optional[int], Field(description='provisioned IOPS')] = None,
    db_subnet_group_name: Annotated[Optional[str], Field(description='DB subnet group name')] = None,
    publicly_accessible: Annotated[Optional[bool], Field(description='publicly accessible')] = None,
    public_security_group: Annotated[bool, Field(description='admit this machine\'s public IP')] = False) -> str:

    """Start a background job that creates an RDS cluster

    Args:
        cluster_identifier: cluster identifier, generated when omitted
        database: database name
        engine_version: engine version
        db_cluster_instance_class: DB instance class
        allocated_storage: storage in GB
        storage_type: storage type
        iops: provisioned IOPS
        db_subnet_group_name: DB subnet group name
        publicly_accessible: whether the cluster gets a public endpoint
        public_security_group: attach a security group admitting this machine's public IP

    Returns:
        job ticket
    """
    options = {
        'identifier': cluster_identifier,
        'database_name': database,
        'engine_version': engine_version,
        'db_cluster_instance_class': db_cluster_instance_class,
        'allocated_storage': allocated_storage,
        'storage_type': storage_type,
        'iops': iops,
        'db_subnet_group_name': db_subnet_group_name,
        'publicly_accessible': publicly_accessible,
        'public_security_group': public_security_group,
    }

    try:
        spec = ClusterSpec(**{k: v for k, v in options.items() if v is not None})
        job_id = start_job('create-cluster', spec.identifier, create_cluster_worker, spec)
    except Exception as e:
        logger.error(f"create_cluster failed with error: {e}")
        return failed_response(e)

    logger.info(f"create_cluster return with job_id:{job_id} cluster_identifier:{spec.identifier}")

    return json.dumps({
            "status": "Pending",
            "message": "cluster creation started",
            "job_id": job_id,
            "cluster_identifier": spec.identifier,
            "check_status_tool": "get_job_status",
            "next_action": f"Use get_job_status(job_id='{job_id}') to get results"
    }, indent=2)


@mcp.tool(
    name='delete_cluster',
    description='Delete an RDS cluster without a final snapshot')
def delete_cluster(
    cluster_identifier: Annotated[str, Field(description='cluster identifier')],
    wait: Annotated[bool, Field(description='wait until the cluster is gone')] = False) -> str:

    """Start a background job to delete an RDS cluster

    Args:
        cluster_identifier: cluster identifier
        wait: whether the job waits until the cluster no longer exists

    Returns:
         job ticket
    """
    try:
        job_id = start_job('delete-cluster', cluster_identifier, delete_cluster_worker, cluster_identifier, wait)
    except Exception as e:
        logger.error(f"delete_cluster failed with error: {e}")
        return failed_response(e)

    logger.info(f"delete_cluster return with job_id:{job_id} cluster_identifier:{cluster_identifier} wait:{wait}")

    return json.dumps({
            "status": "Pending",
            "message": "cluster deletion started",
            "job_id": job_id,
            "check_status_tool": "get_job_status",
            "next_action": f"Use get_job_status(job_id='{job_id}') to get results"
    }, indent=2)


@mcp.tool(
    name='get_job_status',
    description='get background job status')
def get_job_status(job_id: str) -> dict:

    """Get background job status

    Args:
        job_id: job id
    Returns:
        job status
    """
    return job_status_map.get(job_id)


@mcp.tool(
    name='describe_cluster',
    description='Describe an RDS cluster')
def describe_cluster(
    cluster_identifier: Annotated[str, Field(description='cluster identifier')]) -> str:

    """Describe an RDS cluster, reporting status deleted if it does not exist"""
    try:
        record = get_lifecycle().describe(cluster_identifier)
        return json.dumps(record.model_dump(mode='json', exclude={'master_user_password'}), indent=2)
    except ProviderError as e:
        if e.not_found:
            return json.dumps({"db_cluster_identifier": cluster_identifier, "status": DELETED}, indent=2)
        logger.error(f"describe_cluster failed with error: {e}")
        return failed_response(e)
    except Exception as e:
        logger.error(f"describe_cluster failed with error: {e}")
        return failed_response(e)


@mcp.tool(
    name='await_cluster_status',
    description='Block until an RDS cluster reaches a status')
def await_cluster_status(
    cluster_identifier: Annotated[str, Field(description='cluster identifier')],
    target_status: Annotated[str, Field(description='status to wait for, or deleted')] = 'available',
    timeout_seconds: Annotated[float, Field(description='how long to wait')] = CLUSTER_STATUS_POLICY.timeout) -> str:

    """Block until the cluster reaches target_status

    Args:
        cluster_identifier: cluster identifier
        target_status: status to wait for; deleted waits for the cluster to disappear
        timeout_seconds: how long to wait before giving up

    Returns:
        result
    """
    try:
        policy = RetryPolicy(
            retry_interval=CLUSTER_STATUS_POLICY.retry_interval,
            log_interval=CLUSTER_STATUS_POLICY.log_interval,
            timeout=timeout_seconds)
        get_lifecycle(policy).await_status(target_status, cluster_identifier)
    except Exception as e:
        logger.error(f"await_cluster_status failed with error: {e}")
        return failed_response(e)

    return json.dumps({
            "status": "Completed",
            "cluster_identifier": cluster_identifier,
            "cluster_status": target_status
    }, indent=2)


@mcp.tool(
    name='teardown',
    description='Delete every RDS cluster and every unused DB subnet group')
def teardown() -> str:

    """Delete all clusters, then all subnet groups that are no longer referenced

    Returns:
        per-resource outcomes
    """
    try:
        results = teardown_all(get_control_plane_client())
    except Exception as e:
        logger.error(f"teardown failed with error: {e}")
        logger.error(f"Trace:{traceback.format_exc()}")
        return failed_response(e)

    return json.dumps([r.to_dict() for r in results], indent=2)


def create_cluster_worker(job_id: str, spec: ClusterSpec):
    try:
        record = get_lifecycle().create(spec)
        job_status_map.succeed(
            job_id, record.model_dump(mode='json', exclude={'master_user_password'}))
    except Exception as e:
        logger.error(f"create_cluster_worker failed with {e}")
        logger.error(f"Trace:{traceback.format_exc()}")
        job_status_map.fail(job_id, str(e))


def delete_cluster_worker(job_id: str, cluster_identifier: str, wait: bool):
    try:
        get_lifecycle().delete(cluster_identifier, wait=wait)
        job_status_map.succeed(job_id, {"cluster_identifier": cluster_identifier})
    except Exception as e:
        logger.error(f"delete_cluster_worker failed with {e}")
        job_status_map.fail(job_id, str(e))


def main():

    """
    Main entry point for the MCP server application.

    Loads AWS configuration once, then serves provisioning tools.
    """
    global provisioner_context

    parser = argparse.ArgumentParser(
        description='An AWS Labs Model Context Protocol (MCP) server for provisioning RDS clusters'
    )

    parser.add_argument('--profile', help='AWS profile, defaulting to AWS_PROFILE or boto3\'s credential chain')
    parser.add_argument('--region', help='AWS region, overriding the profile')
    parser.add_argument('--log-level',
                        default=os.environ.get('RDS_PROVISIONER_LOG_LEVEL', 'INFO'),
                        help='Log level (default: INFO)')

    args = parser.parse_args()

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    provisioner_context = ProvisionerContext.from_config(profile=args.profile, region=args.region)

    logger.info(f"MCP configuration:\n"
                f"profile:{args.profile}\n"
                f"region:{provisioner_context.config.region}\n"
                f"log_level:{args.log_level}\n")

    logger.info('RDS provisioner MCP server started')
    mcp.run()
    logger.info('RDS provisioner MCP server stopped')


if __name__ == '__main__':
    main()
