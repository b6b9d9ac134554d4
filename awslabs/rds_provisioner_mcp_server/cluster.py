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

"""RDS cluster creation, status polling and deletion."""

import threading
import time
from typing import Callable, Dict, List, Optional
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import (
    CLUSTER_NOT_FOUND,
    CallStatus,
    ControlPlaneClient,
    ProviderError,
)
from awslabs.rds_provisioner_mcp_server.poller import RetryPolicy, poll
from awslabs.rds_provisioner_mcp_server.reconcile import (
    DEFAULT_TAG,
    default_vpc_id,
    ensure_public_security_group,
    ensure_subnet_group,
)

CREATING = 'creating'
AVAILABLE = 'available'
DELETING = 'deleting'
# RDS has no status for a cluster that no longer exists; we call it this.
DELETED = 'deleted'

DEFAULT_PORT = 5432

# Creating a cluster really does take up to 20 minutes.
CLUSTER_STATUS_POLICY = RetryPolicy(retry_interval=5.0, log_interval=30.0, timeout=20 * 60.0)


def _default_identifier() -> str:
    return f'rds-provisioner-{int(time.time() * 1000)}'


class ClusterSpec(BaseModel):
    """Desired cluster configuration. Every default for CreateDBCluster lives here."""

    model_config = ConfigDict(frozen=True)

    identifier: str = Field(default_factory=_default_identifier)
    engine: str = 'postgres'
    database_name: str = 'postgres'
    allocated_storage: int = 32
    storage_type: str = 'gp3'
    iops: Optional[int] = None
    db_cluster_instance_class: str = 'db.m6id.large'
    db_subnet_group_name: str = 'rds-provisioner-db-subnet'
    engine_version: str = '17.4'
    master_username: str = 'provisioner'
    master_user_password: str = 'provisionerpw'
    publicly_accessible: bool = True
    port: Optional[int] = None
    tags: List[Dict[str, str]] = Field(default_factory=lambda: [dict(DEFAULT_TAG)])
    vpc_id: Optional[str] = None
    security_group_id: Optional[str] = None
    public_security_group: bool = False


class CreateClusterRequest(BaseModel):
    """CreateDBCluster parameters. Optional members are left out of the call when unset."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    db_cluster_identifier: str = Field(alias='DBClusterIdentifier')
    engine: str = Field(alias='Engine')
    storage_type: str = Field(alias='StorageType')
    allocated_storage: int = Field(alias='AllocatedStorage')
    database_name: str = Field(alias='DatabaseName')
    db_cluster_instance_class: str = Field(alias='DBClusterInstanceClass')
    db_subnet_group_name: str = Field(alias='DBSubnetGroupName')
    engine_version: str = Field(alias='EngineVersion')
    master_username: str = Field(alias='MasterUsername')
    master_user_password: str = Field(alias='MasterUserPassword')
    publicly_accessible: bool = Field(alias='PubliclyAccessible')
    tags: List[Dict[str, str]] = Field(alias='Tags')
    port: Optional[int] = Field(default=None, alias='Port')
    iops: Optional[int] = Field(default=None, alias='Iops')
    vpc_security_group_ids: Optional[List[str]] = Field(default=None, alias='VpcSecurityGroupIds')

    @classmethod
    def from_spec(cls, spec: ClusterSpec, security_group_ids: Optional[List[str]] = None) -> 'CreateClusterRequest':
        return cls(
            db_cluster_identifier=spec.identifier,
            engine=spec.engine,
            storage_type=spec.storage_type,
            allocated_storage=spec.allocated_storage,
            database_name=spec.database_name,
            db_cluster_instance_class=spec.db_cluster_instance_class,
            db_subnet_group_name=spec.db_subnet_group_name,
            engine_version=spec.engine_version,
            master_username=spec.master_username,
            master_user_password=spec.master_user_password,
            publicly_accessible=spec.publicly_accessible,
            tags=spec.tags,
            port=spec.port,
            iops=spec.iops,
            vpc_security_group_ids=security_group_ids or None)

    def to_params(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class ClusterRecord(BaseModel):
    """Snapshot of a cluster as the control plane describes it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra='ignore')

    db_cluster_identifier: str = Field(alias='DBClusterIdentifier')
    status: Optional[str] = Field(default=None, alias='Status')
    endpoint: Optional[str] = Field(default=None, alias='Endpoint')
    reader_endpoint: Optional[str] = Field(default=None, alias='ReaderEndpoint')
    port: Optional[int] = Field(default=None, alias='Port')
    engine: Optional[str] = Field(default=None, alias='Engine')
    engine_version: Optional[str] = Field(default=None, alias='EngineVersion')
    allocated_storage: Optional[int] = Field(default=None, alias='AllocatedStorage')
    storage_type: Optional[str] = Field(default=None, alias='StorageType')
    iops: Optional[int] = Field(default=None, alias='Iops')
    db_cluster_instance_class: Optional[str] = Field(default=None, alias='DBClusterInstanceClass')
    db_subnet_group: Optional[str] = Field(default=None, alias='DBSubnetGroup')
    master_username: Optional[str] = Field(default=None, alias='MasterUsername')
    database_name: Optional[str] = Field(default=None, alias='DatabaseName')
    publicly_accessible: Optional[bool] = Field(default=None, alias='PubliclyAccessible')
    # Never echoed by the control plane; filled in from the ClusterSpec.
    master_user_password: Optional[str] = None

    @classmethod
    def from_response(cls, cluster: dict) -> 'ClusterRecord':
        return cls.model_validate(cluster)


class WaitingForClusterStatus(Exception):
    """The cluster is not in the expected status yet."""

    def __init__(self, identifier: str, expected: str, actual: str):
        super().__init__(f'Cluster {identifier} is {actual}, waiting for {expected}')
        self.identifier = identifier
        self.expected = expected
        self.actual = actual


class ClusterLifecycle:
    """Creates clusters and blocks until the control plane reports them in a given status."""

    def __init__(
        self,
        client: ControlPlaneClient,
        policy: RetryPolicy = CLUSTER_STATUS_POLICY,
        cancel: Optional[threading.Event] = None,
        public_ip: Optional[Callable[[], str]] = None,
    ):
        self.client = client
        self.policy = policy
        self.cancel = cancel
        self.public_ip = public_ip

    def status(self, identifier: str) -> str:
        """Current status of the cluster, or DELETED if the control plane has no such cluster."""
        result = self.client.attempt('rds', 'describe_db_clusters', DBClusterIdentifier=identifier)
        if result.status == CallStatus.NOT_FOUND:
            return DELETED
        clusters = result.unwrap().get('DBClusters', [])
        if not clusters:
            return DELETED
        return clusters[0]['Status']

    def describe(self, identifier: str) -> ClusterRecord:
        response = self.client.invoke('rds', 'describe_db_clusters', DBClusterIdentifier=identifier)
        clusters = response.get('DBClusters', [])
        if not clusters:
            raise ProviderError(
                category='not-found',
                code=CLUSTER_NOT_FOUND,
                message=f'Cluster {identifier} not found',
                operation='describe_db_clusters')
        logger.debug(f'Cluster {identifier}: {clusters[0]}')
        return ClusterRecord.from_response(clusters[0])

    def await_status(self, target: str, identifier: str) -> str:
        """
        Block until the cluster's status is target. Use DELETED to wait for it to be gone.

        Returns:
            The cluster identifier

        Raises:
            PollTimeoutError: if the status does not reach target within the policy timeout
            Interrupted: if the lifecycle's cancel event is set
        """
        def check() -> str:
            status = self.status(identifier)
            logger.info(f'Cluster {identifier} status:{status}')
            if status != target:
                raise WaitingForClusterStatus(identifier, target, status)
            return identifier

        poll(check, self.policy,
             log_message=f'Waiting for {identifier} to become {target}',
             cancel=self.cancel)
        return identifier

    def create(self, spec: ClusterSpec) -> ClusterRecord:
        """
        Create a cluster and wait for it to become available.

        Ensures the subnet group (and, when requested, the public security
        group) first. If waiting times out the cluster is left behind; run a
        teardown to remove it.

        Returns:
            The described cluster, including endpoints, port and the master password
        """
        vpc_id = spec.vpc_id or default_vpc_id(self.client)
        ensure_subnet_group(self.client, spec.db_subnet_group_name, vpc_id, spec.tags)

        security_group_ids = []
        if spec.security_group_id:
            security_group_ids.append(spec.security_group_id)
        if spec.public_security_group:
            if self.public_ip is None:
                raise ValueError('public_security_group requires a public IP lookup')
            handle = ensure_public_security_group(
                self.client, vpc_id, self.public_ip(), spec.port or DEFAULT_PORT, tags=spec.tags)
            security_group_ids.append(handle.resource_id)

        request = CreateClusterRequest.from_spec(spec, security_group_ids)
        logger.info(f'Creating DB cluster {spec.identifier} '
                    f'engine:{spec.engine} engine_version:{spec.engine_version} '
                    f'instance_class:{spec.db_cluster_instance_class} '
                    f'subnet_group:{spec.db_subnet_group_name}')
        try:
            response = self.client.invoke('rds', 'create_db_cluster', **request.to_params())
        except ProviderError as e:
            logger.error(f'AWS error creating cluster {spec.identifier}: {e.code} - {e.message}')
            raise

        identifier = response['DBCluster']['DBClusterIdentifier']
        start = time.time()
        self.await_status(AVAILABLE, identifier)
        logger.success(f'Cluster {identifier} available after {time.time() - start:.2f} seconds')

        record = self.describe(identifier)
        return record.model_copy(update={'master_user_password': spec.master_user_password})

    def delete(self, identifier: str, wait: bool = False) -> str:
        """Delete a cluster without a final snapshot, optionally waiting until it is gone."""
        logger.info(f'Deleting DB cluster {identifier}')
        self.client.invoke('rds', 'delete_db_cluster',
                           DBClusterIdentifier=identifier,
                           SkipFinalSnapshot=True)
        if wait:
            self.await_status(DELETED, identifier)
        return identifier
