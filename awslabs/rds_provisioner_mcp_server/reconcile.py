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

"""Ensure-exists reconciliation for the network resources a cluster depends on."""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from loguru import logger

from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import (
    SECURITY_GROUP_NOT_FOUND,
    CallResult,
    CallStatus,
    ControlPlaneClient,
    ProviderError,
)

DEFAULT_TAG = {'Key': 'CreatedBy', 'Value': 'rds-provisioner'}
PUBLIC_SECURITY_GROUP = 'rds-provisioner-public-sg'
SUBNET_GROUP_DESCRIPTION = 'Automatically created by rds-provisioner'


@dataclass(frozen=True)
class ResourceHandle:
    kind: str
    name: str
    resource_id: Optional[str] = None
    created: bool = False


def ensure(
    name: str,
    describer: Callable[[str], CallResult],
    creator: Callable[[str], ResourceHandle],
    kind: str = 'resource',
) -> ResourceHandle:
    """
    Return a handle to the named resource, creating it only if it does not exist.

    An existing resource is returned as is; it is not compared against what
    creator would have built. Nothing is locked, so two callers racing on the
    same name can both see it missing and both try to create it.

    Args:
        name: resource name
        describer: looks the resource up, returning a CallResult
        creator: creates the resource and returns its handle
        kind: resource kind, for logging and the returned handle

    Raises:
        ProviderError: any describe fault other than not found, or any create fault
    """
    result = describer(name)
    if result.status == CallStatus.OK:
        logger.info(f'{kind} {name} already exists')
        return ResourceHandle(kind=kind, name=name, resource_id=_resource_id(result.value))
    if result.status == CallStatus.NOT_FOUND:
        logger.info(f'{kind} {name} not found, creating it')
        return creator(name)
    logger.error(f'Error describing {kind} {name}: {result.error.code} - {result.error.message}')
    raise result.error


def _resource_id(value: Optional[dict]) -> Optional[str]:
    if not value:
        return None
    groups = value.get('SecurityGroups')
    if groups:
        return groups[0].get('GroupId')
    subnet_groups = value.get('DBSubnetGroups')
    if subnet_groups:
        return subnet_groups[0].get('DBSubnetGroupArn')
    return None


def default_vpc_id(client: ControlPlaneClient) -> str:
    """Id of the account's default VPC. If there are several we take the first."""
    vpcs = client.invoke('ec2', 'describe_vpcs').get('Vpcs', [])
    vpc = next((v for v in vpcs if v.get('IsDefault')), None)
    if vpc is None:
        raise ValueError(f'No default VPC found! Vpcs: {vpcs}')
    return vpc['VpcId']


def default_subnet_ids(client: ControlPlaneClient, vpc_id: str) -> List[str]:
    """Ids of the default-for-AZ subnets in a VPC."""
    subnets = client.invoke(
        'ec2', 'describe_subnets',
        Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]}]).get('Subnets', [])
    return [s['SubnetId'] for s in subnets if s.get('DefaultForAz')]


def ensure_subnet_group(
    client: ControlPlaneClient,
    name: str,
    vpc_id: str,
    tags: Optional[List[Dict[str, str]]] = None,
) -> ResourceHandle:
    """Make sure the DB subnet group exists, spanning the VPC's default subnets."""
    tags = tags if tags is not None else [DEFAULT_TAG]

    def describe(n: str) -> CallResult:
        return client.attempt('rds', 'describe_db_subnet_groups', DBSubnetGroupName=n)

    def create(n: str) -> ResourceHandle:
        subnet_ids = default_subnet_ids(client, vpc_id)
        logger.info(f'Creating DB Subnet Group {n} in vpc:{vpc_id} subnets:{subnet_ids}')
        response = client.invoke(
            'rds', 'create_db_subnet_group',
            DBSubnetGroupName=n,
            DBSubnetGroupDescription=SUBNET_GROUP_DESCRIPTION,
            SubnetIds=subnet_ids,
            Tags=tags)
        arn = response.get('DBSubnetGroup', {}).get('DBSubnetGroupArn')
        return ResourceHandle(kind='subnet-group', name=n, resource_id=arn, created=True)

    return ensure(name, describe, create, kind='subnet-group')


def ensure_public_security_group(
    client: ControlPlaneClient,
    vpc_id: str,
    public_ip: str,
    port: int = 5432,
    name: str = PUBLIC_SECURITY_GROUP,
    tags: Optional[List[Dict[str, str]]] = None,
) -> ResourceHandle:
    """Make sure a security group admitting public_ip on port exists in the VPC."""
    tags = tags if tags is not None else [DEFAULT_TAG]

    def describe(n: str) -> CallResult:
        result = client.attempt(
            'ec2', 'describe_security_groups',
            Filters=[{'Name': 'vpc-id', 'Values': [vpc_id]},
                     {'Name': 'group-name', 'Values': [n]}])
        if result.is_ok and not result.value.get('SecurityGroups'):
            # Filtered describes report a missing group as an empty list.
            return CallResult.from_error(ProviderError(
                category='not-found',
                code=SECURITY_GROUP_NOT_FOUND,
                message=f'Security group {n} not found in {vpc_id}',
                operation='describe_security_groups'))
        return result

    def create(n: str) -> ResourceHandle:
        logger.info(f'Creating security group {n} in vpc:{vpc_id}')
        group_id = client.invoke(
            'ec2', 'create_security_group',
            GroupName=n,
            Description=f'Allows access on port {port} from {public_ip}',
            VpcId=vpc_id,
            TagSpecifications=[{'ResourceType': 'security-group', 'Tags': tags}])['GroupId']
        logger.info(f'Authorizing ingress to {group_id} from {public_ip}/32 on port {port}')
        client.invoke(
            'ec2', 'authorize_security_group_ingress',
            GroupId=group_id,
            IpPermissions=[{
                'IpProtocol': 'tcp',
                'FromPort': port,
                'ToPort': port,
                'IpRanges': [{'CidrIp': f'{public_ip}/32'}],
            }])
        return ResourceHandle(kind='security-group', name=n, resource_id=group_id, created=True)

    return ensure(name, describe, create, kind='security-group')
