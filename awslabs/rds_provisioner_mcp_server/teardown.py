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

"""Best-effort removal of every RDS cluster and DB subnet group in the account."""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, List, Optional
from loguru import logger

from awslabs.rds_provisioner_mcp_server.connection.cp_api_connection import (
    ControlPlaneClient,
    ProviderError,
)

CLUSTER = 'db-cluster'
SUBNET_GROUP = 'db-subnet-group'

# RDS refuses to delete the account's default subnet group.
UNDELETABLE_SUBNET_GROUPS = frozenset({'default'})


class TeardownOutcome(str, Enum):
    DELETED = 'deleted'
    INVALID_STATE = 'invalid-state'
    ERROR = 'error'


@dataclass(frozen=True)
class TeardownResult:
    kind: str
    identifier: str
    outcome: TeardownOutcome
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d['outcome'] = self.outcome.value
        return d


def _delete(kind: str, identifier: str, delete: Callable[[], object]) -> TeardownResult:
    logger.info(f'Tearing down {kind} {identifier}')
    try:
        delete()
    except ProviderError as e:
        if e.not_found:
            logger.info(f'{kind} {identifier} is already gone')
            return TeardownResult(kind, identifier, TeardownOutcome.DELETED)
        if e.invalid_state:
            logger.warning(f'{kind} {identifier} cannot be deleted yet: {e.code}')
            return TeardownResult(kind, identifier, TeardownOutcome.INVALID_STATE, e.code)
        logger.error(f'Error tearing down {kind} {identifier}: {e.code} - {e.message}')
        return TeardownResult(kind, identifier, TeardownOutcome.ERROR, f'{e.code}: {e.message}')
    return TeardownResult(kind, identifier, TeardownOutcome.DELETED)


def _list(kind: str, list_names: Callable[[], List[str]]) -> tuple:
    try:
        return list_names(), None
    except ProviderError as e:
        logger.error(f'Error listing {kind}s: {e.code} - {e.message}')
        return [], TeardownResult(kind, '*', TeardownOutcome.ERROR, f'{e.code}: {e.message}')


def teardown_clusters(client: ControlPlaneClient) -> List[TeardownResult]:
    """
    Delete every cluster the credentials can see, skipping final snapshots.

    Does not wait for the deletions to finish.
    """
    # TODO: filter to clusters carrying the CreatedBy=rds-provisioner tag
    identifiers, failure = _list(CLUSTER, lambda: [
        c['DBClusterIdentifier']
        for c in client.paginate('rds', 'describe_db_clusters', 'DBClusters')])
    if failure:
        return [failure]

    return [
        _delete(CLUSTER, identifier, lambda i=identifier: client.invoke(
            'rds', 'delete_db_cluster',
            DBClusterIdentifier=i,
            SkipFinalSnapshot=True))
        for identifier in identifiers
    ]


def maybe_teardown_subnet_groups(client: ControlPlaneClient) -> List[TeardownResult]:
    """
    Delete every DB subnet group that is no longer in use.

    Clusters deleted moments ago still reference their subnet groups, so
    those deletes come back invalid-state; run the sweep again later.
    """
    names, failure = _list(SUBNET_GROUP, lambda: [
        g['DBSubnetGroupName']
        for g in client.paginate('rds', 'describe_db_subnet_groups', 'DBSubnetGroups')])
    if failure:
        return [failure]

    return [
        _delete(SUBNET_GROUP, name, lambda n=name: client.invoke(
            'rds', 'delete_db_subnet_group', DBSubnetGroupName=n))
        for name in names
        if name not in UNDELETABLE_SUBNET_GROUPS
    ]


def teardown(client: ControlPlaneClient) -> List[TeardownResult]:
    """Tear down all clusters and then, where no longer referenced, all subnet groups."""
    results = teardown_clusters(client)
    results.extend(maybe_teardown_subnet_groups(client))
    logger.info(f'Teardown finished: {[(r.identifier, r.outcome.value) for r in results]}')
    return results
