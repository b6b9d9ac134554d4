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

"""RDS and EC2 control plane calls with a single normalized fault shape."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

CLUSTER_NOT_FOUND = 'DBClusterNotFoundFault'
SUBNET_GROUP_NOT_FOUND = 'DBSubnetGroupNotFoundFault'
SECURITY_GROUP_NOT_FOUND = 'InvalidGroup.NotFound'
SUBNET_GROUP_INVALID_STATE = 'InvalidDBSubnetGroupStateFault'
CLUSTER_INVALID_STATE = 'InvalidDBClusterStateFault'

NOT_FOUND_CODES = frozenset({CLUSTER_NOT_FOUND, SUBNET_GROUP_NOT_FOUND, SECURITY_GROUP_NOT_FOUND})
INVALID_STATE_CODES = frozenset({SUBNET_GROUP_INVALID_STATE, CLUSTER_INVALID_STATE})
THROTTLING_CODES = frozenset({'Throttling', 'ThrottlingException', 'RequestLimitExceeded'})

REDACTED = '********'


class ProviderError(Exception):
    """A control plane call that came back with a fault instead of a payload."""

    def __init__(self, category: str, code: str, message: str = '', operation: str = ''):
        super().__init__(f'{operation}: {code} ({category}) - {message}')
        self.category = category
        self.code = code
        self.message = message
        self.operation = operation

    @property
    def not_found(self) -> bool:
        return self.code in NOT_FOUND_CODES

    @property
    def invalid_state(self) -> bool:
        return self.code in INVALID_STATE_CODES

    @classmethod
    def from_client_error(cls, e: ClientError, operation: str = '') -> 'ProviderError':
        error = e.response.get('Error', {})
        code = error.get('Code', 'Unknown')
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        return cls(
            category=_category(code, status),
            code=code,
            message=error.get('Message', ''),
            operation=operation or e.operation_name)

    @classmethod
    def from_botocore_error(cls, e: BotoCoreError, operation: str = '') -> 'ProviderError':
        return cls(category='unavailable', code=type(e).__name__, message=str(e), operation=operation)


def _category(code: str, status: Optional[int]) -> str:
    if code in NOT_FOUND_CODES or status == 404:
        return 'not-found'
    if code in THROTTLING_CODES or status == 429:
        return 'busy'
    if status in (401, 403):
        return 'forbidden'
    if status == 409:
        return 'conflict'
    if status is not None and status >= 500:
        return 'fault'
    return 'incorrect'


def redact(params: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of request params safe to log: any Password member is masked."""
    return {k: REDACTED if 'password' in k.lower() else v for k, v in params.items()}


class CallStatus(str, Enum):
    OK = 'ok'
    NOT_FOUND = 'not_found'
    FAILED = 'failed'


@dataclass(frozen=True)
class CallResult:
    """Outcome of a control plane call: a value, a not-found fault, or any other fault."""

    status: CallStatus
    value: Optional[Dict[str, Any]] = None
    error: Optional[ProviderError] = None

    @classmethod
    def ok(cls, value: Dict[str, Any]) -> 'CallResult':
        return cls(CallStatus.OK, value=value)

    @classmethod
    def from_error(cls, error: ProviderError) -> 'CallResult':
        status = CallStatus.NOT_FOUND if error.not_found else CallStatus.FAILED
        return cls(status, error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == CallStatus.OK

    def unwrap(self) -> Dict[str, Any]:
        if self.error is not None:
            raise self.error
        return self.value or {}


class ControlPlaneClient:
    """Holds one RDS and one EC2 client, created once from a boto3 session."""

    def __init__(self, session):
        self._clients = {
            'rds': session.client('rds'),
            'ec2': session.client('ec2'),
        }

    def _client(self, service: str):
        try:
            return self._clients[service]
        except KeyError:
            raise ValueError(f'Unsupported service: {service}') from None

    def invoke(self, service: str, operation: str, **params) -> Dict[str, Any]:
        """
        Call operation on the service client.

        Raises:
            ProviderError: if the call faults, whatever the underlying botocore error
        """
        method = getattr(self._client(service), operation)
        logger.debug(f'{service}.{operation} request: {redact(params)}')
        try:
            return method(**params)
        except ClientError as e:
            raise ProviderError.from_client_error(e, operation) from e
        except BotoCoreError as e:
            raise ProviderError.from_botocore_error(e, operation) from e

    def attempt(self, service: str, operation: str, **params) -> CallResult:
        """Like invoke, but returns the fault as a CallResult instead of raising."""
        try:
            return CallResult.ok(self.invoke(service, operation, **params))
        except ProviderError as e:
            return CallResult.from_error(e)

    def paginate(self, service: str, operation: str, result_key: str, **params) -> List[Dict[str, Any]]:
        """Drain every page of a listing call and return the concatenated items."""
        paginator = self._client(service).get_paginator(operation)
        items: List[Dict[str, Any]] = []
        try:
            for page in paginator.paginate(**params):
                items.extend(page.get(result_key, []))
        except ClientError as e:
            raise ProviderError.from_client_error(e, operation) from e
        except BotoCoreError as e:
            raise ProviderError.from_botocore_error(e, operation) from e
        return items


def create_control_plane_client(context) -> ControlPlaneClient:
    """Build a client from a ProvisionerContext's session."""
    logger.info(f'Creating control plane client for region:{context.config.region}')
    return ControlPlaneClient(context.session)
