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

"""AWS configuration loading and the per-process provisioner context."""

import boto3
from functools import cached_property
from typing import Callable, Optional
from loguru import logger
from pydantic import BaseModel, ConfigDict, SecretStr

from awslabs.rds_provisioner_mcp_server.connection.public_ip import lookup_public_ip


class AwsConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    region: str
    access_key_id: str
    secret_access_key: SecretStr
    session_token: Optional[SecretStr] = None
    profile: Optional[str] = None


def load_aws_config(session: boto3.Session) -> AwsConfig:
    """
    Resolve region and credentials once from a boto3 session.

    boto3 walks its usual chain: environment variables, AWS_PROFILE, the
    shared config and credentials files, SSO and credential_process.

    Raises:
        ValueError: if the session has no credentials or no region
    """
    credentials = session.get_credentials()
    if credentials is None:
        raise ValueError(f'Unable to find AWS credentials for profile:{session.profile_name}')
    if not session.region_name:
        raise ValueError(f'Unable to find AWS region for profile:{session.profile_name}')

    frozen = credentials.get_frozen_credentials()
    logger.info(f'Loaded AWS config profile:{session.profile_name} region:{session.region_name}')
    return AwsConfig(
        region=session.region_name,
        access_key_id=frozen.access_key,
        secret_access_key=frozen.secret_key,
        session_token=frozen.token,
        profile=session.profile_name)


class ProvisionerContext:
    """Built once at process start and passed to everything that talks to AWS."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        ip_lookup: Callable[[], str] = lookup_public_ip,
    ):
        self._ip_lookup = ip_lookup
        self.session = boto3.Session(profile_name=profile, region_name=region)
        self.config = load_aws_config(self.session)

    @classmethod
    def from_config(cls, profile: Optional[str] = None, region: Optional[str] = None) -> 'ProvisionerContext':
        return cls(profile=profile, region=region)

    @cached_property
    def public_ip(self) -> str:
        return self._ip_lookup()
