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

"""Discovery of this machine's public IP address."""

import httpx
from loguru import logger

IPIFY_URL = 'https://api.ipify.org'


def lookup_public_ip(url: str = IPIFY_URL, timeout: float = 10.0) -> str:
    """Return this machine's public IP address as seen by an external echo service."""
    response = httpx.get(url, timeout=timeout)
    response.raise_for_status()
    ip = response.text.strip()
    if not ip:
        raise ValueError(f'Empty public IP response from {url}')
    logger.info(f'Public IP:{ip}')
    return ip
