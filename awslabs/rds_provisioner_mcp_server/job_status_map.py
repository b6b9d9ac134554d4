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

"""Background job status map for the RDS provisioner MCP Server."""

import threading
from enum import Enum
from typing import Any
from loguru import logger


class JobState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatusMap:
    """Tracks the state of provisioning jobs running on worker threads"""

    def __init__(self):
        self.map = {}
        self._lock = threading.Lock()

    def start(self, job_id: str) -> None:
        if not job_id:
            raise ValueError("job_id cannot be None or empty")

        with self._lock:
            if job_id in self.map:
                raise ValueError(f"job {job_id} already exists")
            self.map[job_id] = {"state": JobState.PENDING.value, "result": None}

    def succeed(self, job_id: str, result: Any = None) -> None:
        self._finish(job_id, JobState.SUCCEEDED, result)

    def fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, JobState.FAILED, error)

    def _finish(self, job_id: str, state: JobState, result: Any) -> None:
        with self._lock:
            if job_id not in self.map:
                logger.warning(f"Finishing an unknown job {job_id} as {state.value}")
            self.map[job_id] = {"state": state.value, "result": result}

    def get(self, job_id: str) -> dict:
        if not job_id:
            raise ValueError("job_id cannot be None or empty")

        with self._lock:
            return dict(self.map.get(job_id, {"state": "not_found"}))

    def get_keys(self) -> list[str]:
        with self._lock:
            return list(self.map.keys())
