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

"""Blocking retry-until-success polling for slow control plane operations."""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar
from loguru import logger

T = TypeVar('T')


class Interrupted(Exception):
    """Raised when a poll is cancelled. Never retried."""


class PollTimeoutError(TimeoutError):
    """Raised when a poll runs past its deadline without succeeding."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """How often to retry, how often to log, and when to give up (seconds)."""

    retry_interval: float = 1.0
    log_interval: Optional[float] = None
    timeout: float = 60.0

    def __post_init__(self):
        if self.log_interval is None:
            object.__setattr__(self, 'log_interval', self.retry_interval)
        if self.retry_interval < 0:
            raise ValueError(f'retry_interval must be >= 0, got {self.retry_interval}')
        if self.log_interval < 0:
            raise ValueError(f'log_interval must be >= 0, got {self.log_interval}')
        if self.timeout <= 0:
            raise ValueError(f'timeout must be > 0, got {self.timeout}')


def poll(
    operation: Callable[[], T],
    policy: RetryPolicy,
    log_message: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> T:
    """
    Invoke operation repeatedly until it returns instead of raising.

    Args:
        operation: zero-argument callable; any Exception it raises is retried
        policy: retry interval, log interval and timeout
        log_message: progress message logged every log interval while waiting
        cancel: optional event; once set the poll raises Interrupted

    Returns:
        The first value operation returns

    Raises:
        Interrupted: if cancelled, or if operation itself raises Interrupted
        PollTimeoutError: if the deadline passes while operation keeps failing
    """
    if log_message is None:
        log_message = f'Waiting for {getattr(operation, "__name__", operation)}...'

    start = time.monotonic()
    deadline = start + policy.timeout
    log_deadline = start + policy.log_interval

    while True:
        try:
            return operation()
        except Interrupted:
            raise
        except Exception as e:
            if cancel is not None and cancel.is_set():
                raise Interrupted(f'Cancelled: {log_message}') from e

            now = time.monotonic()
            if deadline <= now:
                raise PollTimeoutError(
                    f'Timed out after {policy.timeout}s: {log_message}', last_error=e
                ) from e

            if log_deadline <= now:
                logger.info(log_message)
                log_deadline += policy.log_interval

            if cancel is not None:
                if cancel.wait(policy.retry_interval):
                    raise Interrupted(f'Cancelled: {log_message}') from e
            else:
                time.sleep(policy.retry_interval)
