"""Retry with exponential backoff for transient provider failures."""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .cancellation import CancellationToken, cancellable_sleep
from .exceptions import OperationAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float, Optional[CancellationToken]], Awaitable[None]]

_STATUS_IN_MESSAGE = re.compile(r"\[(\d{3}) ")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how slowly to retry one class of failure."""

    name: str
    max_retries: int
    initial_delay: float  # seconds
    should_retry: Callable[[Optional[int]], bool]

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return self.initial_delay * (2 ** (attempt - 1))


RATE_LIMIT_POLICY = RetryPolicy(
    name="rate_limit",
    max_retries=4,
    initial_delay=8.0,
    should_retry=lambda status: status == 429,
)

SERVER_ERROR_POLICY = RetryPolicy(
    name="server_error",
    max_retries=2,
    initial_delay=5.0,
    should_retry=lambda status: status is not None and 500 <= status < 600,
)


def get_status_code(error: BaseException) -> Optional[int]:
    """Extract an HTTP status code from the shapes providers and SDKs raise.

    Checks a direct ``status``/``status_code`` attribute, then the same on a
    nested ``response``, then a ``[NNN `` marker in the message.
    """
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value

    response = getattr(error, "response", None)
    if response is not None:
        for attr in ("status", "status_code"):
            value = getattr(response, attr, None)
            if isinstance(value, int):
                return value

    match = _STATUS_IN_MESSAGE.search(str(error))
    if match:
        return int(match.group(1))
    return None


def select_policy(error: BaseException) -> Optional[RetryPolicy]:
    """Policy covering ``error``, or None when it is not transient."""
    status = get_status_code(error)
    for policy in (RATE_LIMIT_POLICY, SERVER_ERROR_POLICY):
        if policy.should_retry(status):
            return policy
    return None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    token: Optional[CancellationToken] = None,
    sleep: SleepFn = cancellable_sleep,
) -> T:
    """Run ``operation``, retrying the failures ``policy`` accepts.

    Anything the policy does not cover propagates immediately. A cancelled
    token raises OperationAborted before the next attempt, including while
    waiting out a delay.
    """
    return await _run(operation, lambda error: policy, token, sleep)


async def with_provider_retry(
    operation: Callable[[], Awaitable[T]],
    token: Optional[CancellationToken] = None,
    sleep: SleepFn = cancellable_sleep,
) -> T:
    """Like with_retry, with the policy chosen from the first failure's status."""
    return await _run(operation, select_policy, token, sleep)


async def _run(
    operation: Callable[[], Awaitable[T]],
    choose_policy: Callable[[BaseException], Optional[RetryPolicy]],
    token: Optional[CancellationToken],
    sleep: SleepFn,
) -> T:
    policy: Optional[RetryPolicy] = None
    attempt = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        try:
            return await operation()
        except OperationAborted:
            raise
        except Exception as e:
            if policy is None:
                policy = choose_policy(e)
                if policy is None:
                    raise
            status = get_status_code(e)
            if not policy.should_retry(status) or attempt >= policy.max_retries:
                raise
            attempt += 1
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Provider call failed with status {status}, retry {attempt}/{policy.max_retries} in {delay:.0f}s ({policy.name})"
            )
            await sleep(delay, token)
