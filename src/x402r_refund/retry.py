"""
Retry policies, settlement deadline and the retrying chain reader.

RPC providers enforce aggressive per-key rate limits. Reads that fail with
a rate-limit error are retried with capped exponential backoff
(1s, 2s, 4s, 8s, 16s); any other failure propagates immediately. The
deposit call has its own linear policy (1s, 2s, 3s, ...).

Every suspension point (signer call or backoff sleep) goes through a
:class:`Deadline` so callers can bound total settlement latency.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from .classifier import is_rate_limit_error
from .errors import SettlementTimeoutError
from .signer import FacilitatorEvmSigner

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy.

    Attempts are numbered from 0. ``max_retries`` is the number of attempts
    after the first one, so at most ``max_retries + 1`` calls are made.
    """

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0
    exponential: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retrying after failed ``attempt``."""
        if self.exponential:
            return min(self.base_delay * (2 ** attempt), self.max_delay)
        return min(self.base_delay * (attempt + 1), self.max_delay)


# Rate-limited reads: 1s, 2s, 4s, 8s, 16s
READ_RETRY_POLICY = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=16.0)

# executeDeposit: 1s, 2s, 3s, 4s, 5s
DEPOSIT_RETRY_POLICY = RetryPolicy(
    max_retries=5, base_delay=1.0, max_delay=60.0, exponential=False
)


class Deadline:
    """
    Optional overall deadline for one settlement attempt.

    Args:
        timeout: Seconds from now, or None for no limit
        sleep: Coroutine function used for backoff delays
        clock: Monotonic clock in seconds
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        *,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._sleep = sleep
        self.expires_at = None if timeout is None else clock() + timeout

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return self.expires_at - self._clock()

    def check(self, what: str = "settlement") -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise SettlementTimeoutError(f"Deadline expired before {what}")

    async def run(self, awaitable: Awaitable[T], what: str = "chain call") -> T:
        """Await ``awaitable`` within the remaining budget."""
        remaining = self.remaining()
        if remaining is None:
            return await awaitable
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise SettlementTimeoutError(f"Deadline expired before {what}")
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise SettlementTimeoutError(f"Deadline expired during {what}") from e

    async def sleep(self, seconds: float) -> None:
        """Sleep unless the delay would run past the deadline."""
        remaining = self.remaining()
        if remaining is not None and seconds >= remaining:
            raise SettlementTimeoutError(
                f"Deadline would expire during a {seconds:g}s backoff delay"
            )
        await self._sleep(seconds)


async def read_with_retry(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy = READ_RETRY_POLICY,
    deadline: Optional[Deadline] = None,
    what: str = "read",
) -> T:
    """
    Run ``call`` and retry it on rate-limit errors.

    Args:
        call: Zero-argument coroutine function performing the read
        policy: Backoff policy (defaults to capped exponential)
        deadline: Overall deadline
        what: Label for log messages

    Returns:
        The call's result

    Raises:
        Exception: The first non-rate-limit error, or the last rate-limit
            error once retries are exhausted
    """
    deadline = deadline or Deadline()
    attempt = 0

    while True:
        try:
            return await deadline.run(call(), what)
        except SettlementTimeoutError:
            raise
        except Exception as e:
            if not is_rate_limit_error(e) or attempt >= policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Rate limited on %s (attempt %d/%d), retrying in %.0fs",
                what,
                attempt + 1,
                policy.max_retries + 1,
                delay,
            )
        await deadline.sleep(delay)
        attempt += 1


class ChainReader:
    """
    Read-only view of a signer with rate-limit retries and a deadline.

    Write access goes through :attr:`signer` directly, wrapped in
    :attr:`deadline`, since state-changing calls have their own policy.
    """

    def __init__(
        self,
        signer: FacilitatorEvmSigner,
        *,
        policy: RetryPolicy = READ_RETRY_POLICY,
        deadline: Optional[Deadline] = None,
    ):
        self.signer = signer
        self.policy = policy
        self.deadline = deadline or Deadline()

    async def read_contract(
        self,
        address: str,
        abi: Sequence[dict[str, Any]],
        function_name: str,
        args: Sequence[Any] = (),
    ) -> Any:
        logger.debug("readContract %s.%s%s", address, function_name, tuple(args))
        return await read_with_retry(
            lambda: self.signer.read_contract(address, abi, function_name, list(args)),
            policy=self.policy,
            deadline=self.deadline,
            what=function_name,
        )

    async def get_code(self, address: str) -> bytes:
        return await read_with_retry(
            lambda: self.signer.get_code(address),
            policy=self.policy,
            deadline=self.deadline,
            what=f"getCode({address})",
        )

    async def has_code(self, address: str) -> bool:
        """Non-empty bytecode means a contract is deployed at ``address``."""
        code = await self.get_code(address)
        return has_code(code)


def has_code(code: Any) -> bool:
    if not code:
        return False
    if isinstance(code, str):
        return len(code.removeprefix("0x")) > 0
    return len(code) > 0
