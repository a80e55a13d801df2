"""
Bounded retry for transient step failures.

Failures are classified from the exit code and captured output:
network-level problems (DNS, connect, timeout, reset) are retryable;
HTTP 4xx and checksum failures are permanent and never retried. The
delay schedule is fixed and short, with a little jitter on non-zero
delays so parallel machines do not hammer a mirror in lockstep.
"""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from provisioner.core.errors import Permanent, RetryableTransient, StepFailed
from provisioner.core.models.command import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_DELAYS: tuple[float, ...] = (0, 5, 15)

# curl: 6 resolve host, 7 connect, 28 timeout, 35 TLS handshake,
# 52 empty reply, 56 recv failure
RETRYABLE_EXIT_CODES = frozenset({6, 7, 28, 35, 52, 56})

_RETRYABLE_PATTERNS = re.compile(
    r"timed out|timeout|connection refused|temporarily unavailable|"
    r"temporary failure|network is unreachable|network unreachable|"
    r"no route to host|reset by peer|could not resolve",
    re.IGNORECASE,
)

_PERMANENT_PATTERNS = re.compile(
    r"checksum mismatch|sha256 mismatch|returned error: 4\d\d|\bhttp/\S+ 4\d\d\b|\b404 not found",
    re.IGNORECASE,
)


def is_retryable(exit_code: int, output: str = "") -> bool:
    """Whether a failure with this exit code and output is worth retrying."""
    if exit_code == 0:
        return False
    if output and _PERMANENT_PATTERNS.search(output):
        return False
    if exit_code in RETRYABLE_EXIT_CODES:
        return True
    return bool(output and _RETRYABLE_PATTERNS.search(output))


def classify_failure(exit_code: int, output: str = "", step: str = "") -> StepFailed:
    """Build the typed StepFailed for a non-zero result."""
    if is_retryable(exit_code, output):
        return RetryableTransient(exit_code, output, step=step)
    return Permanent(exit_code, output, step=step)


@dataclass
class RetryPolicy:
    """Delays before each attempt; ``len(delays)`` is the attempt budget."""

    delays: Sequence[float] = DEFAULT_DELAYS
    jitter: float = 0.1
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @property
    def max_attempts(self) -> int:
        return max(1, len(self.delays))

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait before *attempt* (0-based)."""
        base = float(self.delays[attempt]) if attempt < len(self.delays) else 0.0
        if base <= 0:
            return 0.0
        return base + random.uniform(0, base * self.jitter)


def run_with_retry(
    action: Callable[[], CommandResult],
    policy: RetryPolicy | None = None,
    *,
    step: str = "",
) -> CommandResult:
    """Run *action* until it succeeds, fails permanently, or attempts run out.

    Returns the successful CommandResult.

    Raises:
        Permanent: non-retryable failure, on the first occurrence.
        RetryableTransient: still failing after the last attempt.
    """
    policy = policy or RetryPolicy()
    last: StepFailed | None = None

    for attempt in range(policy.max_attempts):
        delay = policy.delay_for(attempt)
        if attempt and delay:
            logger.info("Retrying %s in %.1fs (attempt %d/%d)", step or "step", delay, attempt + 1, policy.max_attempts)
            policy.sleep(delay)

        result = action()
        if result.ok:
            return result

        last = classify_failure(result.exit_code, result.output, step=step)
        if isinstance(last, Permanent):
            raise last
        logger.warning(
            "Transient failure in %s (exit %d), attempt %d/%d",
            step or "step", result.exit_code, attempt + 1, policy.max_attempts,
        )

    assert last is not None
    raise last


def call_with_retry(
    fetch: Callable[[], bytes],
    policy: RetryPolicy | None = None,
    *,
    step: str = "",
) -> bytes:
    """Retry a callable that signals failure by raising StepFailed."""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return fetch()
        except RetryableTransient as e:
            attempt += 1
            if attempt >= policy.max_attempts:
                raise
            logger.warning("Transient failure fetching %s: %s", step or "content", e)
            delay = policy.delay_for(attempt)
            if delay:
                policy.sleep(delay)
