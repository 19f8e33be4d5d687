"""
Error & Retry Policy - Classifies failures and decides what happens next.

Decision order for a failed invocation:
1. Retriable, retry enabled, attempts left: wait, then invoke again with the
   same run index.
2. Not fatal and the node continues on fail: record an error-marked result.
3. Otherwise: fail the run.

Fatal errors never take branch 1 or 2.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum

from nodeflow.errors import ErrorKind, NodeflowError
from nodeflow.graph.model import Backoff, NodeSettings

logger = logging.getLogger(__name__)


class RetryAction(StrEnum):
    RETRY = "retry"
    CONTINUE = "continue"
    FAIL = "fail"


@dataclass
class RetryDecision:
    """What to do after attempt ``attempt`` failed."""

    action: RetryAction
    kind: ErrorKind
    delay: float = 0.0


class ErrorPolicy:
    """
    Maps exceptions onto error kinds and applies a node's retry settings.

    Example:
        policy = ErrorPolicy()
        decision = policy.decide(error, node.settings, attempt=1)
        if decision.action == RetryAction.RETRY:
            await asyncio.sleep(decision.delay)
    """

    def __init__(self, max_delay_seconds: float = 60.0):
        self.max_delay_seconds = max_delay_seconds

    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, NodeflowError):
            return error.kind
        # Builtin TimeoutError covers asyncio.TimeoutError on 3.11+
        if isinstance(error, (TimeoutError, ConnectionError)):
            return ErrorKind.RETRIABLE
        return ErrorKind.FATAL

    def should_retry(self, kind: ErrorKind, settings: NodeSettings, attempt: int) -> bool:
        """``attempt`` is the number of attempts already made (1-based)."""
        return (
            kind == ErrorKind.RETRIABLE
            and settings.retry_on_fail
            and attempt < settings.max_tries
        )

    def delay(self, settings: NodeSettings, attempt: int) -> float:
        """Seconds to wait before attempt ``attempt + 1``."""
        base = settings.wait_between_tries_ms / 1000.0
        if settings.backoff == Backoff.EXPONENTIAL:
            # base, 2*base, 4*base, ...
            base = base * (2 ** (attempt - 1))
        return min(base, self.max_delay_seconds)

    def decide(self, error: BaseException, settings: NodeSettings, attempt: int) -> RetryDecision:
        kind = self.classify(error)
        if self.should_retry(kind, settings, attempt):
            return RetryDecision(RetryAction.RETRY, kind, self.delay(settings, attempt))
        if kind != ErrorKind.FATAL and settings.continue_on_fail:
            return RetryDecision(RetryAction.CONTINUE, kind)
        return RetryDecision(RetryAction.FAIL, kind)

    async def wait(self, decision: RetryDecision) -> None:
        if decision.delay > 0:
            logger.info(f"   Using backoff: Sleeping {decision.delay}s before retry...")
            await asyncio.sleep(decision.delay)
