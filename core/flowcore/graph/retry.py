"""
Retry backoff for Task and AIAgent steps.

delay = retry_delay * backoff_multiplier ** retry_count

The scheduler never sleeps: a retry is a persisted TimerFired(retry)
wake-up, so an instance waiting out a backoff holds nothing but its
snapshot.
"""

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from flowcore.config import EngineConfig
from flowcore.graph.node import RetryPolicy
from flowcore.schemas.execution import ScheduledTimer, StepState, TimerKind

if TYPE_CHECKING:
    from flowcore.graph.context import AdvanceContext

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Computes backoff delays and schedules retry wake-ups."""

    def __init__(self, config: EngineConfig | None = None):
        self._config = config or EngineConfig()

    def default_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self._config.default_max_retries,
            retry_delay=self._config.default_retry_delay,
            backoff_multiplier=self._config.default_backoff_multiplier,
        )

    def resolve_policy(self, *candidates: RetryPolicy | None) -> RetryPolicy:
        """First non-empty policy wins; falls back to the configured default."""
        for policy in candidates:
            if policy is not None:
                return policy
        return self.default_policy()

    @staticmethod
    def next_delay(retry_count: int, policy: RetryPolicy) -> float | None:
        """Seconds until the next attempt, or None to give up."""
        if retry_count >= policy.max_retries:
            return None
        return policy.retry_delay * policy.backoff_multiplier**retry_count

    @classmethod
    def delays(cls, policy: RetryPolicy) -> list[float]:
        """Every delay the policy will produce before giving up."""
        return [cls.next_delay(n, policy) for n in range(policy.max_retries)]  # type: ignore[misc]

    def schedule_retry(
        self,
        ctx: "AdvanceContext",
        step: StepState,
        policy: RetryPolicy,
        error: str,
    ) -> ScheduledTimer | None:
        """
        Record a failed attempt and schedule the next one.

        Returns the retry timer, or None when retries are exhausted (the
        caller then fails the step with the current retry count).
        """
        delay = self.next_delay(step.retry_count, policy)
        if delay is None:
            logger.info(
                f"Retries exhausted for step '{step.node_id}' "
                f"({step.retry_count}/{policy.max_retries})",
                extra={"event": "retry_exhausted", "node_id": step.node_id},
            )
            return None

        step.retry_count += 1
        step.retry_pending = True
        step.error = error
        timer = ctx.schedule_timer(
            TimerKind.RETRY,
            fire_at=ctx.now + timedelta(seconds=delay),
            node_id=step.node_id,
            activation_id=step.activation_id,
            attempt=step.retry_count,
        )
        logger.info(
            f"Retry {step.retry_count}/{policy.max_retries} for step '{step.node_id}' "
            f"in {delay:.1f}s",
            extra={
                "event": "retry_scheduled",
                "node_id": step.node_id,
                "attempt": step.retry_count,
                "delay_seconds": delay,
            },
        )
        return timer
