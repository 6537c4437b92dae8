# budget.py
# Resource budget monitor: wall clock, tokens, estimated cost.
#
# Checked by the harness before every step (check) and immediately before
# every Reasoning Backend call (precheck), so an over-budget request is
# never sent. Stops are returned as BudgetExceeded values; deciding whether
# to pause for an operator override or end the run is the harness's job.

import json
import logging
import math
import time
from typing import Callable

from browse_pilot.models import Budget, BudgetExceeded, Usage

logger = logging.getLogger(__name__)


class BudgetMonitor:
    """
    Tracks consumption against a Budget. A ceiling of 0 disables that dimension.

    Example:
        monitor = BudgetMonitor(Budget(max_total_tokens=10_000))
        monitor.record_usage(response.usage)
        stop = monitor.check(step=4, max_steps=20)
    """

    CHARS_PER_TOKEN = 4
    COMPLETION_RESERVE_TOKENS = 256
    PROJECTION_MIN_STEPS = 3
    PROJECTION_MIN_RATIO = 0.6
    PROJECTION_OVERSHOOT = 1.5

    def __init__(
        self,
        budget: Budget,
        cost_per_1k_tokens_usd: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.budget = budget
        self.cost_per_1k_tokens_usd = cost_per_1k_tokens_usd
        self._clock = clock
        self._started = clock()
        self._elapsed_offset_ms = 0
        self.usage = Usage()
        self.cost_used_usd = 0.0
        self.enforced = True
        self.override_used = False

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    @property
    def elapsed_ms(self) -> int:
        return self._elapsed_offset_ms + int((self._clock() - self._started) * 1000)

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens

    def record_usage(self, usage: Usage) -> None:
        total = usage.total_tokens or (usage.prompt_tokens + usage.completion_tokens)
        self.usage = Usage(
            prompt_tokens=self.usage.prompt_tokens + usage.prompt_tokens,
            completion_tokens=self.usage.completion_tokens + usage.completion_tokens,
            total_tokens=self.usage.total_tokens + total,
        )
        self.cost_used_usd += total / 1000 * self.cost_per_1k_tokens_usd

    def restore(
        self,
        usage: Usage,
        cost_used_usd: float,
        elapsed_ms: int,
        enforced: bool = True,
        override_used: bool = False,
    ) -> None:
        """Carry consumption over from a checkpoint."""
        self.usage = usage.model_copy()
        self.cost_used_usd = cost_used_usd
        self._elapsed_offset_ms = elapsed_ms
        self._started = self._clock()
        self.enforced = enforced
        self.override_used = override_used

    def grant_override(self) -> None:
        """Operator allowed the run to continue; stop enforcing for the rest of it."""
        self.enforced = False
        self.override_used = True
        logger.info("Budget enforcement disabled by operator override")

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def check(self, step: int, max_steps: int) -> BudgetExceeded | None:
        """Pre-step check of every enabled ceiling plus the burn-rate projection."""
        if not self.enforced:
            return None

        budget = self.budget
        if budget.max_wall_clock_ms and self.elapsed_ms >= budget.max_wall_clock_ms:
            return BudgetExceeded(
                kind="wall_clock",
                limit=budget.max_wall_clock_ms,
                used=self.elapsed_ms,
                reason=f"Time budget exceeded ({self.elapsed_ms} ms of {budget.max_wall_clock_ms} ms)",
            )

        if budget.max_total_tokens and self.tokens_used >= budget.max_total_tokens:
            return BudgetExceeded(
                kind="tokens",
                limit=budget.max_total_tokens,
                used=self.tokens_used,
                reason=f"Token budget exceeded ({self.tokens_used} of {budget.max_total_tokens})",
            )

        if budget.max_estimated_cost_usd and self.cost_used_usd >= budget.max_estimated_cost_usd:
            return BudgetExceeded(
                kind="cost",
                limit=budget.max_estimated_cost_usd,
                used=round(self.cost_used_usd, 6),
                reason=(
                    f"Cost budget exceeded (${self.cost_used_usd:.4f} "
                    f"of ${budget.max_estimated_cost_usd:.4f})"
                ),
            )

        return self._project(step, max_steps)

    def _project(self, step: int, max_steps: int) -> BudgetExceeded | None:
        limit = self.budget.max_total_tokens
        if not limit or max_steps <= 0 or step < self.PROJECTION_MIN_STEPS:
            return None

        ratio = self.tokens_used / limit
        projected = self.tokens_used / step * max_steps
        if ratio >= self.PROJECTION_MIN_RATIO and projected >= limit * self.PROJECTION_OVERSHOOT:
            return BudgetExceeded(
                kind="tokens_projection",
                limit=limit,
                used=self.tokens_used,
                reason=(
                    "Token burn-rate projection exceeded budget early "
                    f"({int(projected)} projected over {max_steps} steps, limit {limit})"
                ),
            )
        return None

    def estimate_tokens(self, messages: list[dict], tools: list[dict] | None = None) -> int:
        payload = json.dumps({"messages": messages, "tools": tools or []}, default=str)
        return math.ceil(len(payload) / self.CHARS_PER_TOKEN)

    def precheck(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        label: str = "reasoning call",
    ) -> BudgetExceeded | None:
        """
        Estimate a request before it is sent.

        Returns a BudgetExceeded when used + estimate + completion reserve
        would cross the token ceiling; the caller must not issue the request.
        """
        limit = self.budget.max_total_tokens
        if not self.enforced or not limit:
            return None

        estimate = self.estimate_tokens(messages, tools)
        projected = self.tokens_used + estimate + self.COMPLETION_RESERVE_TOKENS
        if projected <= limit:
            return None

        return BudgetExceeded(
            kind="tokens",
            limit=limit,
            used=self.tokens_used,
            reason=(
                f"Token budget pre-check blocked {label} "
                f"(used {self.tokens_used} + estimated {estimate} "
                f"+ reserve {self.COMPLETION_RESERVE_TOKENS} > {limit})"
            ),
        )
