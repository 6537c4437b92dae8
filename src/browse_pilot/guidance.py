# guidance.py
# Human-guidance escalation and the one-shot pause channel.
#
# GuidanceEscalation decides when a run that is neither converging nor
# obviously stuck should stop and ask the operator for direction.
# PauseGate is the channel the harness blocks on while paused; resume(),
# abort() and request_partial_completion() complete it with a ResumeSignal.

import asyncio
import threading
from dataclasses import dataclass
from enum import Enum

from browse_pilot.models import ReflectionState
from browse_pilot.reflection import StepBudget

# Planned actions that rarely move a task forward by themselves.
LOW_SIGNAL_TOOLS = frozenset({"read_page", "screenshot", "scroll", "wait_for", "list_tabs", "hover", "reload"})


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


class GuidanceEscalation:
    """
    Example:
        escalation = GuidanceEscalation()
        blockers = escalation.evaluate(state, no_progress_streak=4, rejection_streak=0,
                                       loop_signals=1, steps=StepBudget(30, 12))
        if blockers:
            ...pause and show them to the operator
    """

    STRICT_BAND = (0.45, 0.75)
    LOOSE_BAND = (0.3, 0.8)
    NO_PROGRESS_PRESSURE = 3
    REJECTION_PRESSURE = 2
    LOW_STEPS_PRESSURE = 5
    LOW_SIGNAL_SHARE = 0.5
    MAX_ESCALATIONS = 2

    def __init__(self) -> None:
        self.count = 0

    @property
    def exhausted(self) -> bool:
        return self.count >= self.MAX_ESCALATIONS

    def restore(self, count: int) -> None:
        self.count = min(max(count, 0), self.MAX_ESCALATIONS)

    def evaluate(
        self,
        state: ReflectionState,
        *,
        no_progress_streak: int,
        rejection_streak: int,
        loop_signals: int,
        steps: StepBudget,
    ) -> list[str] | None:
        """Return the blockers to show the operator, or None when no pause is warranted."""
        if self.exhausted or state.sufficiency or not state.facts or not state.actions:
            return None

        confidence = state.confidence
        stalled = no_progress_streak > 0 or loop_signals > 0
        in_band = _within(confidence, self.STRICT_BAND) or (stalled and _within(confidence, self.LOOSE_BAND))
        if not in_band:
            return None

        low_steps = steps.remaining <= self.LOW_STEPS_PRESSURE
        pressured = (
            no_progress_streak >= self.NO_PROGRESS_PRESSURE
            or rejection_streak >= self.REJECTION_PRESSURE
            or low_steps
        )
        if not pressured:
            return None

        low_signal = [a.tool for a in state.actions if a.tool in LOW_SIGNAL_TOOLS]
        if len(low_signal) / len(state.actions) < self.LOW_SIGNAL_SHARE:
            return None

        blockers = [f"Confidence {confidence:.0%} is below the {self.STRICT_BAND[1]:.0%} needed to finish"]
        if no_progress_streak:
            blockers.append(f"No sub-goal progress for {no_progress_streak} step(s)")
        if loop_signals:
            blockers.append(f"{loop_signals} loop or duplicate signal(s) detected")
        if rejection_streak:
            blockers.append(f"Completion rejected {rejection_streak} time(s) in a row")
        blockers.append("Planned actions are mostly low-signal: " + ", ".join(low_signal))
        if low_steps:
            blockers.append(f"Only {steps.remaining} step(s) left of {steps.total}")

        self.count += 1
        return blockers


def _within(value: float, band: tuple[float, float]) -> bool:
    low, high = band
    return low <= value < high


# ---------------------------------------------------------------------------
# Pause channel
# ---------------------------------------------------------------------------


class ResumeKind(str, Enum):
    RESUMED = "resumed"
    ABORTED = "aborted"
    PARTIAL = "partial"


@dataclass(frozen=True)
class ResumeSignal:
    kind: ResumeKind
    guidance: str = ""


class PauseGate:
    """
    One-shot channel between a paused run and its operator.

    The run calls open() and awaits wait(); the first resolve() wins and
    later ones return False. resolve() may be called from another thread.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._claimed = False
        self._lock = threading.Lock()

    @property
    def waiting(self) -> bool:
        return self._future is not None and not self._claimed

    def open(self) -> None:
        self._loop = asyncio.get_running_loop()
        with self._lock:
            self._future = self._loop.create_future()
            self._claimed = False

    async def wait(self) -> ResumeSignal:
        if self._future is None:
            raise RuntimeError("PauseGate.wait() called before open()")
        try:
            return await self._future
        finally:
            with self._lock:
                self._future = None

    def resolve(self, signal: ResumeSignal) -> bool:
        with self._lock:
            future = self._future
            if future is None or self._claimed or future.done():
                return False
            self._claimed = True
        self._loop.call_soon_threadsafe(_settle, future, signal)
        return True


def _settle(future: asyncio.Future, signal: ResumeSignal) -> None:
    if not future.done():
        future.set_result(signal)
