import asyncio
import pytest
from browse_pilot.guidance import GuidanceEscalation, PauseGate, ResumeKind, ResumeSignal
from browse_pilot.models import PlannedAction, ReflectionState
from browse_pilot.reflection import StepBudget

PLENTY = StepBudget(total=30, used=5)


def stalled_state(confidence=0.6, tools=("read_page", "scroll")):
    return ReflectionState(
        facts=["Opening hours listed for weekdays"],
        unknowns=["weekend hours"],
        confidence=confidence,
        actions=[PlannedAction(tool=t, args={}) for t in tools],
    )


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def test_escalates_on_medium_confidence_without_progress():
    escalation = GuidanceEscalation()
    blockers = escalation.evaluate(
        stalled_state(), no_progress_streak=3, rejection_streak=0, loop_signals=0, steps=PLENTY
    )
    assert blockers is not None
    assert any("No sub-goal progress for 3 step(s)" in b for b in blockers)
    assert any("low-signal" in b for b in blockers)
    assert escalation.count == 1

def test_no_escalation_without_pressure():
    escalation = GuidanceEscalation()
    assert escalation.evaluate(
        stalled_state(), no_progress_streak=1, rejection_streak=0, loop_signals=0, steps=PLENTY
    ) is None
    assert escalation.count == 0

def test_no_escalation_outside_confidence_band():
    escalation = GuidanceEscalation()
    assert escalation.evaluate(
        stalled_state(confidence=0.2), no_progress_streak=5, rejection_streak=0, loop_signals=0, steps=PLENTY
    ) is None

def test_loose_band_applies_when_stalled():
    escalation = GuidanceEscalation()
    blockers = escalation.evaluate(
        stalled_state(confidence=0.35), no_progress_streak=3, rejection_streak=0, loop_signals=1, steps=PLENTY
    )
    assert blockers is not None

def test_no_escalation_when_actions_are_high_signal():
    escalation = GuidanceEscalation()
    state = stalled_state(tools=("get_page_text", "extract_structured"))
    assert escalation.evaluate(
        state, no_progress_streak=4, rejection_streak=0, loop_signals=0, steps=PLENTY
    ) is None

def test_low_remaining_steps_is_pressure():
    escalation = GuidanceEscalation()
    blockers = escalation.evaluate(
        stalled_state(), no_progress_streak=0, rejection_streak=0, loop_signals=0, steps=StepBudget(30, 26)
    )
    assert any("Only 4 step(s) left" in b for b in blockers)

def test_escalation_is_capped_per_run():
    escalation = GuidanceEscalation()
    for _ in range(GuidanceEscalation.MAX_ESCALATIONS):
        assert escalation.evaluate(
            stalled_state(), no_progress_streak=3, rejection_streak=0, loop_signals=0, steps=PLENTY
        )
    assert escalation.exhausted
    assert escalation.evaluate(
        stalled_state(), no_progress_streak=9, rejection_streak=3, loop_signals=3, steps=PLENTY
    ) is None

def test_restore_clamps_count():
    escalation = GuidanceEscalation()
    escalation.restore(99)
    assert escalation.count == GuidanceEscalation.MAX_ESCALATIONS
    escalation.restore(-4)
    assert escalation.count == 0

# ---------------------------------------------------------------------------
# PauseGate
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_pause_gate_first_resolve_wins():
    gate = PauseGate()
    assert gate.resolve(ResumeSignal(ResumeKind.RESUMED)) is False

    gate.open()
    assert gate.waiting
    assert gate.resolve(ResumeSignal(ResumeKind.RESUMED, "try the archive page")) is True
    assert gate.resolve(ResumeSignal(ResumeKind.ABORTED)) is False

    signal = await gate.wait()
    assert signal.kind == ResumeKind.RESUMED
    assert signal.guidance == "try the archive page"
    assert not gate.waiting

@pytest.mark.asyncio
async def test_pause_gate_resolves_from_another_thread():
    gate = PauseGate()
    gate.open()
    loop = asyncio.get_running_loop()
    accepted = await loop.run_in_executor(None, gate.resolve, ResumeSignal(ResumeKind.PARTIAL))
    assert accepted is True
    signal = await asyncio.wait_for(gate.wait(), timeout=2)
    assert signal.kind == ResumeKind.PARTIAL

@pytest.mark.asyncio
async def test_wait_before_open_is_an_error():
    with pytest.raises(RuntimeError):
        await PauseGate().wait()
