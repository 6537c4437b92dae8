import asyncio
import pytest
from unittest.mock import AsyncMock
from browse_pilot.budget import BudgetMonitor
from browse_pilot.models import ActionEntry, BackendResponse, Budget, ReflectionState, ToolCall, Usage
from browse_pilot.reflection import (
    ReflectionFormatError,
    ReflectionSignals,
    ReflectionStep,
    StepBudget,
    best_effort_answer,
    derive_goal_query,
    extract_json_object,
    ids_likely_stale,
)
from browse_pilot.tools import ALL_TOOLS

ALLOWED = list(ALL_TOOLS)


def raw(**overrides):
    payload = {
        "facts": [],
        "unknowns": [],
        "sufficiency": False,
        "confidence": 0.5,
        "summary": "",
        "answer": "",
        "actions": [{"tool": "read_page", "args": {}}],
    }
    payload.update(overrides)
    return payload


def signals(**overrides):
    values = {"steps": StepBudget(total=20, used=3)}
    values.update(overrides)
    return ReflectionSignals(**values)


def reflection_call(payload, tokens=100):
    return BackendResponse(
        tool_calls=[ToolCall(id="r1", name="submit_reflection", arguments=payload)],
        usage=Usage(total_tokens=tokens),
    )


def make_step(backend=None, budget=None):
    return ReflectionStep(backend or AsyncMock(), BudgetMonitor(budget or Budget()), timeout_s=30)


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def test_extract_plain_and_fenced_json():
    assert extract_json_object('{"facts": []}') == {"facts": []}
    text = 'Here you go:\n```json\n{"facts": ["a"], "confidence": 0.4}\n```'
    assert extract_json_object(text) == {"facts": ["a"], "confidence": 0.4}

def test_extract_wrapped_call_and_arguments_envelope():
    assert extract_json_object('submit_reflection({"facts": ["x"]})') == {"facts": ["x"]}
    envelope = '{"name": "submit_reflection", "arguments": "{\\"facts\\": [\\"y\\"]}"}'
    assert extract_json_object(envelope) == {"facts": ["y"]}

def test_extract_returns_none_for_garbage():
    assert extract_json_object("") is None
    assert extract_json_object("no json here") is None
    assert extract_json_object("[1, 2, 3]") is None

# ---------------------------------------------------------------------------
# Confidence normalization
# ---------------------------------------------------------------------------

def test_unknowns_cap_confidence_and_veto_sufficiency():
    state = make_step().normalize(
        raw(facts=["18°C"], unknowns=["humidity"], sufficiency=True, confidence=0.95, actions=None),
        ALLOWED,
        signals(),
    )
    assert state.confidence == pytest.approx(0.74)
    assert state.sufficiency is False
    # Not sufficient and nothing planned: a safe observation is added.
    assert [a.tool for a in state.actions] == ["get_page_text"]

def test_no_facts_cap():
    state = make_step().normalize(raw(confidence=0.9), ALLOWED, signals())
    assert state.confidence == pytest.approx(0.4)

def test_stagnation_and_loop_penalties():
    state = make_step().normalize(
        raw(facts=["a"], confidence=1.0), ALLOWED, signals(no_progress_streak=2, loop_signals=1)
    )
    assert state.components.stagnation_penalty == pytest.approx(0.81)
    assert state.components.loop_penalty == pytest.approx(0.85)
    assert state.confidence == pytest.approx(0.81 * 0.85)
    assert state.components.raw == 1.0

def test_penalty_floor():
    state = make_step().normalize(raw(facts=["a"], confidence=1.0), ALLOWED, signals(no_progress_streak=50))
    assert state.components.stagnation_penalty == pytest.approx(0.3)

def test_sufficient_with_actions_is_downgraded():
    state = make_step().normalize(
        raw(facts=["a"], sufficiency=True, confidence=0.9, actions=[{"tool": "read_page", "args": {}}]),
        ALLOWED,
        signals(),
    )
    assert state.sufficiency is False

def test_clean_sufficient_reflection_has_no_actions():
    state = make_step().normalize(
        raw(facts=["Berlin 18°C"], sufficiency=True, confidence=0.9, answer="18°C", actions=None),
        ALLOWED,
        signals(),
    )
    assert state.sufficiency is True
    assert state.actions == []

def test_emergency_convergence_on_last_step():
    state = make_step().normalize(
        raw(facts=["Berlin 18°C", "cloudy"], confidence=0.5), ALLOWED, signals(steps=StepBudget(10, 9))
    )
    assert state.sufficiency is True
    assert state.answer == "Berlin 18°C; cloudy"

def test_confidence_is_clamped():
    state = make_step().normalize(raw(facts=["a"], confidence="7"), ALLOWED, signals())
    assert state.components.raw == 1.0
    state = make_step().normalize(raw(facts=["a"], confidence="nope"), ALLOWED, signals())
    assert state.confidence == 0.0

# ---------------------------------------------------------------------------
# Action normalization
# ---------------------------------------------------------------------------

def test_done_in_actions_is_rewritten():
    state = make_step().normalize(
        raw(summary="draft findings", actions=[{"tool": "done", "args": {"answer": "x"}}]), ALLOWED, signals()
    )
    assert state.actions[0].tool == "save_progress"
    assert state.actions[0].args == {"data": {"draft_summary": "draft findings"}}

def test_disallowed_tool_becomes_safe_observation():
    step = make_step()
    state = step.normalize(raw(actions=[{"tool": "teleport", "args": {}}]), ["read_page", "click"], signals())
    assert [a.tool for a in state.actions] == ["read_page"]
    assert step.invalid_actions == 1

def test_find_query_filled_from_search_query_or_goal():
    step = make_step()
    state = step.normalize(
        raw(search_query="berlin weather", actions=[{"tool": "find_text", "args": {}}]), ALLOWED, signals()
    )
    assert state.actions[0].args["query"] == "berlin weather"

    state = step.normalize(raw(actions=[{"tool": "find", "args": {}}]), ALLOWED, signals(goal_query="opening hours"))
    assert state.actions[0].args["query"] == "opening hours"

def test_actions_with_missing_args_are_dropped():
    step = make_step()
    state = step.normalize(
        raw(actions=[{"tool": "click", "args": {}}, {"tool": "navigate", "args": {"url": "https://a.example"}}]),
        ALLOWED,
        signals(),
    )
    assert [a.tool for a in state.actions] == ["navigate"]
    assert step.invalid_actions == 1

def test_click_with_stale_ids_becomes_read_page():
    state = make_step().normalize(
        raw(actions=[{"tool": "click", "args": {"target": "e3"}}]), ALLOWED, signals(ids_stale=True)
    )
    assert state.actions[0].tool == "read_page"

def test_actions_are_deduped_and_capped():
    actions = [{"tool": "read_page", "args": {}}] * 3 + [
        {"tool": "get_page_text", "args": {"scope": s}} for s in ("a", "b", "c", "d")
    ]
    state = make_step().normalize(raw(actions=actions), ALLOWED, signals())
    assert len(state.actions) == 4
    assert [a.tool for a in state.actions].count("read_page") == 1

def test_missing_required_field_is_rejected():
    payload = raw()
    del payload["confidence"]
    with pytest.raises(ReflectionFormatError, match="confidence"):
        make_step().normalize(payload, ALLOWED, signals())

# ---------------------------------------------------------------------------
# Running the reflection call
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_run_records_usage_and_returns_state():
    backend = AsyncMock()
    backend.propose.return_value = reflection_call(raw(facts=["a"]), tokens=321)
    step = make_step(backend)
    outcome = await step.run(0, [{"role": "user", "content": "Task: x"}], ALLOWED, signals())

    assert outcome.fallback is False
    assert outcome.state.facts == ["a"]
    assert step.calls == 1
    assert step._budget.tokens_used == 321
    _, kwargs = backend.propose.call_args
    assert kwargs["tool_choice"] == "required"

@pytest.mark.asyncio
async def test_run_retries_malformed_output():
    backend = AsyncMock()
    backend.propose.side_effect = [
        BackendResponse(text="I think we should click"),
        reflection_call(raw(facts=["b"])),
    ]
    step = make_step(backend)
    outcome = await step.run(1, [], ALLOWED, signals())
    assert outcome.state.facts == ["b"]
    assert step.calls == 2
    retry_messages = backend.propose.call_args_list[1].args[0]
    assert "Previous response was invalid" in retry_messages[-1]["content"]

@pytest.mark.asyncio
async def test_run_raises_after_retries_exhausted():
    backend = AsyncMock()
    backend.propose.return_value = BackendResponse(text="still not json")
    step = make_step(backend)
    with pytest.raises(ReflectionFormatError):
        await step.run(1, [], ALLOWED, signals())
    assert step.calls == ReflectionStep.MAX_RETRIES + 1

@pytest.mark.asyncio
async def test_run_falls_back_on_timeout():
    backend = AsyncMock()
    backend.propose.side_effect = asyncio.TimeoutError()
    outcome = await make_step(backend).run(2, [], ALLOWED, signals(goal_query="weather"))
    assert outcome.fallback is True
    assert outcome.state.confidence == pytest.approx(0.05)
    assert outcome.state.sufficiency is False
    assert outcome.state.actions[0].tool == "get_page_text"
    assert "timed out" in outcome.error

@pytest.mark.asyncio
async def test_run_skips_call_when_budget_precheck_fails():
    backend = AsyncMock()
    step = make_step(backend, Budget(max_total_tokens=100))
    outcome = await step.run(0, [{"role": "user", "content": "Task: x"}], ALLOWED, signals())
    assert outcome.state is None
    assert outcome.budget_stop.kind == "tokens"
    backend.propose.assert_not_called()

def test_parse_reads_text_when_no_tool_call():
    response = BackendResponse(text='```json\n{"facts": ["t"]}\n```')
    assert make_step().parse(response) == {"facts": ["t"]}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_ids_stale_after_navigation():
    history = [
        ActionEntry(step=0, tool="read_page", result={"success": True}),
        ActionEntry(step=1, tool="navigate", args={"url": "https://a.example"}, result={"success": True}),
    ]
    assert ids_likely_stale(history) is True
    history.append(ActionEntry(step=2, tool="find", args={"query": "x"}, result={"success": True}))
    assert ids_likely_stale(history) is False

def test_derive_goal_query_strips_prefix_and_quotes():
    assert derive_goal_query('Task: "weather in Berlin"') == "weather in Berlin"

def test_best_effort_answer_lists_findings_and_gaps():
    state = ReflectionState(facts=["18°C"], unknowns=["wind speed"], answer="Mild weather")
    summary, answer = best_effort_answer(state)
    assert summary == "Returning best-effort result from collected evidence."
    assert answer.startswith("Mild weather")
    assert "Collected findings:\n- 18°C" in answer
    assert "Potential gaps:\n- wind speed" in answer
    assert best_effort_answer(ReflectionState()) is None
    assert best_effort_answer(None) is None
