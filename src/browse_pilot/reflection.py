# reflection.py
# The reflection step: one structured reasoning call per iteration.
#
# The backend must answer with a single `submit_reflection` call whose
# payload is a ReflectionState. Free-form tool calls are never executed.
# Parsing tolerates text answers (plain JSON, fenced JSON, a wrapped call)
# and re-asks up to MAX_RETRIES times before raising ReflectionFormatError,
# which the harness treats as a recoverable per-step error.
#
# Normalization discounts the raw confidence for stagnation and loop
# signals and then only ever caps it; it never raises it.

import asyncio
import json
import logging
import re
from dataclasses import dataclass

from browse_pilot.budget import BudgetMonitor
from browse_pilot.models import ActionEntry, BudgetExceeded, PlannedAction, ReflectionState, ConfidenceComponents
from browse_pilot.tools import TERMINAL_TOOLS, missing_args, spec_for

logger = logging.getLogger(__name__)


class ReflectionFormatError(Exception):
    """Raised when reflection output is still malformed after every retry. Recoverable."""


REFLECTION_TOOL = {
    "name": "submit_reflection",
    "description": "Submit structured reflection state before taking an action.",
    "parameters": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "facts": {"type": "array", "items": {"type": "string"}},
            "unknowns": {"type": "array", "items": {"type": "string"}},
            "sufficiency": {"type": "boolean"},
            "confidence": {"type": "number"},
            "search_query": {"type": "string"},
            "summary": {"type": "string"},
            "answer": {"type": "string"},
            "actions": {
                "oneOf": [
                    {"type": "null"},
                    {
                        "type": "array",
                        "minItems": 1,
                        "maxItems": 4,
                        "items": {
                            "type": "object",
                            "additionalProperties": False,
                            "properties": {"tool": {"type": "string"}, "args": {"type": "object"}},
                            "required": ["tool", "args"],
                        },
                    },
                ]
            },
        },
        "required": ["facts", "unknowns", "sufficiency", "confidence", "summary", "answer", "actions"],
    },
}

REQUIRED_FIELDS = tuple(REFLECTION_TOOL["parameters"]["required"])

NAVIGATION_TOOLS = frozenset(
    {"navigate", "back", "forward", "reload", "open_tab", "switch_tab", "close_tab", "switch_frame"}
)
ID_REFRESH_TOOLS = frozenset({"read_page", "find"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepBudget:
    total: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.total - self.used, 0)

    @property
    def urgency(self) -> str:
        if self.remaining <= 1:
            return "critical"
        if self.remaining <= 3:
            return "high"
        if self.remaining <= 8:
            return "medium"
        return "normal"

    @property
    def near_limit(self) -> bool:
        return self.remaining <= 3

    @property
    def critical(self) -> bool:
        return self.remaining <= 1


@dataclass
class ReflectionSignals:
    """Run state the normalizer needs but does not own."""

    steps: StepBudget
    no_progress_streak: int = 0
    loop_signals: int = 0
    progress_ratio: float = 0.0
    ids_stale: bool = False
    goal_query: str = ""


@dataclass
class ReflectionOutcome:
    state: ReflectionState | None
    fallback: bool = False
    error: str = ""
    budget_stop: BudgetExceeded | None = None


def extract_json_object(text: str) -> dict | None:
    """
    Pull a JSON object out of model text.

    Tries, in order: the whole text, a fenced ```json block, a
    submit_reflection({...}) wrapper, a <tool_call> tag, and finally the
    span from the first '{' to the last '}'.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    fence = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fence:
        candidates.append(fence.group(1).strip())
    wrapper = re.search(r"submit_reflection\s*\(\s*(\{.*\})\s*\)", text, re.DOTALL)
    if wrapper:
        candidates.append(wrapper.group(1))
    tagged = re.search(r"<tool_call>\s*(.*?)\s*</tool_call>", text, re.DOTALL)
    if tagged:
        candidates.append(tagged.group(1))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])

    for candidate in candidates:
        try:
            value = json.loads(candidate, strict=False)
        except json.JSONDecodeError:
            continue
        if not isinstance(value, dict):
            continue
        # {"name": "submit_reflection", "arguments": {...}}
        inner = value.get("arguments")
        if "facts" not in value and isinstance(inner, str):
            inner = extract_json_object(inner)
        if "facts" not in value and isinstance(inner, dict):
            return inner
        return value
    return None


def _clamp(value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return min(max(number, 0.0), 1.0)


def _as_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _string_list(value, max_items: int, max_chars: int) -> list[str]:
    if not isinstance(value, list):
        return []
    items = []
    for item in value:
        text = str(item if item is not None else "").strip()
        if text:
            items.append(text[:max_chars])
        if len(items) >= max_items:
            break
    return items


def ids_likely_stale(history: list) -> bool:
    """True when a navigation happened after the last read_page/find refreshed element ids."""
    last_nav = last_refresh = -1
    for index, entry in enumerate(history):
        if not isinstance(entry, ActionEntry) or entry.result.get("success") is False:
            continue
        if entry.tool in NAVIGATION_TOOLS:
            last_nav = index
        elif entry.tool in ID_REFRESH_TOOLS:
            last_refresh = index
    return last_nav >= 0 and last_nav > last_refresh


def derive_goal_query(goal: str) -> str:
    query = re.sub(r"^task:\s*", "", goal.strip(), flags=re.IGNORECASE)
    query = query.strip("\"'«»“”„ ")
    return query[:120].strip()


def best_effort_answer(state: ReflectionState | None) -> tuple[str, str] | None:
    """Summary and answer assembled from whatever the last reflection collected."""
    if state is None:
        return None
    facts = state.facts[:20]
    unknowns = state.unknowns[:8]
    summary = state.summary.strip()[:500]
    answer = state.answer.strip()[:5000]
    if not summary and not answer and not facts:
        return None

    parts = [answer] if answer else []
    if facts:
        parts.append("Collected findings:\n" + "\n".join(f"- {f}" for f in facts))
    if unknowns:
        parts.append("Potential gaps:\n" + "\n".join(f"- {u}" for u in unknowns))
    return (
        summary or "Returning best-effort result from collected evidence.",
        "\n\n".join(parts)[:7000],
    )


def digest(state: ReflectionState, steps: StepBudget | None = None) -> str:
    """One-line record of a reflection for the history log."""
    parts = [
        f"reflect: sufficiency={'yes' if state.sufficiency else 'no'}",
        f"confidence={round(state.confidence * 100)}%",
    ]
    if state.components is not None:
        parts.append(f"progress={round(state.components.progress_ratio * 100)}%")
        parts.append(f"stagnation_penalty={state.components.stagnation_penalty:.2f}")
    tools = ">".join(a.tool for a in state.actions)
    parts.append(f"actions={tools or 'none'}")
    if steps is not None:
        parts.append(f"steps_left={steps.remaining}/{steps.total}")
    if state.search_query:
        parts.append(f"search_query={state.search_query}")
    if state.facts:
        parts.append("facts=" + " | ".join(state.facts[:3]))
    if state.unknowns:
        parts.append("unknowns=" + " | ".join(state.unknowns[:2]))
    return ", ".join(parts)


# ---------------------------------------------------------------------------
# ReflectionStep
# ---------------------------------------------------------------------------


class ReflectionStep:
    """
    Runs the reflection call and turns its output into a ReflectionState.

    Example:
        step = ReflectionStep(backend, monitor, timeout_s=30)
        outcome = await step.run(3, messages, allowed, signals)
    """

    CONFIDENCE_THRESHOLD = 0.75
    MAX_ACTIONS = 4
    MAX_RETRIES = 2
    STAGNATION_DECAY_BASE = 0.9
    LOOP_DECAY_BASE = 0.85
    PENALTY_FLOOR = 0.3
    UNKNOWNS_CAP = 0.74
    NO_FACTS_CAP = 0.4
    MAX_FACTS = 16
    MAX_UNKNOWNS = 12
    ITEM_CHARS = 320

    def __init__(self, backend, budget: BudgetMonitor, timeout_s: float = 30.0) -> None:
        self._backend = backend
        self._budget = budget
        self.timeout_s = min(max(timeout_s, 1.0), 180.0)
        self.calls = 0
        self.invalid_actions = 0

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, step: int, allowed: list[str], steps: StepBudget, last_action: ActionEntry | None = None) -> str:
        tool_lines = []
        for name in allowed:
            spec = spec_for(name)
            if spec is not None:
                tool_lines.append(f"- {name}: {spec.description}")

        lines = [
            f"Reflection checkpoint for step {step}.",
            "Think before you act. Answer with exactly one submit_reflection call.",
            "Allowed tools:",
            *tool_lines,
            f"Step budget: used={steps.used}, remaining={steps.remaining}, total={steps.total}, urgency={steps.urgency}.",
        ]
        if steps.near_limit:
            lines.append("Remaining steps are low: avoid detours and consolidate the evidence you already have.")
        if steps.critical:
            lines.append("Last step: if you have concrete facts, set sufficiency=true with the best available answer.")
        if last_action is not None and last_action.tool == "navigate" and last_action.result.get("page_text"):
            lines.append("The last navigate already returned page_text; do not re-read it if it answers the current sub-goal.")
        lines += [
            f"Stopping rule: if confidence >= {self.CONFIDENCE_THRESHOLD} and every requested part is covered, "
            "set sufficiency=true and actions=null.",
            f"If sufficiency=false, actions must hold 1-{self.MAX_ACTIONS} allowed tool calls and none may be done.",
            "If sufficiency=true, unknowns must be empty.",
            "Confidence rubric: 0.5 partial or weak evidence, 0.8 direct answer from the target page, "
            "0.95 several consistent direct findings.",
            "Do not repeat the same tool with the same args unless the page changed.",
            "On a search-results page that stopped adding evidence, the next action must open a result.",
            "If a query failed repeatedly, reformulate it or switch source.",
            "Each action's args must include the tool's required parameters (find.query, type.target+text, navigate.url).",
        ]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, step: int, messages: list[dict], allowed: list[str], signals: ReflectionSignals,
                  last_action: ActionEntry | None = None) -> ReflectionOutcome:
        prompt = self.build_prompt(step, allowed, signals.steps, last_action)
        last_error = ""

        for attempt in range(self.MAX_RETRIES + 1):
            suffix = "" if attempt == 0 else (
                f"\nPrevious response was invalid ({last_error}). Retry with the submit_reflection call only."
            )
            request = [*messages, {"role": "user", "content": prompt + suffix}]

            stop = self._budget.precheck(request, [REFLECTION_TOOL], label="reflection")
            if stop is not None:
                return ReflectionOutcome(None, error=stop.reason, budget_stop=stop)

            self.calls += 1
            try:
                response = await asyncio.wait_for(
                    self._backend.propose(request, [REFLECTION_TOOL], tool_choice="required"),
                    timeout=self.timeout_s,
                )
            except asyncio.TimeoutError:
                reason = f"Reflection timed out after {self.timeout_s:g}s"
                logger.warning("%s at step %d; using fallback action", reason, step)
                return ReflectionOutcome(self.fallback(allowed, signals, reason), fallback=True, error=reason)

            self._budget.record_usage(response.usage)
            try:
                return ReflectionOutcome(self.normalize(self.parse(response), allowed, signals))
            except ReflectionFormatError as exc:
                last_error = str(exc)
                logger.debug("Reflection attempt %d rejected: %s", attempt + 1, exc)

        raise ReflectionFormatError(last_error)

    def parse(self, response) -> dict | None:
        for call in response.tool_calls:
            if call.name != REFLECTION_TOOL["name"]:
                continue
            if call.arguments:
                return call.arguments
            if call.raw_arguments:
                return extract_json_object(call.raw_arguments)
        return extract_json_object(response.text or "")

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, raw: dict | None, allowed: list[str], signals: ReflectionSignals) -> ReflectionState:
        if not isinstance(raw, dict):
            raise ReflectionFormatError("Reflection must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if name not in raw]
        if missing:
            raise ReflectionFormatError(f"missing required field(s): {', '.join(missing)}")

        facts = _string_list(raw["facts"], self.MAX_FACTS, self.ITEM_CHARS)
        unknowns = _string_list(raw["unknowns"], self.MAX_UNKNOWNS, self.ITEM_CHARS)
        sufficiency = _as_bool(raw["sufficiency"])
        raw_confidence = _clamp(raw["confidence"])
        summary = str(raw.get("summary") or "").strip()[:2000]
        answer = str(raw.get("answer") or "").strip()[:5000]
        search_query = re.sub(r"\s+", " ", str(raw.get("search_query") or "")).strip()[:160]

        planned = raw.get("actions")
        if not isinstance(planned, list):
            planned = [raw["next_action"]] if isinstance(raw.get("next_action"), dict) else []
        actions = self._normalize_actions(planned, allowed, signals, search_query or signals.goal_query, summary)

        stagnation = max(self.PENALTY_FLOOR, self.STAGNATION_DECAY_BASE ** max(signals.no_progress_streak, 0))
        loop = max(self.PENALTY_FLOOR, self.LOOP_DECAY_BASE ** max(signals.loop_signals, 0))
        confidence = raw_confidence * stagnation * loop
        if unknowns:
            confidence = min(confidence, self.UNKNOWNS_CAP)
        if not facts:
            confidence = min(confidence, self.NO_FACTS_CAP)

        if sufficiency and (unknowns or confidence < self.CONFIDENCE_THRESHOLD or actions):
            sufficiency = False

        if not sufficiency and signals.steps.critical and facts:
            # Out of steps with evidence in hand: hand it to the completion gate.
            sufficiency = True
            if not answer:
                answer = "; ".join(facts)

        if sufficiency:
            actions = []
        elif not actions:
            actions = [self.safe_observation(allowed)]

        return ReflectionState(
            facts=facts,
            unknowns=unknowns,
            sufficiency=sufficiency,
            confidence=confidence,
            summary=summary,
            answer=answer,
            search_query=search_query,
            actions=actions,
            components=ConfidenceComponents(
                raw=raw_confidence,
                stagnation_penalty=stagnation,
                loop_penalty=loop,
                progress_ratio=signals.progress_ratio,
                effective=confidence,
            ),
        )

    def _normalize_actions(self, planned: list, allowed: list[str], signals: ReflectionSignals,
                           query: str, summary: str) -> list[PlannedAction]:
        actions: list[PlannedAction] = []
        seen: set[str] = set()
        for item in planned:
            if len(actions) >= self.MAX_ACTIONS:
                break
            if not isinstance(item, dict):
                self.invalid_actions += 1
                continue
            tool = str(item.get("tool") or item.get("name") or "").strip()
            args = dict(item.get("args")) if isinstance(item.get("args"), dict) else {}

            if tool == "done":
                tool, args = self._instead_of_done(allowed, summary)
            elif tool not in allowed:
                self.invalid_actions += 1
                fallback = self.safe_observation(allowed)
                tool, args = fallback.tool, fallback.args

            if tool in ("find", "find_text") and not str(args.get("query") or "").strip() and query:
                args["query"] = query
            if missing_args(tool, args):
                self.invalid_actions += 1
                continue
            if tool == "click" and signals.ids_stale:
                tool, args = "read_page", {}

            key = json.dumps([tool, args], sort_keys=True, default=str)
            if key in seen:
                continue
            seen.add(key)
            actions.append(PlannedAction(tool=tool, args=args))
            if tool in TERMINAL_TOOLS:
                break
        return actions

    def _instead_of_done(self, allowed: list[str], summary: str) -> tuple[str, dict]:
        if "save_progress" in allowed and summary:
            return "save_progress", {"data": {"draft_summary": summary}}
        for tool, args in (("extract_structured", {}), ("get_page_text", {"scope": "viewport"})):
            if tool in allowed:
                return tool, args
        fallback = self.safe_observation(allowed)
        return fallback.tool, fallback.args

    def safe_observation(self, allowed: list[str]) -> PlannedAction:
        """The least risky observation available in the permitted tool set."""
        for tool, args in (("get_page_text", {"scope": "viewport"}), ("read_page", {}), ("list_tabs", {})):
            if tool in allowed:
                return PlannedAction(tool=tool, args=args)
        first = next((t for t in allowed if t not in TERMINAL_TOOLS and not missing_args(t, {})), None)
        return PlannedAction(tool=first or "get_page_text", args={})

    def fallback(self, allowed: list[str], signals: ReflectionSignals, reason: str = "") -> ReflectionState:
        """Conservative state used when the backend did not answer in time."""
        return ReflectionState(
            facts=[],
            unknowns=[reason[:260] if reason else "Need a fresh observation to continue."],
            sufficiency=False,
            confidence=0.05,
            search_query=signals.goal_query,
            actions=[self.safe_observation(allowed)],
        )
