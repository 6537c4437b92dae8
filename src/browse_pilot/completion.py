# completion.py
# The gate every `done` passes through, explicit or reflection-driven.
#
# Three checks run in order and the first rejection wins:
#   premature  -> nothing (or nothing useful) has been done yet
#   quality    -> the answer is empty or carries no factual signal
#   coverage   -> some part of the goal has no supporting evidence
#
# Rejections are recoverable. From FORCE_EVIDENCE_AFTER rejections on, each
# rejection owes exactly one evidence action before the next attempt; the
# streak ends the run as stuck at STUCK_AFTER.

import re
from dataclasses import dataclass, field

from browse_pilot.loop_guard import GUARD_CODES, is_search_results_url
from browse_pilot.models import ActionEntry, PlannedAction
from browse_pilot.reflection import StepBudget
from browse_pilot.subgoals import extract_goal_subtasks, extract_keywords, keyword_hits
from browse_pilot.tools import READ_EVIDENCE_TOOLS, TERMINAL_TOOLS, is_high_signal, parse_result, result_text

_INFO_GOAL = re.compile(
    r"\b(what|who|when|where|which|how many|how much|find|price|cost|weather|temperature|list|compare|"
    r"search|look up|lookup|check|tell me|show me|get)\b",
    re.IGNORECASE,
)
_FACT_SIGNAL = re.compile(r"\d|https?://|\"[^\"]{3,}\"|«[^»]{3,}»|“[^”]{3,}”")
_PROCESS_ONLY = re.compile(
    r"^\s*(i\s+)?(navigated|opened|clicked|visited|went|scrolled|searched|typed|loaded)\b",
    re.IGNORECASE,
)


@dataclass
class GateVerdict:
    accepted: bool
    code: str | None = None
    reason: str = ""
    missing: list[str] = field(default_factory=list)
    # Sub-tasks the final summary+answer does not state, even though the run
    # gathered evidence for them. A result with any of these is partial.
    unstated: list[str] = field(default_factory=list)
    answer_addendum: str = ""
    force_evidence: bool = False
    stuck: bool = False


class CompletionGate:
    """
    Decides whether a completion attempt is accepted.

    Example:
        gate = CompletionGate()
        verdict = gate.evaluate(goal, summary, answer, history, StepBudget(50, 7))
        if not verdict.accepted:
            ...
    """

    PREMATURE_WINDOW = 8
    PREMATURE_FAIL_RATIO = 0.5
    MIN_INFO_ANSWER_CHARS = 40
    COVERAGE_CORPUS_ENTRIES = 24
    REQUIRED_KEYWORD_HITS = 2
    NAVIGATE_TEXT_AS_READ = 40
    FORCE_EVIDENCE_AFTER = 2
    STUCK_AFTER = 5

    def __init__(self) -> None:
        self.rejection_streak = 0
        self.attempts = 0
        self.rejections = 0
        self._evidence_owed = False

    @property
    def evidence_required(self) -> bool:
        """True after a forcing rejection until one evidence action has run."""
        return self._evidence_owed

    def evidence_satisfied(self) -> None:
        """The forced evidence action ran; the streak itself is kept."""
        self._evidence_owed = False

    def reset_streak(self) -> None:
        self.rejection_streak = 0
        self._evidence_owed = False

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, goal: str, summary: str, answer: str, history: list, steps: StepBudget) -> GateVerdict:
        self.attempts += 1
        actions = _dispatched(history)
        verdict = (
            self._premature(actions)
            or self._quality(goal, summary, answer, actions)
            or self._coverage(goal, summary, answer, actions, steps)
        )

        if verdict.accepted:
            self.reset_streak()
            return verdict

        self.rejections += 1
        self.rejection_streak += 1
        verdict.force_evidence = self.rejection_streak >= self.FORCE_EVIDENCE_AFTER
        verdict.stuck = self.rejection_streak >= self.STUCK_AFTER
        self._evidence_owed = verdict.force_evidence and not verdict.stuck
        return verdict

    def _premature(self, actions: list[ActionEntry]) -> GateVerdict | None:
        if not actions:
            return GateVerdict(False, "PREMATURE_DONE", "Cannot finish before taking any action.")
        if not any(_ok(entry) for entry in actions):
            return GateVerdict(False, "PREMATURE_DONE", "Cannot finish: no action has succeeded yet.")

        window = actions[-self.PREMATURE_WINDOW :]
        failures = sum(1 for entry in window if not _ok(entry))
        read_ok = any(_ok(entry) and entry.tool in READ_EVIDENCE_TOOLS for entry in window)
        if failures / len(window) >= self.PREMATURE_FAIL_RATIO and not read_ok:
            return GateVerdict(
                False,
                "PREMATURE_DONE",
                f"Cannot finish: {failures} of the last {len(window)} actions failed and nothing was read since.",
            )
        return None

    def _quality(self, goal: str, summary: str, answer: str, actions: list[ActionEntry]) -> GateVerdict | None:
        combined = f"{summary}\n{answer}".strip()
        if not combined:
            return GateVerdict(False, "DONE_QUALITY_FAILED", "Completion needs a non-empty summary or answer.")
        if not _INFO_GOAL.search(goal):
            return None

        has_signal = bool(_FACT_SIGNAL.search(combined))
        if _PROCESS_ONLY.match(answer or summary) and not has_signal:
            return GateVerdict(
                False,
                "DONE_QUALITY_FAILED",
                "The answer describes the steps taken, not the information that was asked for.",
            )
        if len(combined) < self.MIN_INFO_ANSWER_CHARS and not has_signal and not self._recent_high_signal(actions):
            return GateVerdict(
                False,
                "DONE_QUALITY_FAILED",
                "The answer is too short and carries no concrete facts (numbers, links or quotes).",
            )
        return None

    def _coverage(self, goal: str, summary: str, answer: str, actions: list[ActionEntry],
                  steps: StepBudget) -> GateVerdict:
        if _INFO_GOAL.search(goal) and not any(self._is_read(entry) for entry in actions):
            return GateVerdict(
                False,
                "DONE_COVERAGE_FAILED",
                "No page content was read yet; read the page before finishing.",
            )

        subtasks = extract_goal_subtasks(goal)
        if len(subtasks) < 2:
            return GateVerdict(True)

        stated = f"{summary}\n{answer}"
        corpus = "\n".join([stated, *self._evidence(actions)])
        missing = [part for part in subtasks if not self._covered(part, corpus)]
        unstated = [part for part in subtasks if part not in missing and not self._covered(part, stated)]

        if not missing:
            return GateVerdict(True, unstated=unstated)
        if steps.near_limit:
            addendum = "Unverified parts:\n" + "\n".join(f"- {part}" for part in missing)
            return GateVerdict(True, missing=missing, unstated=missing + unstated, answer_addendum=addendum)
        return GateVerdict(
            False,
            "DONE_COVERAGE_FAILED",
            "Missing evidence for: " + "; ".join(missing),
            missing=missing,
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    def _covered(self, part: str, corpus: str) -> bool:
        keywords = extract_keywords(part)
        if not keywords:
            return True
        return keyword_hits(keywords, corpus) >= min(self.REQUIRED_KEYWORD_HITS, len(keywords))

    def _is_read(self, entry: ActionEntry) -> bool:
        if not _ok(entry):
            return False
        if entry.tool in READ_EVIDENCE_TOOLS or entry.tool == "http_request":
            return True
        page_text = entry.result.get("page_text")
        return entry.tool == "navigate" and isinstance(page_text, str) and len(page_text.strip()) >= self.NAVIGATE_TEXT_AS_READ

    def _evidence(self, actions: list[ActionEntry]) -> list[str]:
        chunks = []
        for entry in actions[-self.COVERAGE_CORPUS_ENTRIES :]:
            if not _ok(entry):
                continue
            text = result_text(parse_result(entry.tool, entry.result))
            if text:
                chunks.append(text[:4000])
            extra = entry.result.get("items")
            if extra:
                chunks.append(str(extra)[:2000])
        return chunks

    def _recent_high_signal(self, actions: list[ActionEntry]) -> bool:
        return any(
            is_high_signal(entry.tool, parse_result(entry.tool, entry.result))
            for entry in actions[-self.COVERAGE_CORPUS_ENTRIES :]
        )

    def evidence_action(self, history: list, allowed: list[str], current_url: str | None = None) -> PlannedAction:
        """A concrete evidence-gathering action to run before the next completion attempt."""
        actions = _dispatched(history)
        last = actions[-1] if actions else None
        candidates = [("get_page_text", {"scope": "full"}), ("extract_structured", {}), ("read_page", {})]
        if is_search_results_url(current_url):
            candidates.insert(0, ("extract_structured", {"hint": "search result links"}))

        for tool, args in candidates:
            if tool not in allowed:
                continue
            if last is not None and last.tool == tool and last.args == args:
                continue
            return PlannedAction(tool=tool, args=args)
        tool = next((t for t in allowed if t in READ_EVIDENCE_TOOLS), "get_page_text")
        return PlannedAction(tool=tool, args={"query": "answer"} if tool in ("find", "find_text") else {})


def _ok(entry: ActionEntry) -> bool:
    return entry.result.get("success") is not False


def _dispatched(history: list) -> list[ActionEntry]:
    return [
        entry
        for entry in history
        if isinstance(entry, ActionEntry)
        and entry.tool not in TERMINAL_TOOLS
        and entry.result.get("code") not in GUARD_CODES
    ]
