# subgoals.py
# Goal decomposition and per-sub-goal progress tracking.
#
# The goal is split once at run start into at most 8 atomic sub-tasks.
# After every dispatched action the evidence text (tool, key args, key
# result fields) is matched by keyword overlap against open sub-goals and
# the best one or two are updated. A sub-goal reaches `completed` only on a
# high-signal observation that also covers its keywords; it regresses only
# through apply_coverage().

import re

from browse_pilot.models import SubGoal, SubGoalStatus, ToolResult
from browse_pilot.tools import is_high_signal

STOPWORDS = frozenset(
    {
        "the", "and", "then", "with", "from", "that", "this", "into", "for", "you",
        "your", "have", "just", "also", "find", "check", "open", "go", "to", "on",
        "in", "of", "a", "an", "is", "are", "it", "how", "what", "why", "or",
        "need", "please", "do", "make", "by", "but",
    }
)

_QUOTED = re.compile(r'"[^"]+"|\'[^\']+\'|«[^»]+»|“[^”]+”')
_TWO_ENTITY = re.compile(
    r"\b(?:price|cost|compare|find)\s+([^\n,;:.]{2,80}?)\s+and\s+([^\n,;:.]{2,80}?)"
    r"(?=(?:\s*(?:,|;|\.|\bthen\b|\band then\b|\bafter that\b|\balso\b))|$)",
    re.IGNORECASE,
)
_SEPARATORS = re.compile(
    r"\s*(?:,|;|\.|\bthen\b|\band then\b|\bafter that\b|\band\b|\balso\b)\s+",
    re.IGNORECASE,
)
_PLACEHOLDER = re.compile(r"__protected_(\d+)__")


def extract_goal_subtasks(goal: str, limit: int = 8) -> list[str]:
    """
    Split a goal into atomic sub-tasks.

    Quoted spans and "price/compare/find X and Y" phrases stay whole.
    Parts shorter than 6 characters and "task:" prefixes are dropped.
    """
    normalized = re.sub(r"\s+", " ", goal or "").strip().lower()
    if not normalized:
        return []

    protected: list[str] = []

    def _protect(match: re.Match) -> str:
        protected.append(match.group(0))
        return f"__protected_{len(protected) - 1}__"

    def _restore(value: str) -> str:
        return _PLACEHOLDER.sub(lambda m: protected[int(m.group(1))], value)

    shielded = _QUOTED.sub(_protect, normalized)
    shielded = _TWO_ENTITY.sub(_protect, shielded)

    parts: list[str] = []
    for part in _SEPARATORS.split(shielded):
        part = _restore(part).strip()
        if len(part) < 6 or re.match(r"^task\s*:", part):
            continue
        if part not in parts:
            parts.append(part)
    return parts[:limit]


def extract_keywords(text: str, limit: int = 6) -> list[str]:
    """Unique lowercase tokens of 3+ characters that are not stopwords."""
    cleaned = re.sub(r"[^\w\s-]+", " ", (text or "").lower())
    keywords: list[str] = []
    for token in cleaned.split():
        if len(token) < 3 or token in STOPWORDS or token in keywords:
            continue
        keywords.append(token)
    return keywords[:limit]


def keyword_hits(keywords: list[str], corpus: str) -> int:
    corpus = corpus.lower()
    return sum(1 for keyword in keywords if keyword in corpus)


def action_evidence_text(tool: str, args: dict, result: dict) -> str:
    """Compact text describing one action and what came back."""
    chunks = [tool]
    for key in ("query", "text", "url", "target", "selector"):
        if args.get(key) is not None:
            chunks.append(f"{key}:{str(args[key])[:120]}")
    for key in ("url", "final_url", "title", "query", "warning", "reason", "error"):
        if result.get(key) is not None:
            chunks.append(f"{key}:{str(result[key])[:180]}")
    for key in ("text", "page_text"):
        value = result.get(key)
        if isinstance(value, str) and value.strip():
            chunks.append(value[:240])
    return " | ".join(chunks)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------


class SubGoalTracker:
    """
    Owns the run's sub-goal list.

    Example:
        tracker = SubGoalTracker()
        tracker.initialize("compare iphone prices and check samsung reviews")
        tracker.update_after_action(3, "get_page_text", args, result)
    """

    MAX_SUBGOALS = 8
    MAX_TEXT = 220
    MAX_EVIDENCE = 4
    MAX_MATCHES = 2
    REQUIRED_KEYWORD_HITS = 2
    # Failure codes that mark a sub-goal blocked rather than merely retried.
    BLOCKING_CODES = frozenset({"SITE_BLOCKED", "POLICY_CONFLICT", "ACTION_LOOP_GUARD"})

    def __init__(self) -> None:
        self.sub_goals: list[SubGoal] = []

    def initialize(self, goal: str) -> list[SubGoal]:
        parts = extract_goal_subtasks(goal, self.MAX_SUBGOALS) or [goal.strip()]
        self.sub_goals = [
            SubGoal(id=f"sg_{index + 1}", text=text[: self.MAX_TEXT])
            for index, text in enumerate(p for p in parts if p)
        ]
        return self.sub_goals

    def restore(self, sub_goals: list[SubGoal]) -> None:
        self.sub_goals = [sg.model_copy(deep=True) for sg in sub_goals[: self.MAX_SUBGOALS]]

    def snapshot(self) -> list[SubGoal]:
        return [sg.model_copy(deep=True) for sg in self.sub_goals]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def completed_count(self) -> int:
        return sum(1 for sg in self.sub_goals if sg.status == SubGoalStatus.COMPLETED)

    def progress_ratio(self) -> float:
        if not self.sub_goals:
            return 0.0
        return self.completed_count / len(self.sub_goals)

    def remaining(self, limit: int = 6) -> list[str]:
        return [sg.text for sg in self.sub_goals if sg.status != SubGoalStatus.COMPLETED][:limit]

    def tracker_text(self, limit: int = 6) -> str:
        items = self.sub_goals[:limit]
        if not items:
            return "No explicit sub-goals detected yet."

        blocked = sum(1 for sg in items if sg.status == SubGoalStatus.BLOCKED)
        done = sum(1 for sg in items if sg.status == SubGoalStatus.COMPLETED)
        header = f"Progress: {done}/{len(items)} completed"
        if blocked:
            header += f", {blocked} blocked"

        lines = [header]
        for sg in items:
            evidence = f"; evidence: {sg.evidence[0]}" if sg.evidence else ""
            lines.append(
                f"- [{sg.status.value}] {sg.text} "
                f"(conf={round(sg.confidence * 100)}%, attempts={sg.attempts}){evidence}"
            )
        return "\n".join(lines)

    def match(self, text: str, limit: int | None = None) -> list[SubGoal]:
        """Open sub-goals ranked by keyword overlap with `text`."""
        corpus = text.lower()
        if not corpus:
            return []
        scored: list[tuple[float, int, SubGoal]] = []
        for index, sg in enumerate(self.sub_goals):
            if sg.status == SubGoalStatus.COMPLETED:
                continue
            keywords = extract_keywords(sg.text)
            if not keywords:
                continue
            hits = keyword_hits(keywords, corpus)
            if hits:
                scored.append((hits / len(keywords) * 10 + hits, -index, sg))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [sg for _, _, sg in scored[: limit or self.MAX_MATCHES]]

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_after_action(self, step: int, tool: str, args: dict, result: ToolResult) -> list[SubGoal]:
        """Credit the best-matching open sub-goals with this action's outcome."""
        if not self.sub_goals:
            return []

        payload = result.model_dump(exclude_none=True)
        evidence = action_evidence_text(tool, args, payload)
        targets = self.match(evidence)
        if not targets:
            fallback = next((sg for sg in self.sub_goals if sg.status == SubGoalStatus.IN_PROGRESS), None)
            fallback = fallback or next((sg for sg in self.sub_goals if sg.status == SubGoalStatus.PENDING), None)
            targets = [fallback] if fallback else []

        high_signal = is_high_signal(tool, result)
        code = payload.get("code", "")

        for sg in targets:
            sg.attempts += 1
            sg.last_tool = tool[:40]
            sg.last_updated_step = step
            self._add_evidence(sg, evidence)

            if not result.success:
                if code in self.BLOCKING_CODES:
                    sg.status = SubGoalStatus.BLOCKED
                    sg.confidence = min(max(sg.confidence, 0.05), 0.35)
                else:
                    if sg.status == SubGoalStatus.PENDING:
                        sg.status = SubGoalStatus.IN_PROGRESS
                    sg.confidence = max(0.05, sg.confidence - 0.08)
                continue

            if sg.status in (SubGoalStatus.PENDING, SubGoalStatus.BLOCKED):
                sg.status = SubGoalStatus.IN_PROGRESS
            sg.confidence = min(0.95, max(sg.confidence, 0.2) + (0.28 if high_signal else 0.12))

            keywords = extract_keywords(sg.text)
            required = min(self.REQUIRED_KEYWORD_HITS, len(keywords))
            if keywords and high_signal and keyword_hits(keywords, evidence) >= required:
                sg.status = SubGoalStatus.COMPLETED
                sg.confidence = max(sg.confidence, 0.85)

        return targets

    def apply_coverage(self, missing: list[str], accepted: bool = False, observations=()) -> None:
        """
        Re-check after a completion attempt.

        Sub-goals named in `missing` fall back to in_progress. Only an
        accepted attempt promotes the others, and only those whose keywords
        appear in `observations` (texts of high-signal results).
        """
        missing_keys = {text.strip().lower() for text in missing if text.strip()}
        corpus = "\n".join(observations)
        for sg in self.sub_goals:
            if sg.status == SubGoalStatus.BLOCKED:
                continue
            if sg.text.strip().lower() in missing_keys:
                if sg.status == SubGoalStatus.COMPLETED:
                    sg.status = SubGoalStatus.IN_PROGRESS
                sg.confidence = min(sg.confidence, 0.74)
                continue
            if not accepted or sg.status == SubGoalStatus.COMPLETED:
                continue
            keywords = extract_keywords(sg.text)
            if keywords and keyword_hits(keywords, corpus) >= min(self.REQUIRED_KEYWORD_HITS, len(keywords)):
                sg.status = SubGoalStatus.COMPLETED
                sg.confidence = max(sg.confidence, 0.9)

    def _add_evidence(self, sg: SubGoal, text: str) -> None:
        text = re.sub(r"\s+", " ", text).strip()[: self.MAX_TEXT]
        if text and text not in sg.evidence:
            sg.evidence.insert(0, text)
        del sg.evidence[self.MAX_EVIDENCE:]
