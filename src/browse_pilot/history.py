# history.py
# Keeps the working conversation bounded without losing what was evicted.
#
# Tier 1 runs on every append: old heavy tool payloads are shortened, and
# once the window exceeds max_messages the oldest complete turns (assistant
# tool_calls message + its tool results + any attached image message) are
# evicted. Their raw text goes to the pending buffer and a small archive.
#
# Tier 2 runs between steps: the Reasoning Backend merges the pending buffer
# into one running summary. The merge is skipped, and the raw chunks kept,
# when a token pre-check says the call would overflow the budget.

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable

from browse_pilot.budget import BudgetMonitor
from browse_pilot.diagnostics import WarnThrottle, process_throttle
from browse_pilot.models import HistorySummary, RagEntry
from browse_pilot.reflection import extract_json_object
from browse_pilot.subgoals import extract_keywords, keyword_hits

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """\
You maintain the running memory of an autonomous web-browsing agent.

Merge the evicted conversation chunks into the existing summary. Keep:
  - concrete facts, figures, names and URLs that were found
  - unresolved blockers and approaches that already failed
  - which parts of the task are done and which are still open

Drop tool chatter and anything repeated. Stay under 300 words.
Respond with ONLY a JSON object: {"summary": "<merged summary>"}\
"""


@dataclass
class SummaryOutcome:
    summarized: bool
    reason: str
    called_backend: bool = False


def _message_text(message: dict, limit: int) -> str:
    role = message.get("role", "?")
    content = message.get("content")
    if isinstance(content, list):
        parts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
        content = " ".join(parts) + " [image]"
    text = content or ""
    for call in message.get("tool_calls") or []:
        function = call.get("function", {})
        text += f" {function.get('name', '')}({function.get('arguments', '')})"
    return f"{role}: {text.strip()[:limit]}"


class HistoryCompactor:
    """
    Owns the conversation window and the HistorySummary for one run.

    Example:
        compactor = HistoryCompactor(max_messages=28)
        compactor.append(messages, {"role": "tool", ...}, step=3)
        await compactor.maybe_summarize(backend, monitor, step=3)
    """

    KEEP_HEAD = 2  # system prompt + task
    HEAVY_CONTENT_CHARS = 10_000
    RECENT_ASSISTANT_TURNS = 2
    CHUNK_MESSAGE_CHARS = 1_500
    CHUNK_MAX_CHARS = 6_000
    MAX_PENDING = 12
    MAX_RAG_ENTRIES = 40
    RAG_TEXT_CHARS = 600
    MAX_RUNNING_CHARS = 4_000
    MERGE_PENDING_CHUNKS = 3
    MERGE_PENDING_CHARS = 8_000
    RETRIEVE_TOP_N = 3
    RETRIEVE_MAX_CHARS = 1_200

    def __init__(
        self,
        max_messages: int = 28,
        throttle: WarnThrottle | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_messages = max_messages
        self.summary = HistorySummary()
        self._throttle = throttle or process_throttle()
        self._clock = clock

    def restore(self, summary: HistorySummary) -> None:
        self.summary = summary.model_copy(deep=True)

    def snapshot(self) -> HistorySummary:
        return self.summary.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Tier 1
    # ------------------------------------------------------------------

    def append(self, messages: list[dict], message: dict, step: int) -> None:
        messages.append(message)
        self._compress(messages, step)
        self._trim(messages, step)

    def _compress(self, messages: list[dict], step: int) -> None:
        """Shorten heavy payloads older than the last two assistant turns."""
        if len(messages) <= 4:
            return
        assistant_turns = 0
        for message in reversed(messages):
            if message.get("role") == "assistant":
                assistant_turns += 1
                continue
            if assistant_turns < self.RECENT_ASSISTANT_TURNS:
                continue
            content = message.get("content")
            if message.get("role") == "tool" and isinstance(content, str) and len(content) > self.HEAVY_CONTENT_CHARS:
                self._stash([message], step)
                message["content"] = json.dumps(
                    {"success": True, "note": "Content omitted from history to save context. You already read this page."}
                )
            elif message.get("role") == "user" and isinstance(content, list):
                message["content"] = "Screenshot omitted from history to save context. You already analyzed this view."

    def _trim(self, messages: list[dict], step: int) -> int:
        """Evict whole turns from the front until the window fits. Returns messages evicted."""
        overflow = len(messages) - self.max_messages
        if overflow <= 0:
            return 0

        end = self.KEEP_HEAD
        removed = 0
        while removed < overflow and end < len(messages) - 2:
            group_end = end + 1
            if messages[end].get("role") == "assistant" and messages[end].get("tool_calls"):
                while group_end < len(messages):
                    nxt = messages[group_end]
                    if nxt.get("role") == "tool" or (nxt.get("role") == "user" and isinstance(nxt.get("content"), list)):
                        group_end += 1
                    else:
                        break
            removed += group_end - end
            end = group_end

        if end <= self.KEEP_HEAD:
            return 0
        evicted = messages[self.KEEP_HEAD:end]
        del messages[self.KEEP_HEAD:end]
        self._stash(evicted, step)
        logger.debug("Evicted %d messages at step %d", len(evicted), step)
        return len(evicted)

    def _stash(self, group: list[dict], step: int) -> None:
        chunk = "\n".join(_message_text(m, self.CHUNK_MESSAGE_CHARS) for m in group)[: self.CHUNK_MAX_CHARS]
        summary = self.summary
        summary.evicted_messages += len(group)
        summary.evicted_chars += len(chunk)
        if not chunk.strip():
            return

        summary.pending.append(chunk)
        if len(summary.pending) > self.MAX_PENDING:
            # Fold the two oldest chunks together rather than dropping either.
            first, second = summary.pending[0], summary.pending[1]
            summary.pending[:2] = [(first + "\n" + second)[: self.CHUNK_MAX_CHARS]]

        summary.rag_entries.append(
            RagEntry(
                id=summary.rag_next_id,
                step=step,
                text=chunk[: self.RAG_TEXT_CHARS],
                created_at=self._clock(),
            )
        )
        summary.rag_next_id += 1
        del summary.rag_entries[: -self.MAX_RAG_ENTRIES]
        summary.updated_at = self._clock()

    # ------------------------------------------------------------------
    # Tier 2
    # ------------------------------------------------------------------

    def needs_merge(self) -> bool:
        pending = self.summary.pending
        return len(pending) >= self.MERGE_PENDING_CHUNKS or sum(len(c) for c in pending) >= self.MERGE_PENDING_CHARS

    async def maybe_summarize(self, backend, budget: BudgetMonitor, step: int, force: bool = False) -> SummaryOutcome:
        """Merge pending chunks into the running summary when worthwhile and affordable."""
        if not self.summary.pending:
            return SummaryOutcome(False, "nothing_pending")
        if not force and not self.needs_merge():
            return SummaryOutcome(False, "below_threshold")

        chunks = "\n\n---\n\n".join(self.summary.pending)
        messages = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Existing summary:\n{self.summary.running or '(empty)'}\n\n"
                    f"Evicted chunks (step {step}):\n{chunks}"
                ),
            },
        ]
        if budget.precheck(messages, None, label="history summary") is not None:
            return SummaryOutcome(False, "budget_predicted_exceed")

        try:
            response = await backend.propose(messages, [])
        except Exception as exc:
            # Raw chunks stay pending and are retried on a later step.
            self._throttle.warn("history.summary", "History summary merge failed", exc)
            return SummaryOutcome(False, "backend_error", called_backend=True)

        budget.record_usage(response.usage)
        parsed = extract_json_object(response.text or "")
        merged = parsed.get("summary") if isinstance(parsed, dict) else None
        if not isinstance(merged, str) or not merged.strip():
            merged = (response.text or "").strip()
        if not merged:
            return SummaryOutcome(False, "empty_summary", called_backend=True)

        summary = self.summary
        summary.summarized_chunks += len(summary.pending)
        summary.running = merged[: self.MAX_RUNNING_CHARS]
        summary.pending = []
        summary.updated_at = self._clock()
        return SummaryOutcome(True, "merged", called_backend=True)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve(self, goal: str, top_n: int | None = None) -> list[RagEntry]:
        """Archive entries ranked by overlap with the goal's keywords."""
        keywords = extract_keywords(goal, limit=12)
        if not keywords:
            return []
        scored = []
        for entry in self.summary.rag_entries:
            hits = keyword_hits(keywords, entry.text)
            if hits:
                scored.append((hits, entry.id, entry))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)

        selected: list[RagEntry] = []
        used = 0
        for _, _, entry in scored[: top_n or self.RETRIEVE_TOP_N]:
            if used + len(entry.text) > self.RETRIEVE_MAX_CHARS and selected:
                break
            selected.append(entry)
            used += len(entry.text)
        return selected

    def context_text(self, goal: str) -> str:
        summary = self.summary
        lines = ["Compressed history summary:"]
        lines.append(summary.running or "(nothing summarized yet)")
        if summary.pending:
            lines.append(f"({len(summary.pending)} evicted chunk(s) awaiting merge)")
        retrieved = self.retrieve(goal)
        if retrieved:
            lines.append("Relevant archived context:")
            lines.extend(f"- [step {e.step}] {e.text}" for e in retrieved)
        return "\n".join(lines)
