# loop_guard.py
# Loop and duplicate detection, run before every dispatch.
#
# Layers, checked in order:
#   blocked repeat      same tool+target as an action the driver just blocked
#   exact repeat        same tool+args as the last dispatched call
#   vacillation         a run of passive reads with no state change in between
#   cycle               A-B-A-B-A over (tool, salient arg) fingerprints
#   semantic repeat     same tool+intent on the same page, low-signal twice
#   search-results loop repeated reads of a results page with no outbound click
#
# A firing layer returns a GuardVerdict carrying a FallbackHint; the harness
# records the block and dispatches the hint instead. Only a repeated block
# with no hint at all becomes fatal.

import hashlib
import json
import logging
import re
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from browse_pilot.models import ActionEntry, FallbackHint, PlannedAction, ScrollResult, ToolFailure, ToolResult
from browse_pilot.tools import BLOCKED_CODES, PASSIVE_TOOLS, TERMINAL_TOOLS, is_high_signal, parse_result, spec_for

logger = logging.getLogger(__name__)

GUARD_CODES = frozenset({"DUPLICATE_CALL", "ACTION_LOOP_GUARD", "POLICY_CONFLICT"})

SEARCH_HOSTS = (
    "google.",
    "bing.com",
    "duckduckgo.com",
    "yandex.",
    "search.yahoo.com",
    "search.brave.com",
    "ecosia.org",
)

_SALIENT_ARGS = ("target", "query", "url", "text", "key", "direction", "tab_id", "selector")

# Cheapest different observation to try after a blocked call of each tool.
_ALTERNATIVES: dict[str, tuple[str, dict]] = {
    "click": ("read_page", {}),
    "type": ("read_page", {}),
    "select": ("read_page", {}),
    "hover": ("read_page", {}),
    "press_key": ("read_page", {}),
    "read_page": ("get_page_text", {"scope": "viewport"}),
    "get_page_text": ("extract_structured", {"hint": "main content"}),
    "extract_structured": ("get_page_text", {"scope": "full"}),
    "find": ("get_page_text", {"scope": "full"}),
    "find_text": ("get_page_text", {"scope": "full"}),
    "navigate": ("get_page_text", {"scope": "viewport"}),
    "scroll": ("get_page_text", {"scope": "viewport"}),
    "screenshot": ("read_page", {}),
}

# Driver failure codes with a generic recovery; policy codes have none.
_RECOVERY_BY_CODE: dict[str, tuple[str, dict]] = {
    "ELEMENT_NOT_FOUND": ("read_page", {}),
    "INVALID_TARGET": ("read_page", {}),
    "INVALID_ACTION": ("read_page", {}),
}

_CYCLE_BREAKERS: tuple[tuple[str, dict], ...] = (
    ("get_page_text", {"scope": "full"}),
    ("extract_structured", {}),
    ("read_page", {}),
)


# ---------------------------------------------------------------------------
# Keys and fingerprints
# ---------------------------------------------------------------------------


def action_key(tool: str, args: dict) -> str:
    """Deterministic identity of a call. sort_keys keeps it order-independent."""
    canonical = json.dumps({"tool": tool, "args": args}, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _normalize(value) -> str:
    return re.sub(r"\s+", " ", str(value)).strip().lower()


def fingerprint(tool: str, args: dict) -> str:
    """(tool, salient arg) pair used by the cycle and semantic layers."""
    for key in _SALIENT_ARGS:
        if args.get(key) not in (None, ""):
            return f"{tool}|{_normalize(args[key])}"
    return f"{tool}|"


def is_search_results_url(url: str | None) -> bool:
    if not url:
        return False
    parsed = urlparse(url)
    host = parsed.netloc.lower()
    if not any(marker in host for marker in SEARCH_HOSTS):
        return False
    query = parse_qs(parsed.query)
    return parsed.path.rstrip("/").endswith("/search") or any(k in query for k in ("q", "text", "p"))


def attach_fallback(tool: str, failure: ToolFailure) -> ToolFailure:
    """Give a driver failure a recovery hint when it came without one."""
    if failure.hint is not None or failure.code not in _RECOVERY_BY_CODE:
        return failure
    next_tool, next_args = _RECOVERY_BY_CODE[failure.code]
    if next_tool == tool:
        next_tool, next_args = _ALTERNATIVES.get(tool, ("get_page_text", {"scope": "viewport"}))
    return failure.model_copy(
        update={
            "hint": FallbackHint(
                next_tool=next_tool,
                next_args=dict(next_args),
                strategy="reobserve",
                message="Element ids are stale or wrong; refresh them before acting again.",
            ),
            "retryable": False,
        }
    )


@dataclass
class GuardVerdict:
    allowed: bool
    code: str = ""
    reason: str = ""
    hint: FallbackHint | None = None
    fatal: bool = False

    def as_failure(self) -> ToolFailure:
        return ToolFailure(code=self.code, reason=self.reason, hint=self.hint, retryable=False)


ALLOW = GuardVerdict(allowed=True)


# ---------------------------------------------------------------------------
# LoopDetector
# ---------------------------------------------------------------------------


class LoopDetector:
    """
    Stateful guard consulted before each dispatch.

    Example:
        guard = LoopDetector()
        verdict = guard.check(action, history, current_url)
        if verdict.allowed:
            result = await driver.execute(action.tool, action.args)
            guard.record(action, result)
    """

    VISIBLE_REPEAT_ALLOWANCE = 1
    VACILLATION_WINDOW = 7
    VACILLATION_MAX_TOOLS = 3
    SEMANTIC_REPEAT_LIMIT = 2
    SERP_READ_LIMIT = 3

    def __init__(self) -> None:
        self.dup_count = 0
        self.blocked_repeat_count = 0
        self.serp_loop_count = 0
        self.loop_guard_count = 0
        self._last_key: str | None = None
        self._last_moved = False
        self._visible_repeats = 0
        self._last_blocked_key: str | None = None

    @property
    def loop_signals(self) -> int:
        """Counter fed into the confidence loop penalty and guidance escalation."""
        return self.dup_count + self.blocked_repeat_count + self.serp_loop_count

    # ------------------------------------------------------------------
    # Planning-time rewrite
    # ------------------------------------------------------------------

    def sanitize(self, action: PlannedAction, history: list, current_url: str | None = None) -> PlannedAction:
        """
        Rewrite a planned action that is known to fail before it reaches check().

        An action whose identical predecessor was blocked becomes that
        failure's hint; a find_text query that already missed on this page
        becomes a broader read.
        """
        if action.tool in TERMINAL_TOOLS:
            return action

        key = action_key(action.tool, action.args)
        for entry in reversed(_actions(history)):
            if action_key(entry.tool, entry.args) != key:
                continue
            failure = entry.result
            if failure.get("success") is False and failure.get("code") in BLOCKED_CODES:
                hint = failure.get("hint") or {}
                next_tool = hint.get("next_tool")
                if next_tool and next_tool != action.tool:
                    logger.debug("Rewrote blocked %s to %s", action.tool, next_tool)
                    return PlannedAction(tool=next_tool, args=dict(hint.get("next_args") or {}))
                recovery = _RECOVERY_BY_CODE.get(failure.get("code"))
                if recovery and recovery[0] != action.tool:
                    return PlannedAction(tool=recovery[0], args=dict(recovery[1]))
            break

        if action.tool == "find_text" and current_url:
            query = _normalize(action.args.get("query", ""))
            for entry in reversed(_actions(history)):
                if entry.tool != "find_text" or entry.url != current_url:
                    continue
                if _normalize(entry.args.get("query", "")) == query and not entry.result.get("found"):
                    if is_search_results_url(current_url):
                        return PlannedAction(tool="extract_structured", args={"hint": "search result links", "max_items": 10})
                    return PlannedAction(tool="get_page_text", args={"scope": "full"})
                break

        return action

    # ------------------------------------------------------------------
    # Dispatch-time check
    # ------------------------------------------------------------------

    def check(self, action: PlannedAction, history: list, current_url: str | None = None) -> GuardVerdict:
        tool, args = action.tool, action.args
        spec = spec_for(tool)
        if tool in TERMINAL_TOOLS or (spec is not None and spec.local):
            return ALLOW

        key = action_key(tool, args)
        verdict = (
            self._blocked_repeat(tool, args, history)
            or self._exact_repeat(tool, args, key, current_url)
            or self._vacillation(tool, history)
            or self._cycle(tool, args, history)
            or self._semantic_repeat(tool, args, history, current_url)
            or self._serp_loop(tool, history, current_url)
        )
        if verdict is None:
            return ALLOW
        return self._escalate(verdict, key)

    def record(self, action: PlannedAction, result: ToolResult) -> None:
        """Note a call that actually reached the driver."""
        key = action_key(action.tool, action.args)
        if key != self._last_key:
            self._visible_repeats = 0
        self._last_key = key
        self._last_moved = isinstance(result, ScrollResult) and result.moved
        if result.success:
            self._last_blocked_key = None
        elif isinstance(result, ToolFailure) and result.code in BLOCKED_CODES:
            self._last_blocked_key = key

    def _escalate(self, verdict: GuardVerdict, key: str) -> GuardVerdict:
        if verdict.hint is None and key == self._last_blocked_key:
            verdict = GuardVerdict(
                allowed=False,
                code="POLICY_CONFLICT",
                reason=f"{verdict.reason} No viable fallback after repeated blocks.",
                fatal=True,
            )
        self._last_blocked_key = key
        self.loop_guard_count += 1
        return verdict

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def _exact_repeat(self, tool: str, args: dict, key: str, current_url: str | None) -> GuardVerdict | None:
        if key != self._last_key:
            return None
        spec = spec_for(tool)
        if spec is not None and spec.visible_change and self._last_moved:
            if self._visible_repeats < self.VISIBLE_REPEAT_ALLOWANCE:
                self._visible_repeats += 1
                return None

        self.dup_count += 1
        return GuardVerdict(
            allowed=False,
            code="DUPLICATE_CALL",
            reason=(
                f"You already called {tool} with the same arguments and the page did not change. "
                "The result will not change; try a different tool or approach."
            ),
            hint=self._alternative(tool, current_url, strategy="nudge_after_duplicate"),
        )

    def _blocked_repeat(self, tool: str, args: dict, history: list) -> GuardVerdict | None:
        mark = fingerprint(tool, args)
        for entry in reversed(_actions(history)):
            if fingerprint(entry.tool, entry.args) != mark:
                continue
            result = entry.result
            code = result.get("code")
            if code in GUARD_CODES:
                continue
            if result.get("success") is not False or code not in BLOCKED_CODES:
                return None

            self.blocked_repeat_count += 1
            hint = None
            if result.get("hint"):
                hint = FallbackHint.model_validate(result["hint"])
                if hint.next_tool == tool:
                    hint = None
            if hint is None and code in _RECOVERY_BY_CODE:
                next_tool, next_args = _RECOVERY_BY_CODE[code]
                hint = FallbackHint(next_tool=next_tool, next_args=dict(next_args))
            if hint is not None:
                hint = hint.model_copy(update={"strategy": "fallback_after_block"})
            return GuardVerdict(
                allowed=False,
                code="ACTION_LOOP_GUARD",
                reason=f"{tool} on the same target was just blocked ({code}); repeating it will not help.",
                hint=hint,
            )
        return None

    def _vacillation(self, tool: str, history: list) -> GuardVerdict | None:
        if tool not in PASSIVE_TOOLS:
            return None
        window = _dispatched(history)[-(self.VACILLATION_WINDOW - 1):]
        if len(window) < self.VACILLATION_WINDOW - 1:
            return None
        if any(entry.tool not in PASSIVE_TOOLS for entry in window):
            return None
        tools = {entry.tool for entry in window} | {tool}
        if len(tools) > self.VACILLATION_MAX_TOOLS:
            return None
        return GuardVerdict(
            allowed=False,
            code="ACTION_LOOP_GUARD",
            reason=f"{len(window)} passive reads in a row without changing the page.",
            hint=FallbackHint(
                next_tool="scroll",
                next_args={"direction": "down", "amount": 800},
                strategy="break_read_vacillation",
                message="Change the page state (scroll, click a result, navigate) before reading again.",
            ),
        )

    def _cycle(self, tool: str, args: dict, history: list) -> GuardVerdict | None:
        recent = [fingerprint(e.tool, e.args) for e in _dispatched(history)[-4:]]
        if len(recent) < 4:
            return None
        marks = recent + [fingerprint(tool, args)]
        a, b = marks[0], marks[1]
        if a == b or marks != [a, b, a, b, a]:
            return None
        used = {a.split("|", 1)[0], b.split("|", 1)[0]}
        next_tool, next_args = "scroll", {"direction": "down", "amount": 800}
        for candidate, candidate_args in _CYCLE_BREAKERS:
            if candidate not in used:
                next_tool, next_args = candidate, candidate_args
                break
        return GuardVerdict(
            allowed=False,
            code="ACTION_LOOP_GUARD",
            reason=f"Cyclic pattern detected: alternating {a} and {b}.",
            hint=FallbackHint(next_tool=next_tool, next_args=dict(next_args), strategy="break_cycle"),
        )

    def _semantic_repeat(self, tool: str, args: dict, history: list, current_url: str | None) -> GuardVerdict | None:
        mark = fingerprint(tool, args)
        if mark.endswith("|"):
            return None
        misses = 0
        for entry in _dispatched(history):
            if entry.url != current_url or fingerprint(entry.tool, entry.args) != mark:
                continue
            result = parse_result(entry.tool, entry.result)
            if not result.success or (entry.tool in PASSIVE_TOOLS and not is_high_signal(entry.tool, result)):
                misses += 1
        if misses < self.SEMANTIC_REPEAT_LIMIT:
            return None
        return GuardVerdict(
            allowed=False,
            code="ACTION_LOOP_GUARD",
            reason=f"{tool} with the same intent already came back empty {misses} times on this page.",
            hint=self._alternative(tool, current_url, strategy="reformulate_or_switch"),
        )

    def _serp_loop(self, tool: str, history: list, current_url: str | None) -> GuardVerdict | None:
        if tool not in PASSIVE_TOOLS or not is_search_results_url(current_url):
            return None

        streak: list[ActionEntry] = []
        for entry in reversed(_dispatched(history)):
            if entry.tool not in PASSIVE_TOOLS or not is_search_results_url(entry.url):
                break
            streak.append(entry)
        if len(streak) < self.SERP_READ_LIMIT:
            return None
        if tool == "extract_structured" and not any(e.tool == "extract_structured" for e in streak):
            return None

        self.serp_loop_count += 1
        link = _discovered_link(streak)
        if link:
            hint = FallbackHint(next_tool="navigate", next_args={"url": link}, strategy="open_search_result")
        else:
            hint = FallbackHint(
                next_tool="extract_structured",
                next_args={"hint": "search result links", "max_items": 10},
                strategy="extract_search_results",
            )
        return GuardVerdict(
            allowed=False,
            code="ACTION_LOOP_GUARD",
            reason=(
                f"Search-results loop detected: {len(streak)} reads of the results page "
                "without opening a result."
            ),
            hint=hint,
        )

    def _alternative(self, tool: str, current_url: str | None, strategy: str) -> FallbackHint:
        if is_search_results_url(current_url) and tool != "extract_structured":
            next_tool, next_args = "extract_structured", {"hint": "search result links", "max_items": 10}
        else:
            next_tool, next_args = _ALTERNATIVES.get(tool, ("get_page_text", {"scope": "viewport"}))
        return FallbackHint(next_tool=next_tool, next_args=dict(next_args), strategy=strategy)


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------


def _actions(history: list) -> list[ActionEntry]:
    return [e for e in history if isinstance(e, ActionEntry)]


def _dispatched(history: list) -> list[ActionEntry]:
    """Actions that reached the driver, excluding guard blocks and terminal tools."""
    return [
        e for e in _actions(history)
        if e.result.get("code") not in GUARD_CODES and e.tool not in TERMINAL_TOOLS
    ]


def _discovered_link(entries: list[ActionEntry]) -> str | None:
    for entry in entries:
        for item in entry.result.get("items") or []:
            if not isinstance(item, dict):
                continue
            href = item.get("url") or item.get("href")
            if isinstance(href, str) and href.startswith("http") and not is_search_results_url(href):
                host = urlparse(href).netloc.lower()
                if not any(marker in host for marker in SEARCH_HOSTS):
                    return href
    return None
