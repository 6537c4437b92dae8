# harness.py
# browse-pilot Agent Harness
#
# The harness is the controller. The Reasoning Backend only ever reflects;
# the harness owns control flow, state, budgets and verification. The Page
# Driver only ever executes one tool call at a time.
#
# Control flow per step:
#   abort check → budget check → manual-intervention check → summary merge
#   → reflection → completion gate | guidance escalation | loop guard → dispatch
#
# All terminal output is delegated to display.py; no formatting here.

import asyncio
import copy
import json
import logging
import re
from urllib.parse import urlparse

from browse_pilot import display
from browse_pilot.budget import BudgetMonitor
from browse_pilot.completion import CompletionGate
from browse_pilot.diagnostics import WarnThrottle, process_throttle
from browse_pilot.guidance import GuidanceEscalation, PauseGate, ResumeKind, ResumeSignal
from browse_pilot.history import HistoryCompactor
from browse_pilot.loop_guard import LoopDetector, attach_fallback
from browse_pilot.models import (
    ActionEntry,
    BudgetExceeded,
    Checkpoint,
    ErrorEntry,
    LocalResult,
    NavigateResult,
    PartialResult,
    PauseEntry,
    PlannedAction,
    ReflectionState,
    RunMetrics,
    RunOptions,
    RunStatus,
    TerminalResult,
    TerminalStatus,
    ThoughtEntry,
    ToolFailure,
    ToolResult,
)
from browse_pilot.notify import NotificationSink, NotifyLimiter
from browse_pilot.reflection import (
    ReflectionSignals,
    ReflectionStep,
    StepBudget,
    best_effort_answer,
    derive_goal_query,
    digest,
    ids_likely_stale,
)
from browse_pilot.subgoals import SubGoalTracker
from browse_pilot.tools import (
    ALL_TOOLS,
    PARALLEL_SAFE,
    TERMINAL_TOOLS,
    is_high_signal,
    parse_result,
    result_text,
    spec_for,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class RunStateError(Exception):
    """Raised when a Control API call does not fit the run's current state."""


class FatalRunError(Exception):
    """Raised inside a step to end the run immediately with a terminal status."""

    def __init__(self, reason: str, status: TerminalStatus = TerminalStatus.FAILED) -> None:
        super().__init__(reason)
        self.status = status


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an autonomous web-browsing agent. You complete the user's task by
observing the current page and acting on it through a fixed set of tools.

Every step you first reflect: list the facts you have confirmed, what is
still unknown, how confident you are, and the next 1-4 actions. The harness
executes those actions and shows you the results.

Rules:
- Only report facts you actually read on a page. Never invent values.
- Prefer reading (get_page_text, extract_structured, find_text) over guessing.
- Element ids come from read_page or find and go stale after navigation.
- When a tool fails with a hint, follow the hint instead of repeating the call.
- Finish only when every part of the task is covered by evidence; then set
  sufficiency=true and put the concrete answer in `answer`.
"""

_DEAD_END = re.compile(r"\b(404|page not found|not found|no longer available|does not exist)\b", re.IGNORECASE)
_NAVIGATION_TOOLS = frozenset({"navigate", "back", "forward", "reload", "open_tab", "switch_tab"})


def _is_rate_limit(exc: Exception) -> bool:
    if getattr(exc, "rate_limited", False):
        return True
    if getattr(exc, "status_code", None) == 429 or getattr(exc, "status", None) == 429:
        return True
    return bool(re.search(r"429|rate.?limit", str(exc), re.IGNORECASE))


def _recovery_candidates(url: str) -> list[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return []
    origin = f"{parsed.scheme}://{parsed.netloc}"
    candidates = []
    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) > 1:
        candidates.append(f"{origin}/{'/'.join(parts[:-1])}")
    candidates.append(f"{origin}/")
    return candidates


def _mutates(action: PlannedAction | None) -> bool:
    spec = spec_for(action.tool) if action is not None else None
    return spec is not None and spec.mutates


def _merge_scratchpad(current, incoming, limit: int):
    if isinstance(current, list) and isinstance(incoming, list):
        seen = set()
        merged = []
        for item in [*current, *incoming]:
            key = json.dumps(item, sort_keys=True, default=str)
            if key in seen:
                continue
            seen.add(key)
            merged.append(item)
            if len(merged) >= limit:
                break
        return merged
    if isinstance(current, dict) and isinstance(incoming, dict):
        merged = dict(current)
        for key, value in incoming.items():
            merged[key] = _merge_scratchpad(merged.get(key), value, limit)
        return merged
    return incoming


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...[truncated]"


# ---------------------------------------------------------------------------
# AgentHarness
# ---------------------------------------------------------------------------


class AgentHarness:
    """
    Runs one task at a time against a Page Driver and a Reasoning Backend.

    The Control API (start, abort, resume, request_partial_completion,
    get_checkpoint) is safe to call from the event loop while start() is
    awaiting; resume() may also be called from another thread.

    Example:
        harness = AgentHarness(driver, OpenRouterBackend())
        result = await harness.start("find today's weather in Berlin")
        print(result.status, result.answer)
    """

    RATE_LIMIT_MAX_RETRIES = 5
    RATE_LIMIT_BACKOFF_BASE_S = 3.0
    RATE_LIMIT_BACKOFF_MAX_S = 30.0
    MAX_CONSECUTIVE_ERRORS = 6
    TOOL_FAIL_STREAK_NUDGE = 3
    NO_PROGRESS_BEST_EFFORT = 8
    TOOL_MESSAGE_CHARS = 12_000
    MAX_VISITED_URLS = 120
    SCRATCHPAD_MAX_ITEMS = 200
    CHECKPOINT_HISTORY = 200
    CHECKPOINT_TEXT_CHARS = 2_500
    CHECKPOINT_RESULT_CHARS = 9_000
    CHECKPOINT_SUMMARY_CHARS = 12_000

    def __init__(
        self,
        driver,
        backend,
        *,
        options: RunOptions | None = None,
        sink: NotificationSink | None = None,
        throttle: WarnThrottle | None = None,
        sleep=asyncio.sleep,
        summary_backend=None,
    ) -> None:
        self.driver = driver
        self.backend = backend
        self.summary_backend = summary_backend or backend
        self.sink = sink
        self.throttle = throttle or process_throttle()
        self._sleep = sleep
        self.status = RunStatus.IDLE
        self._reset("", options or RunOptions.from_settings())

    def _reset(self, goal: str, options: RunOptions) -> None:
        self.goal = goal
        self.options = options
        self.budget = BudgetMonitor(options.budget, options.cost_per_1k_tokens_usd)
        self.loop_guard = LoopDetector()
        self.tracker = SubGoalTracker()
        self.compactor = HistoryCompactor(options.max_conversation_messages, self.throttle)
        self.gate = CompletionGate()
        self.reflection = ReflectionStep(self.backend, self.budget, options.reflection_timeout_s)
        self.escalation = GuidanceEscalation()
        self.pause_gate = PauseGate()
        self.notify_limiter = NotifyLimiter()
        self.allowed_tools = self._allowed_tools(options)

        self.history: list = []
        self.messages: list[dict] = []
        self.scratchpad: dict = {}
        self.visited_urls: dict[str, int] = {}
        self.last_url: str | None = None
        self.reflection_state: ReflectionState | None = None
        self.metrics = RunMetrics()
        self.next_step = 0
        self.result: TerminalResult | None = None

        self._aborted = False
        self._partial_requested = False
        self._consecutive_errors = 0
        self._rate_limit_errors = 0
        self._tool_fail_streak = 0
        self._fail_nudge: str | None = None
        self._no_progress = 0
        self._progress_marker = (0, 0)

    def _allowed_tools(self, options: RunOptions) -> list[str]:
        requested = options.allowed_tools or list(ALL_TOOLS)
        allowed = [name for name in requested if spec_for(name) is not None]
        if self.sink is None:
            allowed = [name for name in allowed if name != "notify_connector"]
        return allowed

    # ------------------------------------------------------------------
    # Control API
    # ------------------------------------------------------------------

    async def start(
        self,
        goal: str,
        options: RunOptions | None = None,
        *,
        checkpoint: Checkpoint | None = None,
    ) -> TerminalResult:
        """Run a task to its terminal result. With a checkpoint, continue from its next_step."""
        if self.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            raise RunStateError("A run is already in progress")

        if checkpoint is not None:
            if checkpoint.goal != goal:
                raise RunStateError("Checkpoint belongs to a different goal")
            self.restore(checkpoint, options)
        else:
            self._reset(goal.strip(), options or self.options)
            self.tracker.initialize(self.goal)
            self.messages = self._initial_messages()

        self.status = RunStatus.RUNNING
        display.run_started(self.goal, self.tracker.sub_goals)
        logger.info("Run started at step %d: %s", self.next_step, self.goal)
        return await self._run()

    def abort(self) -> None:
        """Stop at the next step boundary, or immediately when paused."""
        self._aborted = True
        if self.status == RunStatus.PAUSED:
            self.pause_gate.resolve(ResumeSignal(ResumeKind.ABORTED))

    def resume(self, guidance: str | None = None) -> bool:
        """Continue a paused run. Returns False when the run is not paused."""
        if self.status != RunStatus.PAUSED:
            return False
        return self.pause_gate.resolve(ResumeSignal(ResumeKind.RESUMED, (guidance or "").strip()))

    def request_partial_completion(self) -> bool:
        """End the run with a best-effort result, now if paused or at the next step boundary."""
        if self.status == RunStatus.PAUSED:
            return self.pause_gate.resolve(ResumeSignal(ResumeKind.PARTIAL))
        if self.status == RunStatus.RUNNING:
            self._partial_requested = True
            return True
        return False

    def get_checkpoint(self) -> Checkpoint:
        return Checkpoint(
            goal=self.goal,
            status=self.status,
            next_step=self.next_step,
            history=[self._sanitize_entry(entry) for entry in self.history[-self.CHECKPOINT_HISTORY :]],
            scratchpad=copy.deepcopy(self.scratchpad),
            sub_goals=self.tracker.snapshot(),
            history_summary=self._bounded_summary(),
            reflection_state=self.reflection_state.model_copy(deep=True) if self.reflection_state else None,
            tokens_used=self.budget.usage.model_copy(),
            cost_used_usd=self.budget.cost_used_usd,
            elapsed_ms=self.budget.elapsed_ms,
            budget_override_used=self.budget.override_used,
            budget_enforced=self.budget.enforced,
            visited_urls=dict(list(self.visited_urls.items())[: self.MAX_VISITED_URLS]),
            last_known_url=self.last_url,
            guidance_escalations=self.escalation.count,
            notify_calls=self.notify_limiter.used,
            metrics=self._metrics(),
        )

    def restore(self, checkpoint: Checkpoint, options: RunOptions | None = None) -> None:
        """Load a checkpoint into an idle harness."""
        if self.status in (RunStatus.RUNNING, RunStatus.PAUSED):
            raise RunStateError("Cannot restore while a run is in progress")

        self._reset(checkpoint.goal, options or self.options)
        self.history = [entry.model_copy(deep=True) for entry in checkpoint.history]
        self.next_step = checkpoint.next_step
        self.scratchpad = copy.deepcopy(checkpoint.scratchpad)
        self.tracker.restore(checkpoint.sub_goals)
        self.compactor.restore(checkpoint.history_summary)
        self.reflection_state = (
            checkpoint.reflection_state.model_copy(deep=True) if checkpoint.reflection_state else None
        )
        self.budget.restore(
            checkpoint.tokens_used,
            checkpoint.cost_used_usd,
            checkpoint.elapsed_ms,
            enforced=checkpoint.budget_enforced,
            override_used=checkpoint.budget_override_used,
        )
        self.visited_urls = dict(checkpoint.visited_urls)
        self.last_url = checkpoint.last_known_url
        self.escalation.restore(checkpoint.guidance_escalations)
        self.notify_limiter.used = checkpoint.notify_calls
        self.metrics = checkpoint.metrics.model_copy(deep=True)
        self.reflection.invalid_actions = self.metrics.invalid_actions

        self.messages = self._initial_messages()
        self.messages.append(
            {
                "role": "user",
                "content": (
                    f"Resuming from a checkpoint at step {self.next_step}. "
                    "Earlier progress is summarized in the task state; re-observe the page before acting."
                ),
            }
        )
        self.status = RunStatus.IDLE

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self) -> TerminalResult:
        max_steps = self.options.max_steps
        while self.next_step < max_steps:
            step = self.next_step
            display.step_start(step, max_steps)
            try:
                result = await self._step(step)
            except FatalRunError as exc:
                result = self._terminal(exc.status, str(exc), steps=step + 1)
            except Exception as exc:
                result = await self._handle_step_error(step, exc)
            self.next_step = step + 1
            if result is not None:
                return await self._finish(result)

        return await self._finish(
            self._terminal(
                TerminalStatus.STUCK,
                f"Reached the step limit ({max_steps}) before the task was completed",
            )
        )

    async def _step(self, step: int) -> TerminalResult | None:
        max_steps = self.options.max_steps

        if self._aborted:
            return self._terminal(TerminalStatus.FAILED, "Aborted by user", steps=step)
        if self._partial_requested:
            return self._best_effort("Partial completion requested by the operator", steps=step)

        stop = self.budget.check(step, max_steps)
        if stop is not None:
            result = await self._on_budget_stop(step, stop)
            if result is not None:
                return result

        result = await self._check_intervention(step)
        if result is not None:
            return result

        merge = await self.compactor.maybe_summarize(self.summary_backend, self.budget, step)
        if merge.called_backend:
            self.metrics.llm_calls += 1

        steps = StepBudget(total=max_steps, used=step + 1)
        signals = ReflectionSignals(
            steps=steps,
            no_progress_streak=self._no_progress,
            loop_signals=self.loop_guard.loop_signals,
            progress_ratio=self.tracker.progress_ratio(),
            ids_stale=ids_likely_stale(self.history),
            goal_query=derive_goal_query(self.goal),
        )
        calls_before = self.reflection.calls
        try:
            outcome = await self.reflection.run(
                step, self._request_messages(), self.allowed_tools, signals, self._last_action()
            )
        finally:
            self.metrics.llm_calls += self.reflection.calls - calls_before
            self.metrics.invalid_actions = self.reflection.invalid_actions

        if outcome.budget_stop is not None:
            return await self._on_budget_stop(step, outcome.budget_stop)

        self._consecutive_errors = 0
        self._rate_limit_errors = 0
        state = outcome.state
        if not outcome.fallback:
            self.reflection_state = state
        note = digest(state, steps)
        self.history.append(ThoughtEntry(step=step, content=note))
        self.compactor.append(self.messages, {"role": "assistant", "content": note}, step)
        display.reflection(state, outcome.fallback)

        if self._no_progress >= self.NO_PROGRESS_BEST_EFFORT and self.reflection_state and self.reflection_state.facts:
            return self._best_effort(
                f"Returning best-effort result after {self._no_progress} steps without progress", steps=step + 1
            )

        if state.sufficiency:
            return await self._on_sufficient(step, state)

        if self.options.interactive:
            blockers = self.escalation.evaluate(
                state,
                no_progress_streak=self._no_progress,
                rejection_streak=self.gate.rejection_streak,
                loop_signals=self.loop_guard.loop_signals,
                steps=steps,
            )
            if blockers:
                signal = await self._pause(
                    step, "human_guidance", "Progress stalled at medium confidence; guidance requested", blockers
                )
                return self._after_pause(signal, step)

        actions = [self.loop_guard.sanitize(action, self.history, self.last_url) for action in state.actions]
        result, executed = await self._dispatch(step, actions)
        if executed:
            self.gate.reset_streak()
        self._update_progress(state)
        return result

    async def _on_sufficient(self, step: int, state: ReflectionState) -> TerminalResult | None:
        if self.gate.evidence_required:
            action = self.gate.evidence_action(self.history, self.allowed_tools, self.last_url)
            self._append_user(
                "Completion was rejected repeatedly. Gathering fresh evidence before the next completion attempt."
            )
            result, _ = await self._dispatch(step, [action])
            self.gate.evidence_satisfied()
            self._update_progress(state)
            return result
        return await self._attempt_completion(step, state.summary, state.answer)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _attempt_completion(self, step: int, summary: str, answer: str) -> TerminalResult | None:
        self.metrics.done_attempts += 1
        steps = StepBudget(total=self.options.max_steps, used=step + 1)
        verdict = self.gate.evaluate(self.goal, summary, answer, self.history, steps)
        if verdict.accepted or verdict.missing:
            observations = self._high_signal_observations() if verdict.accepted else []
            self.tracker.apply_coverage(verdict.missing, verdict.accepted, observations)

        args = {"summary": summary, "answer": answer}
        if not verdict.accepted:
            self.metrics.completion_rejections += 1
            failure = ToolFailure(code=verdict.code, reason=verdict.reason, missing=verdict.missing)
            self.history.append(
                ActionEntry(step=step, tool="done", args=args, result=failure.model_dump(exclude_none=True), url=self.last_url)
            )
            display.completion_rejected(verdict.code, verdict.reason, self.gate.rejection_streak)
            if verdict.stuck:
                return self._terminal(
                    TerminalStatus.STUCK,
                    f"Completion rejected {self.gate.rejection_streak} times in a row without new evidence",
                    steps=step + 1,
                )
            self._append_user(
                f"Completion rejected ({verdict.code}): {verdict.reason} "
                "Keep gathering evidence for the missing parts before finishing."
            )
            return None

        if verdict.answer_addendum:
            answer = f"{answer}\n\n{verdict.answer_addendum}".strip()
        self.history.append(
            ActionEntry(step=step, tool="done", args=args, result={"success": True}, url=self.last_url)
        )
        if verdict.unstated:
            return self._terminal(
                TerminalStatus.PARTIAL,
                "Some requested parts are not covered by the answer",
                summary=summary,
                answer=answer,
                steps=step + 1,
                remaining=verdict.unstated,
            )
        return self._terminal(TerminalStatus.COMPLETE, summary=summary, answer=answer, steps=step + 1)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, step: int, actions: list[PlannedAction]) -> tuple[TerminalResult | None, int]:
        """
        Execute planned actions in order. Returns (terminal result or None, calls that reached a tool).

        A contiguous run of parallel-safe reads executes concurrently; a
        state-mutating tool ends the batch.
        """
        executed = 0
        index = 0
        while index < len(actions):
            if actions[index].tool in PARALLEL_SAFE:
                batch = []
                while index < len(actions) and actions[index].tool in PARALLEL_SAFE:
                    batch.append(actions[index])
                    index += 1
                result, ran, mutated = await self._run_parallel(step, batch)
                executed += ran
                if result is not None:
                    return result, executed
                if mutated:
                    break
                continue

            result, ran = await self._run_single(step, actions[index])
            index += 1
            if ran is not None:
                executed += 1
            if result is not None:
                return result, executed
            if _mutates(ran):
                break
        return None, executed

    async def _run_parallel(self, step: int, batch: list[PlannedAction]) -> tuple[TerminalResult | None, int, bool]:
        """
        Reads fan out together; results are processed in plan order.

        Guard substitutes run afterwards, one at a time. Returns
        (terminal result or None, calls that reached a tool, whether a
        substitute changed the page).
        """
        allowed: list[tuple[str, PlannedAction]] = []
        substitutes: list[PlannedAction] = []
        for position, action in enumerate(batch):
            call_id = f"call_{step}_{position}_{action.tool}"
            verdict = self.loop_guard.check(action, self.history, self.last_url)
            if verdict.allowed:
                allowed.append((call_id, action))
                continue
            substitute = self._on_blocked(step, call_id, action, verdict)
            if substitute is not None:
                substitutes.append(substitute)

        if allowed:
            for _, action in allowed:
                display.action(action.tool, action.args, parallel=len(allowed) > 1)
            url_before = self.last_url
            results = await asyncio.gather(*(self._execute(step, action) for _, action in allowed))
            by_call = {call_id: result for (call_id, _), result in zip(allowed, results)}
            self._append_calls(step, [(call_id, action) for call_id, action in allowed])
            for call_id, action in allowed:
                self._after_action(step, call_id, action, by_call[call_id], url_before)
            self._flush_fail_nudge()

        ran = len(allowed)
        for position, action in enumerate(substitutes):
            result, executed = await self._run_single(step, action, call_suffix=f"fb{position}", allow_substitute=False)
            if executed is not None:
                ran += 1
            if result is not None:
                return result, ran, False
            if _mutates(executed):
                return None, ran, True
        return None, ran, False

    async def _run_single(
        self,
        step: int,
        action: PlannedAction,
        call_suffix: str = "0",
        allow_substitute: bool = True,
    ) -> tuple[TerminalResult | None, PlannedAction | None]:
        """Returns (terminal result or None, the action that reached a tool or None)."""
        call_id = f"call_{step}_{call_suffix}_{action.tool}"

        if action.tool == "fail":
            reason = str(action.args.get("reason") or "Agent gave up")
            self.history.append(
                ActionEntry(step=step, tool="fail", args=action.args, result={"success": True}, url=self.last_url)
            )
            return self._terminal(TerminalStatus.FAILED, reason, steps=step + 1), None
        if action.tool == "done":
            summary = str(action.args.get("summary") or "")
            answer = str(action.args.get("answer") or "")
            return await self._attempt_completion(step, summary, answer), None

        verdict = self.loop_guard.check(action, self.history, self.last_url)
        if not verdict.allowed:
            substitute = self._on_blocked(step, call_id, action, verdict)
            if substitute is None or not allow_substitute:
                return None, None
            return await self._run_single(step, substitute, call_suffix=f"{call_suffix}fb", allow_substitute=False)

        display.action(action.tool, action.args)
        url_before = self.last_url
        result = await self._execute(step, action)
        self._append_calls(step, [(call_id, action)])
        self._after_action(step, call_id, action, result, url_before)
        self._flush_fail_nudge()
        return None, action

    def _on_blocked(self, step: int, call_id: str, action: PlannedAction, verdict) -> PlannedAction | None:
        """Record a guard block. Returns the fallback action to run instead, if any."""
        failure = verdict.as_failure()
        if verdict.code == "DUPLICATE_CALL":
            self.metrics.duplicate_tool_calls += 1
        next_tool = verdict.hint.next_tool if verdict.hint else None
        display.guard_blocked(action.tool, verdict.code, verdict.reason, next_tool)
        self._append_calls(step, [(call_id, action)])
        self._record_action(step, call_id, action, failure, self.last_url)

        if verdict.fatal:
            raise FatalRunError(verdict.reason)
        if next_tool and next_tool != action.tool and next_tool in self.allowed_tools:
            return PlannedAction(tool=next_tool, args=dict(verdict.hint.next_args))
        return None

    async def _execute(self, step: int, action: PlannedAction) -> ToolResult:
        spec = spec_for(action.tool)
        if spec is None or action.tool not in self.allowed_tools:
            return ToolFailure(code="INVALID_ACTION", reason=f"Tool '{action.tool}' is not available in this run.")
        if spec.local:
            return await self._run_local(step, action)

        self.metrics.tool_calls += 1
        raw = await self.driver.execute(action.tool, action.args)
        result = parse_result(action.tool, raw)
        if isinstance(result, ToolFailure):
            result = attach_fallback(action.tool, result)
        return result

    async def _run_local(self, step: int, action: PlannedAction) -> ToolResult:
        if action.tool == "save_progress":
            data = action.args.get("data", action.args)
            if not isinstance(data, dict) or not data:
                return ToolFailure(code="INVALID_SAVE_PROGRESS", reason="save_progress requires a non-empty data object.")
            self.scratchpad = _merge_scratchpad(self.scratchpad, data, self.SCRATCHPAD_MAX_ITEMS)
            return LocalResult(message="Progress saved to the scratchpad.", saved_keys=sorted(self.scratchpad))

        if action.tool == "notify_connector":
            if self.sink is None:
                return ToolFailure(code="NOTIFY_UNAVAILABLE", reason="No notification sink is configured.")
            if not self.notify_limiter.acquire():
                return ToolFailure(
                    code="RATE_LIMITED",
                    reason=f"notify_connector is limited to {self.notify_limiter.max_calls} calls per run.",
                )
            receipt = await self.sink.notify(
                str(action.args["connector_id"]), str(action.args["message"]), {"goal": self.goal, "step": step}
            )
            if not receipt.success:
                self.throttle.warn(f"notify.{receipt.connector_id}", "Notification failed", receipt.error)
                return ToolFailure(code="NOTIFY_FAILED", reason=receipt.error or "Notification was not delivered.")
            return LocalResult(message="Notification sent.", delivered=receipt.delivered)

        return ToolFailure(code="INVALID_ACTION", reason=f"{action.tool} cannot be dispatched as an action.")

    def _after_action(self, step: int, call_id: str, action: PlannedAction, result: ToolResult,
                      url_before: str | None) -> None:
        self.loop_guard.record(action, result)
        result = self._track_url(action, result)
        self._record_action(step, call_id, action, result, url_before)
        self.tracker.update_after_action(step, action.tool, action.args, result)
        display.observation(result)

        if result.success:
            self._tool_fail_streak = 0
            return
        self._tool_fail_streak += 1
        if self._tool_fail_streak >= self.TOOL_FAIL_STREAK_NUDGE:
            failed = [
                f"{e.tool} → {e.result.get('code', 'FAILED')}"
                for e in self.history[-self._tool_fail_streak :]
                if isinstance(e, ActionEntry) and e.result.get("success") is False
            ]
            self._fail_nudge = (
                f"{self._tool_fail_streak} consecutive tool failures: {'; '.join(failed)}. "
                "The current approach is not working; switch to a fundamentally different strategy."
            )
            self._tool_fail_streak = 0

    def _flush_fail_nudge(self) -> None:
        # Held back until every tool message answering the same call turn is in place.
        if self._fail_nudge:
            self._append_user(self._fail_nudge)
            self._fail_nudge = None

    def _track_url(self, action: PlannedAction, result: ToolResult) -> ToolResult:
        if not result.success:
            return result
        url = result.final_url if isinstance(result, NavigateResult) and result.final_url else result.url
        if not url:
            return result
        self.last_url = url

        if action.tool not in _NAVIGATION_TOOLS:
            return result
        if url in self.visited_urls or len(self.visited_urls) < self.MAX_VISITED_URLS:
            self.visited_urls[url] = self.visited_urls.get(url, 0) + 1

        if isinstance(result, NavigateResult):
            dead = result.status_code in (404, 410) or bool(_DEAD_END.search(result.title or ""))
            if not dead and len(result.page_text) < 600:
                dead = bool(_DEAD_END.search(result.page_text))
            if dead:
                candidates = _recovery_candidates(url)
                self.throttle.warn("navigate.dead_end", f"Dead-end page at {url}")
                return NavigateResult.model_validate(
                    {
                        **result.model_dump(),
                        "dead_end": True,
                        "recovery_candidates": candidates,
                        "warning": "This page does not exist. Try: " + ", ".join(candidates or ["a search"]),
                    }
                )
        return result

    # ------------------------------------------------------------------
    # Pauses
    # ------------------------------------------------------------------

    async def _pause(self, step: int, kind: str, reason: str, blockers: list[str]) -> ResumeSignal:
        self.history.append(PauseEntry(step=step, kind=kind, reason=reason, blockers=blockers))
        if self._aborted:
            return ResumeSignal(ResumeKind.ABORTED)

        self.pause_gate.open()
        self.status = RunStatus.PAUSED
        display.paused(kind, reason, blockers)
        logger.info("Run paused (%s) at step %d", kind, step)
        try:
            signal = await self.pause_gate.wait()
        finally:
            self.status = RunStatus.RUNNING

        if self._aborted:
            return ResumeSignal(ResumeKind.ABORTED)
        if signal.kind == ResumeKind.RESUMED:
            display.resumed(signal.guidance)
            if signal.guidance:
                self._append_user(f"[PRIORITY GUIDANCE FROM USER] {signal.guidance}")
        return signal

    def _after_pause(self, signal: ResumeSignal, step: int) -> TerminalResult | None:
        if signal.kind == ResumeKind.ABORTED:
            return self._terminal(TerminalStatus.FAILED, "Aborted by user", steps=step)
        if signal.kind == ResumeKind.PARTIAL:
            return self._best_effort("Partial completion requested by the operator", steps=step)
        return None

    async def _check_intervention(self, step: int) -> TerminalResult | None:
        signal = await self.driver.detect_intervention()
        if signal is None:
            return None

        message = signal.message or f"Manual {signal.kind} step required on the page"
        if not self.options.interactive:
            self.history.append(PauseEntry(step=step, kind="manual_intervention", reason=message, blockers=[signal.kind]))
            return self._terminal(TerminalStatus.FAILED, message, steps=step)

        resumed = await self._pause(step, "manual_intervention", message, [signal.kind])
        if resumed.kind == ResumeKind.RESUMED:
            self._append_user("Manual step has been completed by the user. Re-observe the page and continue.")
        return self._after_pause(resumed, step)

    async def _on_budget_stop(self, step: int, stop: BudgetExceeded) -> TerminalResult | None:
        self.metrics.budget_exceeded = stop.kind
        logger.info("Budget stop at step %d: %s", step, stop.reason)
        if self.options.interactive and not self.budget.override_used:
            signal = await self._pause(
                step,
                "budget",
                stop.reason,
                [stop.reason, "Resume to continue without budget enforcement for the rest of this run."],
            )
            if signal.kind == ResumeKind.RESUMED:
                self.budget.grant_override()
                return None
            return self._after_pause(signal, step)
        return self._terminal(TerminalStatus.TIMEOUT, stop.reason, steps=step)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    async def _handle_step_error(self, step: int, exc: Exception) -> TerminalResult | None:
        message = str(exc) or type(exc).__name__
        self.metrics.errors += 1
        self.history.append(ErrorEntry(step=step, content=_truncate(message, 500)))
        logger.warning("Step %d failed: %s", step, message)

        if _is_rate_limit(exc):
            self._rate_limit_errors += 1
            self._consecutive_errors += 1
            if self._rate_limit_errors >= self.RATE_LIMIT_MAX_RETRIES:
                return self._terminal(
                    TerminalStatus.FAILED,
                    "Persistent rate limiting from the reasoning backend; wait a few minutes and retry",
                    steps=step + 1,
                )
            delay = min(
                self.RATE_LIMIT_BACKOFF_BASE_S * 2 ** (self._rate_limit_errors - 1),
                self.RATE_LIMIT_BACKOFF_MAX_S,
            )
            display.step_error(message, delay)
            await self._sleep(delay)
            self._append_user(
                f"Reasoning backend rate limit (429). This is a temporary provider issue, not a problem with "
                f"your approach. Waited {delay:.0f}s; retry the same action."
            )
            return None

        self._rate_limit_errors = 0
        self._consecutive_errors += 1
        if self._consecutive_errors >= self.MAX_CONSECUTIVE_ERRORS:
            return self._terminal(
                TerminalStatus.FAILED,
                f"Too many consecutive errors ({self._consecutive_errors}). Last: {message}",
                steps=step + 1,
            )
        display.step_error(message)
        self._append_user(f"Error occurred: {message}. Try a different approach.")
        return None

    # ------------------------------------------------------------------
    # Terminal results
    # ------------------------------------------------------------------

    def _terminal(
        self,
        status: TerminalStatus,
        reason: str = "",
        *,
        summary: str = "",
        answer: str = "",
        steps: int | None = None,
        remaining: list[str] | None = None,
    ) -> TerminalResult:
        partial = None
        if status != TerminalStatus.COMPLETE:
            if not answer:
                fallback = best_effort_answer(self.reflection_state)
                if fallback is not None:
                    summary = summary or fallback[0]
                    answer = fallback[1]
            if answer or status in (TerminalStatus.PARTIAL, TerminalStatus.STUCK):
                partial = PartialResult(
                    status=status.value,
                    reason=reason,
                    remaining_subgoals=remaining if remaining is not None else self.tracker.remaining(),
                    suggestion=_SUGGESTIONS[status],
                )

        return TerminalResult(
            success=status == TerminalStatus.COMPLETE,
            status=status,
            reason=reason,
            summary=summary,
            answer=answer,
            steps=self.next_step if steps is None else steps,
            partial_result=partial,
            metrics=self._metrics(),
        )

    def _best_effort(self, reason: str, steps: int) -> TerminalResult:
        fallback = best_effort_answer(self.reflection_state)
        if fallback is None:
            return self._terminal(TerminalStatus.FAILED, f"{reason}; no evidence was collected", steps=steps)
        return self._terminal(TerminalStatus.PARTIAL, reason, summary=fallback[0], answer=fallback[1], steps=steps)

    async def _finish(self, result: TerminalResult) -> TerminalResult:
        result = result.model_copy(update={"metrics": self._metrics()})
        self.result = result
        self.status = (
            RunStatus.DONE if result.status in (TerminalStatus.COMPLETE, TerminalStatus.PARTIAL) else RunStatus.FAILED
        )
        logger.info("Run finished: %s (%s)", result.status.value, result.reason)
        display.final_result(result)
        await self._notify_finish(result)
        return result

    async def _notify_finish(self, result: TerminalResult) -> None:
        if self.sink is None or not self.options.notify_on_finish:
            return
        text = f"[{result.status.value}] {self.goal}\n\n{result.summary}\n\n{result.answer}".strip()[:4000]
        meta = {"status": result.status.value, "steps": result.steps, "goal": self.goal}
        for connector in self.options.notify_on_finish:
            if not self.notify_limiter.acquire():
                self.throttle.warn("notify.limit", "Notification limit reached; final result not sent", connector)
                return
            try:
                receipt = await self.sink.notify(connector, text, meta)
            except Exception as exc:
                self.throttle.warn(f"notify.{connector}", "Final result notification failed", exc)
                continue
            if not receipt.success:
                self.throttle.warn(f"notify.{connector}", "Final result notification failed", receipt.error)

    def _metrics(self) -> RunMetrics:
        return self.metrics.model_copy(
            update={
                "tokens": self.budget.usage.model_copy(),
                "estimated_cost_usd": round(self.budget.cost_used_usd, 6),
                "duration_ms": self.budget.elapsed_ms,
            }
        )

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def _initial_messages(self) -> list[dict]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": f"Task: {self.goal}"},
        ]

    def _request_messages(self) -> list[dict]:
        return [*self.messages, self._task_state_message()]

    def _task_state_message(self) -> dict:
        lines = [f"Task: {self.goal}", "Sub-goals:", self.tracker.tracker_text()]
        if self.last_url:
            lines.append(f"Current page: {self.last_url}")
        if self.scratchpad:
            lines.append("Scratchpad (saved progress):")
            lines.append(_truncate(json.dumps(self.scratchpad, ensure_ascii=False, default=str), 4000))
        lines.append(self.compactor.context_text(self.goal))
        return {"role": "system", "content": "\n".join(lines)}

    def _append_user(self, content: str) -> None:
        self.compactor.append(self.messages, {"role": "user", "content": content}, self.next_step)

    def _append_calls(self, step: int, calls: list[tuple[str, PlannedAction]]) -> None:
        message = {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {
                    "id": call_id,
                    "type": "function",
                    "function": {"name": action.tool, "arguments": json.dumps(action.args, default=str)},
                }
                for call_id, action in calls
            ],
        }
        self.compactor.append(self.messages, message, step)

    def _record_action(self, step: int, call_id: str, action: PlannedAction, result: ToolResult,
                       url: str | None) -> None:
        payload = result.model_dump(exclude_none=True)
        self.history.append(ActionEntry(step=step, tool=action.tool, args=action.args, result=payload, url=url))
        content = json.dumps(payload, ensure_ascii=False, default=str)
        self.compactor.append(
            self.messages,
            {"role": "tool", "tool_call_id": call_id, "content": content[: self.TOOL_MESSAGE_CHARS]},
            step,
        )

    def _high_signal_observations(self) -> list[str]:
        texts = []
        for entry in self.history:
            if not isinstance(entry, ActionEntry) or entry.result.get("success") is False:
                continue
            result = parse_result(entry.tool, entry.result)
            if not is_high_signal(entry.tool, result):
                continue
            texts.append(result_text(result))
            if entry.result.get("items"):
                texts.append(str(entry.result["items"])[:2000])
        return texts

    def _last_action(self) -> ActionEntry | None:
        for entry in reversed(self.history):
            if isinstance(entry, ActionEntry) and entry.tool not in TERMINAL_TOOLS:
                return entry
        return None

    def _update_progress(self, state: ReflectionState) -> None:
        completed = self.tracker.completed_count
        facts = len(set(state.facts))
        best_completed, best_facts = self._progress_marker
        if completed > best_completed or facts > best_facts:
            self._no_progress = 0
        else:
            self._no_progress += 1
        self._progress_marker = (max(completed, best_completed), max(facts, best_facts))

    # ------------------------------------------------------------------
    # Checkpoint sanitation
    # ------------------------------------------------------------------

    def _sanitize_entry(self, entry):
        entry = entry.model_copy(deep=True)
        if isinstance(entry, (ThoughtEntry, ErrorEntry)):
            entry.content = _truncate(entry.content, self.CHECKPOINT_TEXT_CHARS)
        elif isinstance(entry, PauseEntry):
            entry.reason = _truncate(entry.reason, self.CHECKPOINT_TEXT_CHARS)
        elif isinstance(entry, ActionEntry):
            packed = json.dumps(entry.result, ensure_ascii=False, default=str)
            if len(packed) > self.CHECKPOINT_RESULT_CHARS:
                entry.result = {
                    "success": entry.result.get("success", True),
                    "truncated": True,
                    "original_length": len(packed),
                    "excerpt": packed[: self.CHECKPOINT_RESULT_CHARS],
                }
        return entry

    def _bounded_summary(self):
        summary = self.compactor.snapshot()
        summary.running = summary.running[: self.CHECKPOINT_SUMMARY_CHARS // 3]
        while len(summary.model_dump_json()) > self.CHECKPOINT_SUMMARY_CHARS and summary.pending:
            summary.pending.pop(0)
        while len(summary.model_dump_json()) > self.CHECKPOINT_SUMMARY_CHARS and summary.rag_entries:
            summary.rag_entries.pop(0)
        return summary


_SUGGESTIONS = {
    TerminalStatus.PARTIAL: "Verify the remaining parts manually or resume the run with guidance.",
    TerminalStatus.TIMEOUT: "Raise the budget or resume from the checkpoint to continue.",
    TerminalStatus.STUCK: "Refine the goal or give guidance on the remaining sub-goals.",
    TerminalStatus.FAILED: "Review the reason above and retry with a narrower goal.",
    TerminalStatus.COMPLETE: "",
}
