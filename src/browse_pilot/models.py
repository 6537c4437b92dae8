# models.py
# Data contracts for the browse-pilot orchestration loop.
# No business logic lives here: pure schema and validation.

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from browse_pilot.config import Settings


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused_waiting_user"
    DONE = "done"
    FAILED = "failed"


class TerminalStatus(str, Enum):
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMEOUT = "timeout"
    STUCK = "stuck"


class SubGoalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


# ---------------------------------------------------------------------------
# Reflection
# ---------------------------------------------------------------------------


class PlannedAction(BaseModel):
    """One proposed tool call. Rewritten by the loop detector before dispatch."""

    tool: str = Field(..., description="Tool name from the closed vocabulary in tools.py.")
    args: dict = Field(default_factory=dict, description="Tool arguments.")


class ConfidenceComponents(BaseModel):
    """Breakdown of how the raw confidence was discounted."""

    raw: float
    stagnation_penalty: float = 1.0
    loop_penalty: float = 1.0
    progress_ratio: float = 0.0
    effective: float


class ReflectionState(BaseModel):
    """The single structured reasoning output of one iteration."""

    facts: list[str] = Field(default_factory=list)
    unknowns: list[str] = Field(default_factory=list)
    sufficiency: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    summary: str = ""
    answer: str = ""
    search_query: str = ""
    actions: list[PlannedAction] = Field(default_factory=list, max_length=4)
    components: ConfidenceComponents | None = None


# ---------------------------------------------------------------------------
# Sub-goals
# ---------------------------------------------------------------------------


class SubGoal(BaseModel):
    id: str = Field(..., description="Stable id, sg_1 .. sg_N.")
    text: str
    status: SubGoalStatus = SubGoalStatus.PENDING
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    attempts: int = 0
    evidence: list[str] = Field(default_factory=list, description="At most 4, most recent first.")
    last_tool: str | None = None
    last_updated_step: int = -1


# ---------------------------------------------------------------------------
# Budgets and usage
# ---------------------------------------------------------------------------


class Budget(BaseModel):
    """Resource ceilings for one run. A ceiling of 0 disables that dimension."""

    max_wall_clock_ms: int = Field(default=0, ge=0)
    max_total_tokens: int = Field(default=0, ge=0)
    max_estimated_cost_usd: float = Field(default=0.0, ge=0.0)


class BudgetExceeded(BaseModel):
    kind: Literal["wall_clock", "tokens", "cost", "tokens_projection"]
    limit: float
    used: float
    reason: str


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


# ---------------------------------------------------------------------------
# Reasoning backend exchange
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict = Field(default_factory=dict)
    raw_arguments: str = Field(default="", description="Unparsed argument text when JSON decoding failed.")


class BackendResponse(BaseModel):
    text: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)


# ---------------------------------------------------------------------------
# Tool results
#
# Every Page Driver result is validated into one of these. Fields common to
# all tools sit on ToolResult; each family declares its own. Anything else
# the driver reports is kept as an extra field.
# ---------------------------------------------------------------------------


class FallbackHint(BaseModel):
    """A concrete next action offered alongside a failure."""

    next_tool: str
    next_args: dict = Field(default_factory=dict)
    strategy: str = ""
    message: str = ""


class ToolResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool = True
    url: str | None = None
    title: str | None = None


class ToolFailure(ToolResult):
    success: bool = False
    code: str = "TOOL_ERROR"
    reason: str = ""
    hint: FallbackHint | None = None
    retryable: bool = False


class PageTextResult(ToolResult):
    text: str = ""


class PageTreeResult(ToolResult):
    tree: str = ""
    interactive_count: int = 0


class ExtractResult(ToolResult):
    items: list = Field(default_factory=list)
    count: int = 0


class FindTextResult(ToolResult):
    query: str = ""
    found: bool = False
    count: int = 0
    snippets: list[str] = Field(default_factory=list)


class FindResult(ToolResult):
    query: str = ""
    matches: list = Field(default_factory=list)


class NavigateResult(ToolResult):
    final_url: str | None = None
    page_text: str = ""
    status_code: int | None = None


class ScrollResult(ToolResult):
    moved: bool = False
    scroll_y: int | None = None


class InteractionResult(ToolResult):
    target: str | None = None


class TabResult(ToolResult):
    tabs: list = Field(default_factory=list)
    tab_id: str | None = None


class LocalResult(ToolResult):
    """Result of a tool the harness handles itself (save_progress, notify_connector, ...)."""

    message: str = ""


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class ThoughtEntry(BaseModel):
    type: Literal["thought"] = "thought"
    step: int
    content: str


class ActionEntry(BaseModel):
    type: Literal["action"] = "action"
    step: int
    tool: str
    args: dict = Field(default_factory=dict)
    result: dict = Field(default_factory=dict, description="Serialized ToolResult.")
    url: str | None = Field(default=None, description="Page the action ran against.")


class ErrorEntry(BaseModel):
    type: Literal["error"] = "error"
    step: int
    content: str


class PauseEntry(BaseModel):
    type: Literal["pause"] = "pause"
    step: int
    kind: str
    reason: str = ""
    blockers: list[str] = Field(default_factory=list)


HistoryEntry = Annotated[
    Union[ThoughtEntry, ActionEntry, ErrorEntry, PauseEntry],
    Field(discriminator="type"),
]


class RagEntry(BaseModel):
    id: int
    step: int
    source: str = "evicted_turn"
    text: str
    created_at: float


class HistorySummary(BaseModel):
    running: str = ""
    pending: list[str] = Field(default_factory=list, description="Raw evicted chunks awaiting merge.")
    rag_entries: list[RagEntry] = Field(default_factory=list)
    rag_next_id: int = 1
    evicted_messages: int = 0
    evicted_chars: int = 0
    summarized_chunks: int = 0
    updated_at: float | None = None


# ---------------------------------------------------------------------------
# Run configuration and outcome
# ---------------------------------------------------------------------------


class RunOptions(BaseModel):
    max_steps: int = Field(default=50, ge=1)
    budget: Budget = Field(default_factory=Budget)
    reflection_timeout_s: float = Field(default=30.0, ge=1.0, le=180.0)
    max_conversation_messages: int = Field(default=28, ge=6)
    allowed_tools: list[str] | None = Field(default=None, description="None permits the whole vocabulary.")
    interactive: bool = Field(default=True, description="False fails instead of pausing for an operator.")
    notify_on_finish: list[str] = Field(default_factory=list, description="Connector ids that receive the final answer.")
    cost_per_1k_tokens_usd: float = Field(default=0.0, ge=0.0)

    @classmethod
    def from_settings(cls, **overrides) -> "RunOptions":
        values = {
            "max_steps": Settings.MAX_STEPS,
            "budget": Budget(
                max_wall_clock_ms=Settings.MAX_WALL_CLOCK_MS,
                max_total_tokens=Settings.MAX_TOTAL_TOKENS,
                max_estimated_cost_usd=Settings.MAX_COST_USD,
            ),
            "reflection_timeout_s": Settings.REFLECTION_TIMEOUT_S,
            "max_conversation_messages": Settings.MAX_CONVERSATION_MESSAGES,
            "cost_per_1k_tokens_usd": Settings.COST_PER_1K_TOKENS_USD,
        }
        values.update(overrides)
        return cls(**values)


class PartialResult(BaseModel):
    status: str
    reason: str
    remaining_subgoals: list[str] = Field(default_factory=list)
    suggestion: str = ""


class RunMetrics(BaseModel):
    llm_calls: int = 0
    tool_calls: int = 0
    errors: int = 0
    duplicate_tool_calls: int = 0
    invalid_actions: int = 0
    done_attempts: int = 0
    completion_rejections: int = 0
    tokens: Usage = Field(default_factory=Usage)
    estimated_cost_usd: float = 0.0
    budget_exceeded: str | None = None
    duration_ms: int = 0


class TerminalResult(BaseModel):
    """Produced exactly once per run."""

    model_config = ConfigDict(frozen=True)

    success: bool
    status: TerminalStatus
    reason: str = ""
    summary: str = ""
    answer: str = ""
    steps: int = 0
    partial_result: PartialResult | None = None
    metrics: RunMetrics = Field(default_factory=RunMetrics)


class Checkpoint(BaseModel):
    """Everything needed to resume a run from next_step."""

    goal: str
    status: RunStatus = RunStatus.IDLE
    next_step: int = 0
    history: list[HistoryEntry] = Field(default_factory=list)
    scratchpad: dict = Field(default_factory=dict)
    sub_goals: list[SubGoal] = Field(default_factory=list)
    history_summary: HistorySummary = Field(default_factory=HistorySummary)
    reflection_state: ReflectionState | None = None
    tokens_used: Usage = Field(default_factory=Usage)
    cost_used_usd: float = 0.0
    elapsed_ms: int = 0
    budget_override_used: bool = False
    budget_enforced: bool = True
    visited_urls: dict[str, int] = Field(default_factory=dict)
    last_known_url: str | None = None
    guidance_escalations: int = 0
    notify_calls: int = 0
    metrics: RunMetrics = Field(default_factory=RunMetrics)
