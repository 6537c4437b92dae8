# tools.py
# Tool vocabulary: the closed set of names the reflection step may plan,
# what each one needs, and how its Page Driver result is typed.
# The harness dispatches through TOOL_SPECS and never switches on raw strings.

from dataclasses import dataclass
from enum import Enum

from pydantic import ValidationError

from browse_pilot.models import (
    ExtractResult,
    FindResult,
    FindTextResult,
    InteractionResult,
    LocalResult,
    NavigateResult,
    PageTextResult,
    PageTreeResult,
    ScrollResult,
    TabResult,
    ToolFailure,
    ToolResult,
)


class Tool(str, Enum):
    READ_PAGE = "read_page"
    GET_PAGE_TEXT = "get_page_text"
    EXTRACT_STRUCTURED = "extract_structured"
    FIND = "find"
    FIND_TEXT = "find_text"
    SCREENSHOT = "screenshot"
    NAVIGATE = "navigate"
    BACK = "back"
    FORWARD = "forward"
    RELOAD = "reload"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    SELECT = "select"
    HOVER = "hover"
    PRESS_KEY = "press_key"
    WAIT_FOR = "wait_for"
    OPEN_TAB = "open_tab"
    LIST_TABS = "list_tabs"
    SWITCH_TAB = "switch_tab"
    CLOSE_TAB = "close_tab"
    SWITCH_FRAME = "switch_frame"
    HTTP_REQUEST = "http_request"
    NOTIFY_CONNECTOR = "notify_connector"
    SAVE_PROGRESS = "save_progress"
    DONE = "done"
    FAIL = "fail"


@dataclass(frozen=True)
class ToolSpec:
    description: str
    required: tuple[str, ...] = ()
    result_type: type[ToolResult] = ToolResult
    parallel_safe: bool = False  # independent read, may run concurrently
    mutates: bool = False        # changes page state, ends a dispatch batch
    passive: bool = False        # observation only
    local: bool = False          # handled by the harness, not the Page Driver
    visible_change: bool = False # may be repeated once when it measurably moved the page


TOOL_SPECS: dict[Tool, ToolSpec] = {
    Tool.READ_PAGE: ToolSpec(
        "Structured tree of the page with element ids for click/type.",
        result_type=PageTreeResult, parallel_safe=True, passive=True,
    ),
    Tool.GET_PAGE_TEXT: ToolSpec(
        "Visible page text. args: scope (viewport|full).",
        result_type=PageTextResult, parallel_safe=True, passive=True,
    ),
    Tool.EXTRACT_STRUCTURED: ToolSpec(
        "Extract repeated items (results, rows, cards). args: hint, max_items.",
        result_type=ExtractResult, parallel_safe=True, passive=True,
    ),
    Tool.FIND: ToolSpec(
        "Find interactive elements matching a description. args: query.",
        required=("query",), result_type=FindResult, parallel_safe=True, passive=True,
    ),
    Tool.FIND_TEXT: ToolSpec(
        "Search the page text for a phrase. args: query.",
        required=("query",), result_type=FindTextResult, parallel_safe=True, passive=True,
    ),
    Tool.SCREENSHOT: ToolSpec("Capture the viewport.", passive=True),
    Tool.NAVIGATE: ToolSpec(
        "Load a URL in the current tab. args: url.",
        required=("url",), result_type=NavigateResult, mutates=True,
    ),
    Tool.BACK: ToolSpec("History back.", result_type=NavigateResult, mutates=True),
    Tool.FORWARD: ToolSpec("History forward.", result_type=NavigateResult, mutates=True),
    Tool.RELOAD: ToolSpec("Reload the page.", result_type=NavigateResult, mutates=True),
    Tool.CLICK: ToolSpec(
        "Click an element. args: target (element id from read_page/find).",
        required=("target",), result_type=InteractionResult, mutates=True,
    ),
    Tool.TYPE: ToolSpec(
        "Type into an element. args: target, text, submit.",
        required=("target", "text"), result_type=InteractionResult, mutates=True,
    ),
    Tool.SCROLL: ToolSpec(
        "Scroll the page. args: direction (up|down), amount (px).",
        result_type=ScrollResult, mutates=True, visible_change=True,
    ),
    Tool.SELECT: ToolSpec(
        "Choose an option. args: target, value.",
        required=("target", "value"), result_type=InteractionResult, mutates=True,
    ),
    Tool.HOVER: ToolSpec(
        "Hover an element. args: target.",
        required=("target",), result_type=InteractionResult, mutates=True,
    ),
    Tool.PRESS_KEY: ToolSpec(
        "Press a key. args: key.",
        required=("key",), result_type=InteractionResult, mutates=True,
    ),
    Tool.WAIT_FOR: ToolSpec("Wait for a selector or a delay. args: selector, timeout_ms."),
    Tool.OPEN_TAB: ToolSpec(
        "Open a URL in a new tab. args: url.",
        required=("url",), result_type=TabResult, mutates=True,
    ),
    Tool.LIST_TABS: ToolSpec("List open tabs.", result_type=TabResult, passive=True),
    Tool.SWITCH_TAB: ToolSpec("Activate a tab. args: tab_id.", result_type=TabResult, mutates=True),
    Tool.CLOSE_TAB: ToolSpec("Close a tab. args: tab_id.", result_type=TabResult, mutates=True),
    Tool.SWITCH_FRAME: ToolSpec("Enter an iframe or return to the top frame. args: frame.", mutates=True),
    Tool.HTTP_REQUEST: ToolSpec(
        "Plain HTTP GET outside the page. args: url.",
        required=("url",), result_type=PageTextResult,
    ),
    Tool.NOTIFY_CONNECTOR: ToolSpec(
        "Send a message through a configured connector. args: connector_id, message.",
        required=("connector_id", "message"), result_type=LocalResult, local=True,
    ),
    Tool.SAVE_PROGRESS: ToolSpec(
        "Merge findings into the run scratchpad. args: data (object).",
        result_type=LocalResult, local=True,
    ),
    Tool.DONE: ToolSpec("Finish with summary and answer.", result_type=LocalResult, local=True),
    Tool.FAIL: ToolSpec("Give up. args: reason.", required=("reason",), result_type=LocalResult, local=True),
}

ALL_TOOLS: tuple[str, ...] = tuple(tool.value for tool in Tool)

PARALLEL_SAFE: frozenset[str] = frozenset(t.value for t, s in TOOL_SPECS.items() if s.parallel_safe)
PASSIVE_TOOLS: frozenset[str] = frozenset(t.value for t, s in TOOL_SPECS.items() if s.passive)
STATE_MUTATING: frozenset[str] = frozenset(t.value for t, s in TOOL_SPECS.items() if s.mutates)
READ_EVIDENCE_TOOLS: frozenset[str] = frozenset(
    {"get_page_text", "read_page", "find_text", "find", "extract_structured"}
)
TERMINAL_TOOLS: frozenset[str] = frozenset({"done", "fail"})

# Failure codes that count as "blocked" for loop-guard purposes.
BLOCKED_CODES: frozenset[str] = frozenset(
    {
        "SITE_BLOCKED",
        "HTTP_REQUEST_BLOCKED",
        "CONFIRMATION_REQUIRED",
        "INVALID_TARGET",
        "ELEMENT_NOT_FOUND",
        "INVALID_ACTION",
        "DUPLICATE_CALL",
        "ACTION_LOOP_GUARD",
    }
)

HIGH_SIGNAL_TEXT_CHARS = 200


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def lookup(name: str) -> Tool | None:
    try:
        return Tool(name)
    except ValueError:
        return None


def spec_for(name: str) -> ToolSpec | None:
    tool = lookup(name)
    return TOOL_SPECS[tool] if tool is not None else None


def missing_args(name: str, args: dict) -> list[str]:
    """Required arguments that are absent or blank."""
    spec = spec_for(name)
    if spec is None:
        return []
    missing = []
    for key in spec.required:
        value = args.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            missing.append(key)
    return missing


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


def parse_result(name: str, raw) -> ToolResult:
    """
    Validate a Page Driver payload into the typed result for `name`.

    `{success: false, ...}` always becomes a ToolFailure. Payloads that are
    not mappings, or that do not validate, become an INVALID_RESULT failure
    rather than raising.
    """
    if isinstance(raw, ToolResult):
        return raw
    if not isinstance(raw, dict):
        return ToolFailure(code="INVALID_RESULT", reason=f"{name} returned {type(raw).__name__}, expected a mapping.")

    try:
        if raw.get("success") is False:
            return ToolFailure.model_validate(raw)
        spec = spec_for(name)
        result_type = spec.result_type if spec is not None else ToolResult
        return result_type.model_validate(raw)
    except ValidationError as exc:
        return ToolFailure(code="INVALID_RESULT", reason=f"{name} result did not validate: {exc.error_count()} error(s).")


def result_text(result: ToolResult) -> str:
    """Best single chunk of readable text carried by a result."""
    if isinstance(result, PageTextResult):
        return result.text
    if isinstance(result, NavigateResult):
        return result.page_text
    if isinstance(result, FindTextResult):
        return " | ".join(result.snippets)
    if isinstance(result, ToolFailure):
        return result.reason
    extra = result.model_extra or {}
    text = extra.get("text") or extra.get("page_text") or ""
    return text if isinstance(text, str) else ""


def is_high_signal(name: str, result: ToolResult) -> bool:
    """True when the result carries new, non-trivial evidence."""
    if not result.success:
        return False
    if isinstance(result, ExtractResult):
        return result.count > 0 or bool(result.items)
    if isinstance(result, FindTextResult):
        return result.found or result.count > 0
    if isinstance(result, FindResult):
        return bool(result.matches)
    if isinstance(result, (PageTextResult, NavigateResult)):
        return len(result_text(result).strip()) >= HIGH_SIGNAL_TEXT_CHARS
    return False
