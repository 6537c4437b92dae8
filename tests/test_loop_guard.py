from browse_pilot.loop_guard import (
    LoopDetector,
    action_key,
    attach_fallback,
    fingerprint,
    is_search_results_url,
)
from browse_pilot.models import ActionEntry, InteractionResult, PlannedAction, ScrollResult, ToolFailure

SERP = "https://www.google.com/search?q=berlin+weather"


def entry(step, tool, args=None, result=None, url=None):
    return ActionEntry(step=step, tool=tool, args=args or {}, result=result or {"success": True}, url=url)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

def test_action_key_ignores_arg_order():
    assert action_key("type", {"target": "e1", "text": "hi"}) == action_key("type", {"text": "hi", "target": "e1"})
    assert action_key("type", {"target": "e1"}) != action_key("click", {"target": "e1"})

def test_fingerprint_uses_first_salient_arg():
    assert fingerprint("find_text", {"query": "  Opening   Hours "}) == "find_text|opening hours"
    assert fingerprint("read_page", {}) == "read_page|"

def test_search_results_url_detection():
    assert is_search_results_url(SERP)
    assert is_search_results_url("https://duckduckgo.com/?q=test")
    assert not is_search_results_url("https://www.google.com/maps")
    assert not is_search_results_url("https://example.com/search?q=x")
    assert not is_search_results_url(None)

def test_attach_fallback_adds_reobserve_hint():
    failure = attach_fallback("click", ToolFailure(code="ELEMENT_NOT_FOUND", reason="gone", retryable=True))
    assert failure.hint.next_tool == "read_page"
    assert failure.retryable is False

    untouched = attach_fallback("click", ToolFailure(code="TIMEOUT", reason="slow"))
    assert untouched.hint is None

# ---------------------------------------------------------------------------
# Exact repeats
# ---------------------------------------------------------------------------

def test_exact_repeat_of_click_is_blocked_with_different_hint():
    guard = LoopDetector()
    click = PlannedAction(tool="click", args={"target": "e12"})
    assert guard.check(click, []).allowed
    guard.record(click, InteractionResult())

    verdict = guard.check(click, [entry(0, "click", {"target": "e12"})])
    assert not verdict.allowed
    assert verdict.code == "DUPLICATE_CALL"
    assert verdict.hint.next_tool != "click"
    assert guard.dup_count == 1

def test_scroll_repeat_allowed_once_when_page_moved():
    guard = LoopDetector()
    scroll = PlannedAction(tool="scroll", args={"direction": "down", "amount": 800})
    guard.record(scroll, ScrollResult(moved=True))
    assert guard.check(scroll, []).allowed

    guard.record(scroll, ScrollResult(moved=True))
    verdict = guard.check(scroll, [])
    assert not verdict.allowed
    assert verdict.code == "DUPLICATE_CALL"

def test_scroll_repeat_blocked_when_page_did_not_move():
    guard = LoopDetector()
    scroll = PlannedAction(tool="scroll", args={"direction": "down"})
    guard.record(scroll, ScrollResult(moved=False))
    assert guard.check(scroll, []).code == "DUPLICATE_CALL"

def test_terminal_and_local_tools_always_allowed():
    guard = LoopDetector()
    save = PlannedAction(tool="save_progress", args={"data": {"a": 1}})
    guard.record(save, ToolFailure(code="X"))
    assert guard.check(save, []).allowed
    assert guard.check(PlannedAction(tool="done", args={}), []).allowed

# ---------------------------------------------------------------------------
# Blocked repeats and escalation
# ---------------------------------------------------------------------------

def test_repeat_of_blocked_target_follows_hint():
    guard = LoopDetector()
    history = [
        entry(0, "click", {"target": "e5"}, {
            "success": False, "code": "ELEMENT_NOT_FOUND", "reason": "stale",
            "hint": {"next_tool": "find", "next_args": {"query": "submit"}},
        }),
    ]
    verdict = guard.check(PlannedAction(tool="click", args={"target": "e5"}), history)
    assert verdict.code == "ACTION_LOOP_GUARD"
    assert verdict.hint.next_tool == "find"
    assert guard.blocked_repeat_count == 1

def test_repeated_block_without_hint_becomes_fatal():
    guard = LoopDetector()
    blocked = {"success": False, "code": "SITE_BLOCKED", "reason": "robots"}
    action = PlannedAction(tool="navigate", args={"url": "https://blocked.example"})
    history = [entry(0, "navigate", {"url": "https://blocked.example"}, blocked)]

    guard.record(action, ToolFailure(code="SITE_BLOCKED"))
    verdict = guard.check(action, history)
    assert not verdict.allowed
    assert verdict.fatal is True
    assert verdict.code == "POLICY_CONFLICT"

def test_sanitize_rewrites_action_whose_twin_was_blocked():
    guard = LoopDetector()
    history = [
        entry(0, "click", {"target": "e9"}, {
            "success": False, "code": "DUPLICATE_CALL", "reason": "dup",
            "hint": {"next_tool": "read_page", "next_args": {}},
        }),
    ]
    rewritten = guard.sanitize(PlannedAction(tool="click", args={"target": "e9"}), history)
    assert rewritten.tool == "read_page"

def test_sanitize_broadens_failed_find_text():
    guard = LoopDetector()
    url = "https://shop.example/item"
    history = [entry(0, "find_text", {"query": "price"}, {"success": True, "found": False}, url=url)]
    rewritten = guard.sanitize(PlannedAction(tool="find_text", args={"query": "Price"}), history, url)
    assert rewritten.tool == "get_page_text"

# ---------------------------------------------------------------------------
# Vacillation, cycles and search-results loops
# ---------------------------------------------------------------------------

def test_passive_vacillation_forces_state_change():
    guard = LoopDetector()
    tools = ["read_page", "get_page_text", "read_page", "get_page_text", "read_page", "get_page_text"]
    history = [entry(i, t, {"scope": f"s{i}"} if t == "get_page_text" else {}) for i, t in enumerate(tools)]
    verdict = guard.check(PlannedAction(tool="read_page"), history)
    assert verdict.code == "ACTION_LOOP_GUARD"
    assert verdict.hint.next_tool == "scroll"

def test_cycle_is_broken_with_unused_tool():
    guard = LoopDetector()
    history = [
        entry(0, "navigate", {"url": "https://a.example"}),
        entry(1, "back", {}),
        entry(2, "navigate", {"url": "https://a.example"}),
        entry(3, "back", {}),
    ]
    verdict = guard.check(PlannedAction(tool="navigate", args={"url": "https://a.example"}), history)
    assert verdict.code == "ACTION_LOOP_GUARD"
    assert verdict.hint.next_tool == "get_page_text"

def test_semantic_repeat_after_two_empty_reads():
    guard = LoopDetector()
    url = "https://news.example"
    miss = {"success": True, "found": False, "count": 0}
    history = [
        entry(0, "find_text", {"query": "score"}, miss, url=url),
        entry(1, "scroll", {"direction": "down"}, url=url),
        entry(2, "find_text", {"query": "score"}, miss, url=url),
    ]
    verdict = guard.check(PlannedAction(tool="find_text", args={"query": "score"}), history, url)
    assert verdict.code == "ACTION_LOOP_GUARD"
    assert verdict.hint.next_tool == "get_page_text"

def test_search_results_loop_opens_discovered_link():
    guard = LoopDetector()
    history = [
        entry(0, "extract_structured", {"hint": "results"}, {
            "success": True, "items": [{"url": "https://weather.example/berlin"}], "count": 1,
        }, url=SERP),
        entry(1, "get_page_text", {"scope": "viewport"}, url=SERP),
        entry(2, "read_page", {}, url=SERP),
    ]
    verdict = guard.check(PlannedAction(tool="get_page_text", args={"scope": "full"}), history, SERP)
    assert verdict.code == "ACTION_LOOP_GUARD"
    assert verdict.hint.next_tool == "navigate"
    assert verdict.hint.next_args == {"url": "https://weather.example/berlin"}
    assert guard.serp_loop_count == 1
    assert guard.loop_signals >= 1
