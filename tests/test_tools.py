import pytest
from browse_pilot.models import (
    ExtractResult,
    FindTextResult,
    NavigateResult,
    PageTextResult,
    ToolFailure,
)
from browse_pilot.tools import (
    ALL_TOOLS,
    PARALLEL_SAFE,
    STATE_MUTATING,
    TERMINAL_TOOLS,
    is_high_signal,
    lookup,
    missing_args,
    parse_result,
    result_text,
    spec_for,
)

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

def test_vocabulary_is_closed():
    assert lookup("navigate") is not None
    assert lookup("rm_rf") is None
    assert spec_for("rm_rf") is None
    assert "done" in ALL_TOOLS and "fail" in ALL_TOOLS
    assert TERMINAL_TOOLS == {"done", "fail"}

def test_parallel_safe_tools_are_reads_only():
    assert PARALLEL_SAFE == {"read_page", "get_page_text", "extract_structured", "find", "find_text"}
    assert not PARALLEL_SAFE & STATE_MUTATING
    assert {"navigate", "click", "type", "scroll"} <= STATE_MUTATING

def test_local_tools_are_flagged():
    assert spec_for("save_progress").local
    assert spec_for("notify_connector").local
    assert not spec_for("navigate").local

@pytest.mark.parametrize(
    "tool,args,expected",
    [
        ("navigate", {}, ["url"]),
        ("navigate", {"url": "  "}, ["url"]),
        ("type", {"target": "e1"}, ["text"]),
        ("find", {"query": "login"}, []),
        ("read_page", {}, []),
        ("unknown", {}, []),
    ],
)
def test_missing_args(tool, args, expected):
    assert missing_args(tool, args) == expected

# ---------------------------------------------------------------------------
# Result parsing
# ---------------------------------------------------------------------------

def test_failure_payload_becomes_tool_failure():
    result = parse_result("click", {"success": False, "code": "ELEMENT_NOT_FOUND", "reason": "e7 is gone"})
    assert isinstance(result, ToolFailure)
    assert result.code == "ELEMENT_NOT_FOUND"
    assert result_text(result) == "e7 is gone"

def test_success_payload_is_typed_per_tool():
    nav = parse_result("navigate", {"success": True, "url": "https://a.example", "page_text": "Hello", "status_code": 200})
    assert isinstance(nav, NavigateResult)
    assert result_text(nav) == "Hello"

    text = parse_result("get_page_text", {"success": True, "text": "Body", "lang": "en"})
    assert isinstance(text, PageTextResult)
    assert text.model_extra["lang"] == "en"

def test_non_mapping_result_is_invalid_not_raised():
    result = parse_result("read_page", "<html>")
    assert isinstance(result, ToolFailure)
    assert result.code == "INVALID_RESULT"

def test_result_that_does_not_validate_is_invalid():
    result = parse_result("extract_structured", {"success": True, "count": "many"})
    assert result.code == "INVALID_RESULT"

def test_unknown_tool_result_is_kept_generic():
    result = parse_result("custom_probe", {"success": True, "text": "probe output"})
    assert result.success
    assert result_text(result) == "probe output"

# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------

def test_high_signal_rules():
    assert is_high_signal("extract_structured", ExtractResult(items=[{"title": "x"}]))
    assert not is_high_signal("extract_structured", ExtractResult())
    assert is_high_signal("find_text", FindTextResult(found=True))
    assert not is_high_signal("get_page_text", PageTextResult(text="short"))
    assert is_high_signal("get_page_text", PageTextResult(text="x" * 250))
    assert not is_high_signal("get_page_text", ToolFailure(code="TIMEOUT"))
