from browse_pilot.models import PageTextResult, SubGoalStatus, ToolFailure
from browse_pilot.subgoals import SubGoalTracker, extract_goal_subtasks, extract_keywords, keyword_hits

PHONES = "Find the price of iPhone 15 and Pixel 8, then check reviews of Samsung S24"
REVIEW_TEXT = (
    "Samsung S24 reviews: reviewers praise the display and battery life. Average rating 4.6 out of 5 "
    "across 2,300 verified reviews. Camera performance in low light is the most common complaint, "
    "while charging speed is considered average overall."
)


# ---------------------------------------------------------------------------
# Decomposition
# ---------------------------------------------------------------------------

def test_two_entity_phrase_stays_whole():
    parts = extract_goal_subtasks(PHONES)
    assert parts == ["find the price of iphone 15 and pixel 8", "check reviews of samsung s24"]

def test_quoted_spans_are_not_split():
    parts = extract_goal_subtasks('Search for "rock and roll hall of fame" then list the inductees of 2023')
    assert parts[0] == 'search for "rock and roll hall of fame"'
    assert len(parts) == 2

def test_short_parts_and_task_prefix_dropped():
    assert extract_goal_subtasks("Task: open it") == []
    assert extract_goal_subtasks("") == []

def test_subtasks_capped():
    goal = ", ".join(f"visit website number {i}" for i in range(12))
    assert len(extract_goal_subtasks(goal)) == 8

def test_keywords_skip_stopwords_and_short_tokens():
    assert extract_keywords("Find the price of the iPhone 15") == ["price", "iphone"]
    assert keyword_hits(["price", "iphone"], "IPHONE costs a lot") == 1

# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

def test_initialize_assigns_stable_ids():
    tracker = SubGoalTracker()
    goals = tracker.initialize(PHONES)
    assert [g.id for g in goals] == ["sg_1", "sg_2"]
    assert all(g.status == SubGoalStatus.PENDING for g in goals)

def test_single_goal_falls_back_to_whole_text():
    tracker = SubGoalTracker()
    goals = tracker.initialize("Go on")
    assert [g.text for g in goals] == ["Go on"]

def test_high_signal_read_completes_matching_subgoal():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    targets = tracker.update_after_action(
        3, "get_page_text", {"scope": "full"}, PageTextResult(text=REVIEW_TEXT, url="https://reviews.example")
    )
    assert [t.id for t in targets] == ["sg_2"]
    reviews = tracker.sub_goals[1]
    assert reviews.status == SubGoalStatus.COMPLETED
    assert reviews.confidence >= 0.85
    assert reviews.last_updated_step == 3
    assert tracker.completed_count == 1
    assert tracker.progress_ratio() == 0.5

def test_blocking_failure_marks_subgoal_blocked():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    failure = ToolFailure(code="SITE_BLOCKED", reason="samsung reviews site blocked")
    tracker.update_after_action(1, "navigate", {"url": "https://samsung.example/s24/reviews"}, failure)
    assert tracker.sub_goals[1].status == SubGoalStatus.BLOCKED
    assert tracker.sub_goals[1].confidence <= 0.35

def test_unmatched_action_credits_first_open_subgoal():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    tracker.update_after_action(0, "scroll", {"direction": "down"}, PageTextResult(text=""))
    assert tracker.sub_goals[0].status == SubGoalStatus.IN_PROGRESS
    assert tracker.sub_goals[0].attempts == 1

def test_evidence_is_bounded():
    tracker = SubGoalTracker()
    tracker.initialize("Find Samsung S24 reviews")
    for i in range(6):
        tracker.update_after_action(i, "find_text", {"query": f"samsung {i}"}, ToolFailure(code="TIMEOUT"))
    assert len(tracker.sub_goals[0].evidence) == SubGoalTracker.MAX_EVIDENCE
    assert "samsung 5" in tracker.sub_goals[0].evidence[0]

def test_rejected_coverage_only_regresses_missing():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    tracker.sub_goals[1].status = SubGoalStatus.COMPLETED
    tracker.apply_coverage(["check reviews of samsung s24"])
    assert tracker.sub_goals[0].status == SubGoalStatus.PENDING
    assert tracker.sub_goals[1].status == SubGoalStatus.IN_PROGRESS
    assert tracker.sub_goals[1].confidence <= 0.74

def test_rejected_coverage_never_completes_unobserved_subgoal():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    observed = ["iPhone 15 price $799, Pixel 8 price $699"]
    tracker.apply_coverage(["check reviews of samsung s24"], accepted=False, observations=observed)
    assert tracker.completed_count == 0

def test_accepted_coverage_promotes_only_observed_subgoals():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    observed = ["iPhone 15 price $799, Pixel 8 price $699"]
    tracker.apply_coverage([], accepted=True, observations=observed)
    assert tracker.sub_goals[0].status == SubGoalStatus.COMPLETED
    assert tracker.sub_goals[0].confidence >= 0.9
    assert tracker.sub_goals[1].status == SubGoalStatus.PENDING

def test_tracker_text_and_remaining():
    tracker = SubGoalTracker()
    assert tracker.tracker_text() == "No explicit sub-goals detected yet."
    tracker.initialize(PHONES)
    text = tracker.tracker_text()
    assert text.startswith("Progress: 0/2 completed")
    assert "[pending] check reviews of samsung s24" in text
    assert tracker.remaining() == ["find the price of iphone 15 and pixel 8", "check reviews of samsung s24"]

def test_snapshot_is_a_copy():
    tracker = SubGoalTracker()
    tracker.initialize(PHONES)
    snapshot = tracker.snapshot()
    snapshot[0].status = SubGoalStatus.COMPLETED
    assert tracker.sub_goals[0].status == SubGoalStatus.PENDING

    restored = SubGoalTracker()
    restored.restore(snapshot)
    assert restored.completed_count == 1
