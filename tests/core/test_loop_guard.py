from __future__ import annotations

from codeloop.core.loop_guard import LoopBreaker, TurnGuards, signature_key


def test_signature_key_uses_primary_argument() -> None:
    assert signature_key("edit_file", {"file_path": "a.py", "old_string": "x"}) == "edit_file:a.py"
    assert signature_key("terminal", {"command": "pytest"}) == "terminal:pytest"
    assert signature_key("search", {"query": "TODO"}) == "search:TODO"
    assert signature_key("list_files", None) == "list_files:"


def test_breaker_fires_on_third_identical_call() -> None:
    breaker = LoopBreaker()
    args = {"file_path": "a.py", "old_string": "x", "new_string": "y"}

    first = breaker.observe("edit_file", args, '{"error": "old_string not found"}')
    second = breaker.observe("edit_file", args, '{"error": "old_string not found"}')
    third = breaker.observe("edit_file", args, '{"error": "old_string not found"}')

    assert first is None and second is None
    assert third is not None
    assert third.triggers == 1
    assert not third.escalated
    assert "You are in a LOOP" in third.message
    assert not breaker.is_blocked("edit_file", args)


def test_changing_result_resets_the_count() -> None:
    breaker = LoopBreaker()
    args = {"command": "pytest"}

    assert breaker.observe("terminal", args, "1 failed") is None
    assert breaker.observe("terminal", args, "1 failed") is None
    assert breaker.observe("terminal", args, "2 failed") is None
    assert breaker.observe("terminal", args, "2 failed") is None
    verdict = breaker.observe("terminal", args, "2 failed")

    assert verdict is not None
    assert 'EXACT SAME terminal command "pytest"' in verdict.message


def test_second_trigger_escalates_and_blocks() -> None:
    breaker = LoopBreaker()
    args = {"file_path": "a.py"}
    verdicts = [breaker.observe("read_file", args, "same") for _ in range(6)]

    fired = [verdict for verdict in verdicts if verdict is not None]

    assert [verdict.triggers for verdict in fired] == [1, 2]
    assert fired[1].escalated
    assert fired[1].message.startswith("SYSTEM OVERRIDE")
    assert breaker.is_blocked("read_file", {"file_path": "a.py"})
    assert not breaker.is_blocked("read_file", {"file_path": "b.py"})


def test_consecutive_web_searches_are_limited() -> None:
    guards = TurnGuards()

    results = [guards.before_call("web_search", {"query": str(index)}) for index in range(4)]

    assert results[:3] == [None, None, None]
    assert results[3] is not None and "web_search limit reached" in results[3]
    assert guards.before_call("read_file", {"file_path": "a.py"}) is None
    assert guards.before_call("web_search", {"query": "again"}) is None


def test_deleting_a_file_created_this_turn_is_blocked() -> None:
    guards = TurnGuards()
    guards.after_call("create_file", {"file_path": "src\\App.tsx"}, {"success": True})
    guards.after_call("create_file", {"file_path": "other.py"}, {"success": False})

    blocked = guards.before_call("delete_file", {"file_path": "src/app.tsx"})

    assert blocked is not None and blocked.startswith("BLOCKED")
    assert guards.before_call("delete_file", {"file_path": "other.py"}) is None
