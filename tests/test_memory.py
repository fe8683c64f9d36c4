import json

from runloop.memory import RunMemory


def test_persist_moves_steps_to_procedures(tmp_path):
    path = tmp_path / "mem.json"
    mem = RunMemory.load(str(path))
    mem.record_step_outcome(command="open notepad and type hello", iteration=1, tool_names=["hotkey"], success=True)
    mem.record_step_outcome(command="open notepad and type hello", iteration=2, tool_names=["type_text"], success=True)
    mem.persist_run_context("open notepad and type hello", True)

    assert mem.pending_steps == []
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved["procedures"][0]["steps"] == [["hotkey"], ["type_text"]]
    assert saved["procedures"][0]["failed_steps"] == 0
    assert not (tmp_path / "mem.json.tmp").exists()


def test_failed_run_goes_to_failures():
    mem = RunMemory.load(None)
    mem.record_step_outcome(command="x", iteration=1, tool_names=["mouse_click"], success=False)
    mem.persist_run_context("x", False)
    assert mem.data["failures"][0]["failed_steps"] == 1
    assert "procedures" not in mem.data


def test_context_only_for_related_commands():
    mem = RunMemory.load(None)
    mem.persist_run_context("open notepad and type hello", True)
    assert "Worked before" in mem.load_context("open notepad and type goodbye")
    assert mem.load_context("check the weather in paris") == ""


def test_facts_round_trip_case_insensitive():
    mem = RunMemory.load(None)
    mem.remember("Editor", "notepad")
    assert mem.recall("editor") == "notepad"
    assert "Fact: editor = notepad" in mem.load_context("anything")


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "mem.json"
    path.write_text("{not json", encoding="utf-8")
    mem = RunMemory.load(str(path))
    assert mem.data == {}


def test_bucket_is_capped():
    mem = RunMemory.load(None)
    for i in range(105):
        mem.persist_run_context(f"task {i}", True)
    assert len(mem.data["procedures"]) == 100
    assert mem.data["procedures"][0]["command"] == "task 5"
