import asyncio
import sys
import time

import pytest

from qai.agent.executor import (
    MAX_GREP_LINES,
    MAX_OUTPUT_CHARS,
    ToolExecutor,
    count_occurrences,
    parse_edit_input,
)
from qai.core.errors import ToolFailure, ToolFailureKind
from qai.core.models import ToolInvocation

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def _run(executor, name, raw):
    return asyncio.run(executor.execute(ToolInvocation(name=name, raw_input=raw)))


def test_write_then_read_returns_exact_bytes(workspace):
    executor = ToolExecutor(workspace)
    content = "line one\n  indented\ttab\n\nlast line without newline"

    written = _run(executor, "write_file", f"pkg/notes.txt\n{content}")
    read = _run(executor, "read_file", "pkg/notes.txt")

    assert written.ok
    assert written.output.startswith("Created pkg/notes.txt")
    assert read.ok
    assert read.output == content
    assert (workspace / "pkg" / "notes.txt").read_bytes() == content.encode("utf-8")


def test_write_existing_file_reports_update(workspace):
    (workspace / "a.txt").write_text("old", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "write_file", "a.txt\nnew")

    assert result.output == "Updated a.txt (3 bytes)"


def test_read_missing_file(workspace):
    result = _run(ToolExecutor(workspace), "read_file", "nope.txt")

    assert not result.ok
    assert result.failure_kind == ToolFailureKind.NOT_FOUND
    assert result.as_observation().startswith("[read_file failed: NotFound]")


def test_read_directory_is_not_readable(workspace):
    (workspace / "sub").mkdir()

    result = _run(ToolExecutor(workspace), "read_file", "sub")

    assert result.failure_kind == ToolFailureKind.NOT_READABLE


def test_edit_single_match(workspace):
    (workspace / "m.py").write_text("x = 1\ny = 2\n", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "edit_file", "m.py\n<<<\nx = 1\n===\nx = 10\n>>>")

    assert result.ok
    assert (workspace / "m.py").read_text(encoding="utf-8") == "x = 10\ny = 2\n"


def test_edit_no_match_leaves_file_alone(workspace):
    (workspace / "m.py").write_text("x = 1\n", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "edit_file", "m.py\n<<<\nx  = 1\n===\nx = 2\n>>>")

    assert result.failure_kind == ToolFailureKind.NO_MATCH
    assert (workspace / "m.py").read_text(encoding="utf-8") == "x = 1\n"


def test_edit_ambiguous_match_leaves_file_alone(workspace):
    (workspace / "m.py").write_text("pass\npass\n", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "edit_file", "m.py\n<<<\npass\n===\nreturn\n>>>")

    assert result.failure_kind == ToolFailureKind.AMBIGUOUS_MATCH
    assert (workspace / "m.py").read_text(encoding="utf-8") == "pass\npass\n"


def test_parse_edit_input_forms():
    assert parse_edit_input("a.py\n<<<\nold\n===\nnew\n>>>") == ("a.py", "old", "new")
    assert parse_edit_input("a.py\n<<<\nold\n===\n>>>\n") == ("a.py", "old", "")
    with pytest.raises(ToolFailure) as exc_info:
        parse_edit_input("a.py\nold\n===\nnew\n>>>")
    assert exc_info.value.failure_kind == ToolFailureKind.INVALID_INPUT
    with pytest.raises(ToolFailure):
        parse_edit_input("a.py\n<<<\n\n===\nnew\n>>>")


def test_count_occurrences_overlapping():
    assert count_occurrences("aaaa", "aa") == 3
    assert count_occurrences("aaaa", "aa", limit=2) == 2
    assert count_occurrences("abc", "x") == 0


@posix_only
def test_shell_reports_exit_status(workspace):
    result = _run(ToolExecutor(workspace), "shell", "echo out; echo err 1>&2; exit 3")

    assert result.ok
    assert "out" in result.output
    assert "err" in result.output
    assert result.output.endswith("[exit status: 3]")


@posix_only
def test_shell_runs_in_workspace(workspace):
    (workspace / "marker.txt").write_text("", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "shell", "ls")

    assert "marker.txt" in result.output


@posix_only
def test_shell_timeout_kills_process(workspace):
    result = _run(ToolExecutor(workspace, shell_timeout=0.5), "shell", "sleep 5")

    assert result.failure_kind == ToolFailureKind.TIMEOUT
    assert "timed out after 0.5s" in result.output


def test_shell_empty_command(workspace):
    result = _run(ToolExecutor(workspace), "shell", "   ")

    assert result.failure_kind == ToolFailureKind.INVALID_INPUT


def test_unknown_tool(workspace):
    result = _run(ToolExecutor(workspace), "launch_rockets", "now")

    assert result.failure_kind == ToolFailureKind.UNKNOWN_TOOL
    assert "read_file" in result.output


def test_grep_search(workspace):
    (workspace / "src").mkdir()
    (workspace / "src" / "a.py").write_text("def foo():\n    return 1\n", encoding="utf-8")
    (workspace / "src" / "b.txt").write_text("foo bar\nFOO\n", encoding="utf-8")
    executor = ToolExecutor(workspace)

    everything = _run(executor, "grep_search", "foo")
    only_py = _run(executor, "grep_search", "foo\nsrc\n*.py")
    none = _run(executor, "grep_search", "zzz")

    assert everything.output.splitlines() == ["src/a.py:1:def foo():", "src/b.txt:1:foo bar"]
    assert only_py.output == "src/a.py:1:def foo():"
    assert none.output == "No matches found"


def test_grep_search_bad_regex_and_path(workspace):
    executor = ToolExecutor(workspace)

    assert _run(executor, "grep_search", "(unclosed").failure_kind == ToolFailureKind.INVALID_INPUT
    assert _run(executor, "grep_search", "x\nmissing").failure_kind == ToolFailureKind.NOT_FOUND


def test_grep_search_caps_lines(workspace):
    (workspace / "big.txt").write_text("hit\n" * (MAX_GREP_LINES + 5), encoding="utf-8")

    result = _run(ToolExecutor(workspace), "grep_search", "hit")

    assert len(result.output.splitlines()) == MAX_GREP_LINES + 1
    assert "truncated" in result.output.splitlines()[-1]


def test_large_output_is_truncated(workspace):
    (workspace / "huge.txt").write_text("x" * (MAX_OUTPUT_CHARS + 100), encoding="utf-8")

    result = _run(ToolExecutor(workspace), "read_file", "huge.txt")

    assert result.output.startswith("x" * MAX_OUTPUT_CHARS)
    assert "100 chars omitted" in result.output


def test_unexpected_handler_error_propagates(workspace, monkeypatch):
    executor = ToolExecutor(workspace)

    async def boom(raw):
        raise ZeroDivisionError("bad math")

    monkeypatch.setitem(executor._dispatch, "read_file", boom)

    with pytest.raises(ZeroDivisionError):
        _run(executor, "read_file", "a.txt")


def test_write_without_content_line_is_rejected(workspace):
    target = workspace / "notes.txt"
    target.write_text("important data", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "write_file", "notes.txt")

    assert result.failure_kind == ToolFailureKind.INVALID_INPUT
    assert target.read_text(encoding="utf-8") == "important data"


def test_write_with_empty_content_line_truncates(workspace):
    target = workspace / "notes.txt"
    target.write_text("old", encoding="utf-8")

    result = _run(ToolExecutor(workspace), "write_file", "notes.txt\n")

    assert result.ok
    assert target.read_bytes() == b""


@posix_only
@pytest.mark.filterwarnings("error::pytest.PytestUnraisableExceptionWarning")
def test_shell_timeout_kills_background_children(workspace):
    marker = workspace / "marker"

    result = _run(
        ToolExecutor(workspace, shell_timeout=0.5),
        "shell",
        "(sleep 1.5; touch marker) & echo started",
    )
    time.sleep(2.5)

    assert result.failure_kind == ToolFailureKind.TIMEOUT
    assert not marker.exists()
