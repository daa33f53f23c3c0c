"""Tests for tool-call fingerprints and the bounded status history."""

import pytest

from cli_code.models import FunctionCall
from cli_code.tool_calls import HISTORY_LIMIT, ToolCallHistory, fingerprint, rolling_hash, tool_name


class TestRollingHash:
    def test_known_values(self):
        assert rolling_hash("") == 0
        assert rolling_hash("ab") == 97 * 31 + 98
        assert rolling_hash("hello") == 99162322

    def test_wraps_to_signed_32_bit(self):
        assert rolling_hash("polygenelubricants") == -2147483648

    def test_counts_utf16_code_units(self):
        # one astral character is two code units (a surrogate pair)
        assert rolling_hash("😀") == 0xD83D * 31 + 0xDE00


class TestFingerprint:
    def test_provider_id_wins(self):
        call = {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "a"}}
        assert fingerprint(call) == "toolu_1"

    def test_derived_id_shape(self):
        fp = fingerprint({"name": "read_file", "args": {"path": "a"}})
        assert fp.startswith("tool_")
        assert fp.endswith("_read_file")
        assert fp.split("_")[1].isdigit()

    def test_same_call_same_id(self):
        a = fingerprint({"name": "run_command", "args": {"command": "ls", "cwd": "/"}})
        b = fingerprint({"name": "run_command", "args": {"cwd": "/", "command": "ls"}})
        assert a == b

    def test_same_call_across_provider_shapes(self):
        gemini = fingerprint({"functionCall": {"name": "list_files", "args": {"path": "."}}})
        openai = fingerprint({"function": {"name": "list_files", "arguments": '{"path": "."}'}})
        assert gemini == openai

    def test_different_args_different_id(self):
        a = fingerprint({"name": "read_file", "args": {"path": "a"}})
        b = fingerprint({"name": "read_file", "args": {"path": "b"}})
        assert a != b

    def test_missing_name(self):
        assert tool_name({"args": {}}) == "unknown_tool"
        assert fingerprint({"args": {}}).endswith("_unknown_tool")


class TestToolCallHistory:
    def _call(self, i):
        return FunctionCall(name="read_file", args={"path": f"f{i}"})

    def test_upsert_keeps_position(self):
        clock = iter(range(100))
        history = ToolCallHistory(clock=lambda: next(clock))
        first, second = self._call(1), self._call(2)

        history.record_status(first, "pending")
        history.record_status(second, "pending")
        history.record_status(first, "success")

        entries = history.entries()
        assert len(entries) == 2
        assert entries[0].id == fingerprint(first)
        assert entries[0].status == "success"
        assert entries[0].timestamp == 2
        assert entries[1].status == "pending"

    def test_error_message_recorded(self):
        history = ToolCallHistory()
        call = self._call(1)
        history.record_status(call, "pending")
        history.record_status(call, "error", "boom")
        entry = history.get(fingerprint(call))
        assert entry.status == "error"
        assert entry.error_message == "boom"

    def test_bounded_to_most_recent(self):
        history = ToolCallHistory()
        for i in range(HISTORY_LIMIT + 5):
            history.record_status(self._call(i), "success")

        entries = history.entries()
        assert len(entries) == HISTORY_LIMIT
        assert entries[0].id == fingerprint(self._call(5))
        assert entries[-1].id == fingerprint(self._call(HISTORY_LIMIT + 4))

    def test_rejects_unknown_status(self):
        with pytest.raises(ValueError):
            ToolCallHistory().record_status(self._call(1), "done")

    def test_clear(self):
        history = ToolCallHistory()
        history.record_status(self._call(1), "pending")
        history.clear()
        assert len(history) == 0
