"""Tests for the Entry model."""

import dataclasses
from datetime import datetime, timezone

import pytest

from logagent.models import DEFAULT_LEVEL, Entry, make_entry


class TestMakeEntry:
    def test_basic_fields(self):
        ts = datetime(2024, 1, 15, 8, 23, 45, tzinfo=timezone.utc)
        entry = make_entry("hello", source="/logs/a.log", node_name="node-1",
                           max_line_length=100, timestamp=ts)
        assert entry == Entry(
            timestamp=ts,
            node_name="node-1",
            source="/logs/a.log",
            message="hello",
            level=DEFAULT_LEVEL,
            truncated=False,
        )

    def test_default_timestamp_is_utc(self):
        entry = make_entry("x", source="/a", node_name="n", max_line_length=10)
        assert entry.timestamp.tzinfo is timezone.utc
        assert entry.level == "info"

    def test_long_line_is_truncated_and_flagged(self):
        entry = make_entry("abcdefgh", source="/a", node_name="n", max_line_length=5)
        assert entry.message == "abcde"
        assert entry.truncated is True

    def test_line_at_limit_is_not_truncated(self):
        entry = make_entry("abcde", source="/a", node_name="n", max_line_length=5)
        assert entry.message == "abcde"
        assert entry.truncated is False

    def test_strips_line_terminators(self):
        entry = make_entry("value\r\n", source="/a", node_name="n", max_line_length=100)
        assert entry.message == "value"

    def test_embedded_newlines_replaced(self):
        entry = make_entry("one\ntwo\rthree", source="/a", node_name="n", max_line_length=100)
        assert "\n" not in entry.message
        assert "\r" not in entry.message
        assert entry.message == "one two three"

    def test_custom_level(self):
        entry = make_entry("boom", source="/a", node_name="n", max_line_length=10, level="error")
        assert entry.level == "error"

    @pytest.mark.parametrize("source, node", [("", "n"), ("/a", "")])
    def test_empty_identity_rejected(self, source, node):
        with pytest.raises(ValueError):
            make_entry("x", source=source, node_name=node, max_line_length=10)

    def test_entry_is_immutable(self):
        entry = make_entry("x", source="/a", node_name="n", max_line_length=10)
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.message = "changed"
