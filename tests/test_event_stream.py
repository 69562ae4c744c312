"""Tests for the discovery event log."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from call_discovery.config import EventsConfig
from call_discovery.event_stream import EventStream
from call_discovery.models import DiscoveryState


def _records(path: Path) -> list[dict]:
	return [json.loads(line) for line in path.read_text().splitlines()]


class TestEmit:
	def test_writes_one_line_per_event(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		with EventStream(p) as stream:
			assert stream.emit("dispatched", node_id="n1", call_id="c1")
			stream.emit("completed", node_id="n1", call_id="c1", details={"new_themes": ["repair"]})

		records = _records(p)
		assert [r["event"] for r in records] == ["dispatched", "completed"]
		assert records[0]["node_id"] == "n1"
		assert records[0]["call_id"] == "c1"
		assert records[1]["details"] == {"new_themes": ["repair"]}
		assert "ts" in records[0]

	def test_state_counters_recorded(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		state = DiscoveryState(active_count=2, completed_count=5, failed_count=1)
		with EventStream(p) as stream:
			stream.emit("dropped", state=state)
			stream.emit("discovery_stopped")

		with_state, without_state = _records(p)
		assert (with_state["active"], with_state["completed"], with_state["failed"]) == (2, 5, 1)
		assert "active" not in without_state

	def test_defaults(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		with EventStream(p) as stream:
			stream.emit("discovery_started")
		record = _records(p)[0]
		assert record["node_id"] == ""
		assert record["call_id"] == ""
		assert record["details"] == {}

	def test_non_json_details_stringified(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		with EventStream(p) as stream:
			stream.emit("completed", details={"path": Path("/x")})
		assert _records(p)[0]["details"]["path"] == "/x"

	def test_unknown_event_type(self, tmp_path: Path) -> None:
		with EventStream(tmp_path / "events.jsonl") as stream:
			with pytest.raises(ValueError):
				stream.emit("merged")


class TestLifecycle:
	def test_noop_when_not_opened(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		stream = EventStream(p)
		assert stream.emit("dispatched", node_id="n1") is False
		assert not p.exists()

	def test_noop_after_close(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		stream = EventStream(p)
		stream.open()
		stream.emit("dispatched", node_id="n1")
		stream.close()
		assert not stream.is_open
		assert stream.emit("completed", node_id="n1") is False
		assert len(_records(p)) == 1

	def test_open_twice_keeps_handle(self, tmp_path: Path) -> None:
		stream = EventStream(tmp_path / "events.jsonl")
		stream.open()
		stream.open()
		stream.emit("discovery_started")
		stream.close()
		assert len(_records(stream.path)) == 1

	def test_creates_parent_directories(self, tmp_path: Path) -> None:
		p = tmp_path / "nested" / "dir" / "events.jsonl"
		with EventStream(p) as stream:
			stream.emit("discovery_started")
		assert _records(p)[0]["event"] == "discovery_started"

	def test_appends_to_existing_file(self, tmp_path: Path) -> None:
		p = tmp_path / "events.jsonl"
		p.write_text('{"event":"old"}\n')
		with EventStream(p) as stream:
			stream.emit("discovery_stopped")
		assert [r["event"] for r in _records(p)] == ["old", "discovery_stopped"]

	def test_from_config(self) -> None:
		assert EventStream.from_config(EventsConfig(path="")) is None
		stream = EventStream.from_config(EventsConfig(path="logs/events.jsonl"))
		assert stream is not None
		assert stream.path == Path("logs/events.jsonl")


class TestWriteErrors:
	def test_disk_full_is_counted_not_raised(self, tmp_path: Path) -> None:
		stream = EventStream(tmp_path / "events.jsonl")
		handle = MagicMock()
		handle.write.side_effect = OSError(28, "No space left on device")
		stream._handle = handle

		assert stream.emit("completed", node_id="n1") is False
		assert stream.emit("dispatched", node_id="n2") is False
		assert stream.write_errors == 2
