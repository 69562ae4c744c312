"""Tests for the discovery engine state machine."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path

import pytest

from call_discovery.config import DiscoveryConfig, ExplorationConfig, SchedulerConfig, TargetConfig
from call_discovery.engine import DiscoveryEngine, EngineStatus
from call_discovery.errors import AlreadyRunning, DiscoveryConfigError, DispatchError
from call_discovery.event_stream import EventStream
from call_discovery.models import NodeStatus


class FakeCallClient:
	"""Hands out sequential call ids; call numbers in `fail_on` raise DispatchError."""

	def __init__(self, fail_on: set[int] | None = None, fail_after_root: bool = False) -> None:
		self.fail_on = fail_on or set()
		self.fail_after_root = fail_after_root
		self.prompts: list[str] = []
		self.placed_at: list[float] = []

	async def start_call(self, target_address: str, prompt: str, callback_address: str) -> str:
		self.prompts.append(prompt)
		self.placed_at.append(time.monotonic())
		n = len(self.prompts)
		if n in self.fail_on or (self.fail_after_root and n > 1):
			raise DispatchError("remote 503")
		return f"call-{n}"

	async def retrieve_recording(self, call_id: str) -> bytes:
		return b""


class FakeSummarizer:
	def __init__(
		self,
		replies: dict[str, list[str]] | None = None,
		error: Exception | None = None,
		delay: float = 0.0,
	) -> None:
		self.replies = replies or {}
		self.error = error
		self.delay = delay

	async def suggest_follow_ups(self, transcript: str) -> list[str]:
		if self.delay:
			await asyncio.sleep(self.delay)
		if self.error is not None:
			raise self.error
		return list(self.replies.get(transcript, []))


def _config(**exploration: object) -> DiscoveryConfig:
	return DiscoveryConfig(
		target=TargetConfig(address="+15555550100", callback_url="https://hooks.test/cb", initial_prompt="intro"),
		exploration=ExplorationConfig(retry_base_delay=0.0, **exploration),  # type: ignore[arg-type]
		scheduler=SchedulerConfig(max_concurrent_calls=2, min_call_interval=0.01),
	)


async def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
	deadline = time.monotonic() + timeout
	while not predicate():
		if time.monotonic() > deadline:
			raise AssertionError("condition not reached in time")
		await asyncio.sleep(0.005)


async def _shutdown(engine: DiscoveryEngine) -> None:
	engine.stop_discovery()
	await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)


class TestStartDiscovery:
	@pytest.mark.asyncio
	async def test_places_root_call(self) -> None:
		client = FakeCallClient()
		engine = DiscoveryEngine(_config(), client, FakeSummarizer())
		root = await engine.start_discovery()

		assert client.prompts == ["intro"]
		assert root.call_id == "call-1"
		assert engine.status == EngineStatus.RUNNING
		assert engine.state.running is True
		assert engine.state.active_count == 1
		await _shutdown(engine)

	@pytest.mark.asyncio
	async def test_second_start_rejected(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer())
		await engine.start_discovery()
		with pytest.raises(AlreadyRunning):
			await engine.start_discovery()
		await _shutdown(engine)
		with pytest.raises(AlreadyRunning):
			await engine.start_discovery()

	@pytest.mark.asyncio
	async def test_missing_target_is_fatal(self) -> None:
		cfg = _config()
		cfg.target.address = ""
		engine = DiscoveryEngine(cfg, FakeCallClient(), FakeSummarizer())
		with pytest.raises(DiscoveryConfigError):
			await engine.start_discovery()
		assert engine.status == EngineStatus.IDLE

	@pytest.mark.asyncio
	async def test_root_dispatch_failure_stops(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(fail_on={1}), FakeSummarizer())
		with pytest.raises(DispatchError):
			await engine.start_discovery()
		assert engine.status == EngineStatus.STOPPED
		assert engine.stopped_reason == "start_failed"
		assert len(engine.tree) == 0


class TestCallCompleted:
	@pytest.mark.asyncio
	async def test_survivors_are_dispatched(self) -> None:
		client = FakeCallClient()
		summarizer = FakeSummarizer({
			"We do repairs.": ["Can I schedule a visit?", "Intro!"],
		})
		engine = DiscoveryEngine(_config(), client, summarizer)
		root = await engine.start_discovery()

		await engine.on_call_completed("call-1", "We do repairs.")
		assert root.status == NodeStatus.COMPLETED
		assert root.candidate_follow_ups == ["Can I schedule a visit?"]
		assert engine.state.completed_count == 1
		assert engine.state.explored_themes == {"repair"}

		await _wait_for(lambda: len(client.prompts) == 2)
		assert client.prompts[1] == "Can I schedule a visit?"
		child = engine.tree.find_by_call_id("call-2")
		assert child is not None
		assert child.parent_id == root.id
		assert engine.state.active_count == 1
		assert engine.get_state().active_themes == ["scheduling"]
		await _shutdown(engine)

	@pytest.mark.asyncio
	async def test_unknown_call_ignored(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer())
		await engine.start_discovery()
		await engine.on_call_completed("call-999", "whatever")
		await engine.on_call_failed("call-999")
		assert engine.state.completed_count == 0
		assert engine.state.failed_count == 0
		assert engine.state.active_count == 1
		await _shutdown(engine)

	@pytest.mark.asyncio
	async def test_duplicate_completion_ignored(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer({"hi": ["tell me more"]}))
		await engine.start_discovery()
		engine.stop_discovery()
		await engine.on_call_completed("call-1", "hi")
		await engine.on_call_completed("call-1", "hi")
		assert engine.state.completed_count == 1
		assert engine.state.active_count == 0
		assert len(engine.scheduler) == 1
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)

	@pytest.mark.asyncio
	async def test_concurrent_duplicate_completion(self) -> None:
		summarizer = FakeSummarizer({"hi": ["tell me more"]}, delay=0.05)
		engine = DiscoveryEngine(_config(), FakeCallClient(), summarizer)
		root = await engine.start_discovery()
		engine.stop_discovery()

		await asyncio.gather(
			engine.on_call_completed("call-1", "hi"),
			engine.on_call_completed("call-1", "hi"),
		)
		assert root.status == NodeStatus.COMPLETED
		assert engine.state.completed_count == 1
		assert engine.state.failed_count == 0
		assert engine.state.active_count == 0
		assert len(engine.scheduler) == 1
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)

	@pytest.mark.asyncio
	async def test_failure_during_completion_ignored(self) -> None:
		summarizer = FakeSummarizer({"hi": ["tell me more"]}, delay=0.05)
		client = FakeCallClient()
		engine = DiscoveryEngine(_config(), client, summarizer)
		root = await engine.start_discovery()
		engine.stop_discovery()

		await asyncio.gather(
			engine.on_call_completed("call-1", "hi"),
			engine.on_call_failed("call-1"),
		)
		assert root.status == NodeStatus.COMPLETED
		assert engine.state.failed_count == 0
		assert engine.state.active_count == 0
		assert client.prompts == ["intro"]
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)

	@pytest.mark.asyncio
	async def test_terminal_reply_ends_exploration(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer())
		await engine.start_discovery()
		await engine.on_call_completed("call-1", "Thanks for calling, goodbye!")

		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)
		assert engine.status == EngineStatus.STOPPED
		assert engine.stopped_reason == "frontier_exhausted"
		assert len(engine.scheduler) == 0

	@pytest.mark.asyncio
	async def test_summarizer_error_counted_not_raised(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer(error=RuntimeError("llm down")))
		root = await engine.start_discovery()
		await engine.on_call_completed("call-1", "hello")
		assert engine.state.failed_count == 1
		assert engine.state.active_count == 0
		assert root.status == NodeStatus.FAILED
		await _shutdown(engine)

	@pytest.mark.asyncio
	async def test_depth_limit_stops_enqueueing(self) -> None:
		engine = DiscoveryEngine(_config(max_depth=1), FakeCallClient(), FakeSummarizer({"hi": ["ask more"]}))
		root = await engine.start_discovery()
		engine.stop_discovery()
		await engine.on_call_completed("call-1", "hi")
		assert root.candidate_follow_ups == ["ask more"]
		assert len(engine.scheduler) == 0
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)


class TestCallFailed:
	@pytest.mark.asyncio
	async def test_exhausts_after_max_attempts(self) -> None:
		client = FakeCallClient()
		engine = DiscoveryEngine(_config(max_retry_attempts=3), client, FakeSummarizer())
		root = await engine.start_discovery()

		await engine.on_call_failed("call-1")
		assert root.retry_count == 1
		assert root.call_id == "call-2"
		assert root.status == NodeStatus.IN_PROGRESS
		assert engine.state.active_count == 1

		await engine.on_call_failed("call-2")
		assert root.retry_count == 2
		assert engine.state.failed_count == 0

		await engine.on_call_failed("call-3")
		assert root.status == NodeStatus.FAILED
		assert engine.state.failed_count == 1
		assert engine.state.active_count == 0
		assert len(client.prompts) == 3

		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)
		assert len(client.prompts) == 3
		assert engine.state.failed_count == 1

	@pytest.mark.asyncio
	async def test_failed_redispatch_counts_as_attempt(self) -> None:
		client = FakeCallClient(fail_on={2})
		engine = DiscoveryEngine(_config(max_retry_attempts=3), client, FakeSummarizer())
		root = await engine.start_discovery()

		await engine.on_call_failed("call-1")
		assert len(client.prompts) == 3
		assert root.retry_count == 2
		assert root.call_id == "call-3"
		assert engine.state.failed_count == 0
		await _shutdown(engine)

	@pytest.mark.asyncio
	async def test_no_retry_after_stop(self) -> None:
		client = FakeCallClient()
		engine = DiscoveryEngine(_config(), client, FakeSummarizer())
		root = await engine.start_discovery()
		engine.stop_discovery()

		await engine.on_call_failed("call-1")
		assert len(client.prompts) == 1
		assert root.status == NodeStatus.FAILED
		assert engine.state.failed_count == 1
		assert engine.state.active_count == 0
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)

	@pytest.mark.asyncio
	async def test_frontier_dispatch_failures_decay_and_drop(self) -> None:
		client = FakeCallClient(fail_after_root=True)
		summarizer = FakeSummarizer({"hello": ["Can I schedule a visit?"]})
		engine = DiscoveryEngine(_config(), client, summarizer)
		root = await engine.start_discovery()
		await engine.on_call_completed("call-1", "hello")

		await asyncio.wait_for(engine.wait_until_finished(), timeout=5.0)
		# priority 2 -> 1, 0, -1, -2 requeued, -3 dropped
		assert client.prompts.count("Can I schedule a visit?") == 5
		assert engine.state.failed_count == 1
		assert root.candidate_follow_ups == []
		assert engine.stopped_reason == "frontier_exhausted"


class TestStopDiscovery:
	@pytest.mark.asyncio
	async def test_in_flight_completion_after_stop(self) -> None:
		client = FakeCallClient()
		summarizer = FakeSummarizer({"We fix pipes": ["Ask about emergency plumbing", "Ask about warranty"]})
		engine = DiscoveryEngine(_config(), client, summarizer)
		root = await engine.start_discovery()

		engine.stop_discovery()
		await engine.on_call_completed("call-1", "We fix pipes")

		assert root.status == NodeStatus.COMPLETED
		assert engine.state.completed_count == 1
		assert engine.state.active_count == 0
		assert len(engine.scheduler) == 2

		await asyncio.sleep(0.05)
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)
		assert client.prompts == ["intro"]
		assert engine.get_state().status == "stopped"

	@pytest.mark.asyncio
	async def test_stop_is_idempotent(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer())
		await engine.start_discovery()
		engine.stop_discovery("manual")
		engine.stop_discovery("again")
		assert engine.stopped_reason == "manual"
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)


class TestGetState:
	def test_idle_snapshot(self) -> None:
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer())
		snap = engine.get_state()
		assert snap.status == "idle"
		assert snap.running is False
		assert snap.tree.total_nodes == 0
		assert snap.to_dict()["queue_length"] == 0

	@pytest.mark.asyncio
	async def test_snapshot_after_completion(self) -> None:
		summarizer = FakeSummarizer({"Repair and pricing info": ["tell me more"]})
		engine = DiscoveryEngine(_config(), FakeCallClient(), summarizer)
		await engine.start_discovery()
		engine.stop_discovery()
		await engine.on_call_completed("call-1", "Repair and pricing info")

		snap = engine.get_state()
		assert snap.completed_count == 1
		assert snap.explored_themes == ["pricing", "repair"]
		assert snap.queue_length == 1
		assert snap.next_prompt == "tell me more"
		assert snap.expandable_nodes == 1
		assert snap.tree.completed_nodes == 1
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)


class TestPacing:
	@pytest.mark.asyncio
	async def test_min_interval_between_calls(self) -> None:
		cfg = _config()
		cfg.scheduler.min_call_interval = 0.05
		client = FakeCallClient()
		summarizer = FakeSummarizer({"hi": ["first question", "second question"]})
		engine = DiscoveryEngine(cfg, client, summarizer)
		await engine.start_discovery()
		await engine.on_call_completed("call-1", "hi")

		await _wait_for(lambda: len(client.prompts) == 3)
		gaps = [b - a for a, b in zip(client.placed_at, client.placed_at[1:])]
		assert all(gap >= 0.045 for gap in gaps)
		await _shutdown(engine)


class TestEventStream:
	@pytest.mark.asyncio
	async def test_lifecycle_events_written(self, tmp_path: Path) -> None:
		path = tmp_path / "events.jsonl"
		stream = EventStream(path)
		stream.open()
		engine = DiscoveryEngine(_config(), FakeCallClient(), FakeSummarizer(), event_stream=stream)
		await engine.start_discovery()
		await engine.on_call_completed("call-1", "goodbye")
		await asyncio.wait_for(engine.wait_until_finished(), timeout=2.0)
		stream.close()

		records = [json.loads(line) for line in path.read_text().splitlines()]
		assert [r["event"] for r in records] == ["discovery_started", "completed", "discovery_stopped"]
		assert (records[0]["active"], records[0]["completed"]) == (1, 0)
		assert (records[1]["active"], records[1]["completed"]) == (0, 1)

	@pytest.mark.asyncio
	async def test_broken_event_log_does_not_stop_exploration(self, tmp_path: Path) -> None:
		class BrokenStream(EventStream):
			def emit(self, event_type: str, **kwargs: object) -> bool:
				raise RuntimeError("serializer bug")

		client = FakeCallClient()
		summarizer = FakeSummarizer({"hi": ["tell me more"]})
		engine = DiscoveryEngine(
			_config(), client, summarizer, event_stream=BrokenStream(tmp_path / "events.jsonl"),
		)
		await engine.start_discovery()
		await engine.on_call_completed("call-1", "hi")

		assert engine.state.completed_count == 1
		await _wait_for(lambda: len(client.prompts) == 2)
		assert client.prompts[1] == "tell me more"
		assert engine.status == EngineStatus.RUNNING

		await _shutdown(engine)
		assert engine.stopped_reason == "stopped"
