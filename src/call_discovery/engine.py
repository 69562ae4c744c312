"""Discovery engine -- drives exploration of a remote agent's dialogue branches.

The engine places the root call, turns completion events into scored
follow-up tasks, feeds them to the frontier scheduler and retries failed
calls. One bad branch never stops the rest of the frontier: every error
raised while handling a single call's event is logged and counted here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum

from call_discovery.collaborators import CallClient, TranscriptSummarizer
from call_discovery.config import DiscoveryConfig
from call_discovery.constants import (
	EVENT_COMPLETED,
	EVENT_DISCOVERY_STARTED,
	EVENT_DISCOVERY_STOPPED,
	EVENT_DISPATCHED,
	EVENT_DROPPED,
	EVENT_FAILED,
	EVENT_RETRY_QUEUED,
)
from call_discovery.errors import (
	AlreadyRunning,
	DiscoveryConfigError,
	DispatchError,
	ExhaustedRetryError,
	UnknownCallError,
)
from call_discovery.event_stream import EventStream
from call_discovery.models import DiscoverySnapshot, DiscoveryState, FrontierTask, Node, NodeStatus
from call_discovery.novelty import NoveltyFilter, is_terminal_reply
from call_discovery.scheduler import DrainResult, FrontierScheduler, score_candidate
from call_discovery.tree import ConversationTree

logger = logging.getLogger(__name__)


class EngineStatus(str, Enum):
	IDLE = "idle"
	RUNNING = "running"
	STOPPED = "stopped"


class DiscoveryEngine:
	"""State machine: idle -> running -> stopped."""

	def __init__(
		self,
		config: DiscoveryConfig,
		call_client: CallClient,
		summarizer: TranscriptSummarizer,
		event_stream: EventStream | None = None,
		novelty: NoveltyFilter | None = None,
	) -> None:
		self.config = config
		self._calls = call_client
		self._summarizer = summarizer
		self._events = event_stream
		self.novelty = novelty or NoveltyFilter()
		self.tree = ConversationTree(
			max_depth=config.exploration.max_depth,
			max_children=config.exploration.max_children,
			novelty=self.novelty,
		)
		self.scheduler = FrontierScheduler(
			interval=config.scheduler.min_call_interval,
			priority_floor=config.scheduler.priority_floor,
		)
		self.state = DiscoveryState()
		self.status = EngineStatus.IDLE
		self.stopped_reason = ""
		self._claimed_themes: dict[str, set[str]] = {}
		self._completing: set[str] = set()
		self._pacing_lock = asyncio.Lock()
		self._drive_task: asyncio.Task[None] | None = None

	# -- Lifecycle --

	async def start_discovery(self) -> Node:
		"""Place the root call and begin draining the frontier."""
		if self.status != EngineStatus.IDLE:
			raise AlreadyRunning()
		target = self.config.target
		if not target.address or not target.callback_url:
			raise DiscoveryConfigError("target address and callback url are required to start discovery")
		if not target.initial_prompt.strip():
			raise DiscoveryConfigError("initial prompt must not be empty")

		self.status = EngineStatus.RUNNING
		logger.info(
			"Starting discovery against %s (max depth %d, max concurrent calls %d)",
			target.address,
			self.config.exploration.max_depth,
			self.config.scheduler.max_concurrent_calls,
		)
		try:
			call_id = await self._place_call(target.initial_prompt)
		except DispatchError as exc:
			logger.error("Failed to place root call: %s", exc)
			self.status = EngineStatus.STOPPED
			self.stopped_reason = "start_failed"
			raise

		root = self.tree.create_root(target.initial_prompt, call_id)
		self.state.running = True
		self._occupy_slot(root)
		self._emit(EVENT_DISCOVERY_STARTED, root, details={"target": target.address})
		self._drive_task = asyncio.create_task(self._drive_frontier())
		return root

	def stop_discovery(self, reason: str = "stopped") -> None:
		"""Stop draining the frontier. In-flight calls are still accounted for."""
		self.state.running = False
		if self.status == EngineStatus.STOPPED:
			return
		self.status = EngineStatus.STOPPED
		self.stopped_reason = reason
		self.state.touch()
		snapshot = self.get_state()
		logger.info(
			"Discovery stopped (%s): %d completed, %d failed, %d active, %d queued",
			reason, snapshot.completed_count, snapshot.failed_count,
			snapshot.active_count, snapshot.queue_length,
		)
		self._emit(EVENT_DISCOVERY_STOPPED, details={"reason": reason})

	async def wait_until_finished(self) -> None:
		if self._drive_task is not None:
			await self._drive_task

	def get_state(self) -> DiscoverySnapshot:
		queued = self.scheduler.pending()
		return DiscoverySnapshot(
			status=self.status.value,
			running=self.state.running,
			active_count=self.state.active_count,
			completed_count=self.state.completed_count,
			failed_count=self.state.failed_count,
			last_activity=self.state.last_activity,
			explored_themes=sorted(self.state.explored_themes),
			active_themes=sorted(self.state.active_themes),
			queue_length=len(queued),
			next_prompt=queued[0].prompt if queued else "",
			expandable_nodes=len(self.tree.nodes_ready_for_expansion()),
			stopped_reason=self.stopped_reason,
			tree=self.tree.summary(),
		)

	# -- Call events --

	async def on_call_completed(self, call_id: str, transcript: str) -> None:
		node = self.tree.find_by_call_id(call_id)
		if node is None:
			logger.warning("Ignoring completion: %s", UnknownCallError(call_id))
			return
		if node.status != NodeStatus.IN_PROGRESS or node.id in self._completing:
			status = "completing" if node.id in self._completing else node.status.value
			logger.warning("Ignoring completion for call %s: node %s is %s", call_id, node.id, status)
			return

		# Claimed before the summarizer await; duplicates arriving meanwhile are dropped above
		self._completing.add(node.id)
		try:
			await self._complete_node(node, call_id, transcript)
		finally:
			self._completing.discard(node.id)

	async def _complete_node(self, node: Node, call_id: str, transcript: str) -> None:
		try:
			candidates = list(await self._summarizer.suggest_follow_ups(transcript))
			new_themes = self.tree.record_completion(node.id, transcript, candidates)
		except Exception as exc:
			logger.error("Error processing completed call %s: %s", call_id, exc, exc_info=True)
			if node.status == NodeStatus.IN_PROGRESS:
				self.tree.mark_failed(node.id)
			self._release_slot(node)
			self.state.failed_count += 1
			self._emit(EVENT_FAILED, node, details={"error": str(exc)})
			return

		self._release_slot(node)
		self.state.completed_count += 1
		self.state.explored_themes |= new_themes
		self._emit(EVENT_COMPLETED, node, details={
			"candidates": len(candidates),
			"survivors": len(node.candidate_follow_ups),
			"new_themes": sorted(new_themes),
		})

		if is_terminal_reply(transcript, node.candidate_follow_ups):
			logger.info("Branch %s reached a terminal reply", node.id)
			return
		if node.depth + 1 >= self.tree.max_depth:
			logger.info("Branch %s is at the depth limit; not expanding", node.id)
			return

		for candidate in node.candidate_follow_ups:
			priority = score_candidate(candidate, self.state, self.novelty.theme_keywords)
			self.scheduler.enqueue(node.id, candidate, priority)
		logger.info(
			"Processed completed call %s (node %s): %d follow-ups queued, new themes %s",
			call_id, node.id, len(node.candidate_follow_ups), sorted(new_themes),
		)

	async def on_call_failed(self, call_id: str) -> None:
		node = self.tree.find_by_call_id(call_id)
		if node is None:
			logger.warning("Ignoring failure: %s", UnknownCallError(call_id))
			return
		if node.status != NodeStatus.IN_PROGRESS or node.id in self._completing:
			logger.warning("Ignoring failure for call %s: node %s is %s", call_id, node.id, node.status.value)
			return

		try:
			self.tree.mark_failed(node.id)
			self._emit(EVENT_FAILED, node, details={"attempt": node.attempts})
			retried = await self._retry_node(node)
		except Exception as exc:
			logger.error("Error handling failed call %s: %s", call_id, exc, exc_info=True)
			retried = False

		if retried:
			return
		logger.warning("%s", ExhaustedRetryError(node.id, node.attempts))
		self._release_slot(node)
		self.state.failed_count += 1

	async def _retry_node(self, node: Node) -> bool:
		"""Redispatch a failed node with linear-growth backoff. True if a call was placed."""
		max_attempts = self.config.exploration.max_retry_attempts
		while self.state.running and node.attempts < max_attempts:
			delay = self.config.exploration.retry_base_delay * (node.retry_count + 1)
			logger.info("Retrying node %s (attempt %d) in %.1fs", node.id, node.attempts + 1, delay)
			self._emit(EVENT_RETRY_QUEUED, node, details={"delay": delay})
			await asyncio.sleep(delay)
			if not self.state.running:
				break
			try:
				new_call_id = await self._place_call(node.prompt)
			except DispatchError as exc:
				logger.warning("Redispatch of node %s failed: %s", node.id, exc)
				self.tree.record_failed_attempt(node.id)
				continue
			self.tree.redispatch(node.id, new_call_id)
			self.state.touch()
			self._emit(EVENT_DISPATCHED, node, details={"retry": node.retry_count})
			return True
		return False

	# -- Frontier --

	async def _drive_frontier(self) -> None:
		try:
			await self.scheduler.run(
				is_running=lambda: self.state.running,
				max_concurrent=self.config.scheduler.max_concurrent_calls,
				in_flight=lambda: self.state.active_count,
				dispatch=self._dispatch_task,
				on_cycle=self._on_cycle,
			)
		except asyncio.CancelledError:
			self.stop_discovery("cancelled")
			raise
		except Exception as exc:
			logger.error("Frontier loop crashed: %s", exc, exc_info=True)
			self.stop_discovery("error")

	async def _dispatch_task(self, task: FrontierTask) -> str:
		self.tree.check_can_add_child(task.parent_id)
		call_id = await self._place_call(task.prompt)
		node = self.tree.add_child(task.parent_id, task.prompt, call_id)
		self._occupy_slot(node)
		self._emit(EVENT_DISPATCHED, node, details={"priority": task.priority})
		return call_id

	def _on_cycle(self, result: DrainResult) -> None:
		for task in result.exhausted:
			self.state.failed_count += 1
			self.tree.discard_candidate(task.parent_id, task.prompt)
			self._emit(EVENT_DROPPED, details={"parent_id": task.parent_id, "reason": "exhausted"})
		for task in result.rejected:
			self.tree.discard_candidate(task.parent_id, task.prompt)
			self._emit(EVENT_DROPPED, details={"parent_id": task.parent_id, "reason": "rejected"})
		if result.exhausted or result.rejected:
			self.state.touch()

		if self.state.running and self.state.active_count == 0 and len(self.scheduler) == 0:
			self.stop_discovery("frontier_exhausted")

	async def _place_call(self, prompt: str) -> str:
		"""Place one outbound call, keeping the minimum interval between placements."""
		target = self.config.target
		async with self._pacing_lock:
			interval = self.config.scheduler.min_call_interval
			if self.state.last_call_time:
				wait = interval - (time.monotonic() - self.state.last_call_time)
				if wait > 0:
					await asyncio.sleep(wait)
			try:
				return await self._calls.start_call(target.address, prompt, target.callback_url)
			except DispatchError:
				raise
			except Exception as exc:
				raise DispatchError(f"Call placement failed: {exc}") from exc
			finally:
				self.state.last_call_time = time.monotonic()

	# -- Bookkeeping --

	def _occupy_slot(self, node: Node) -> None:
		themes = set(node.themes)
		self._claimed_themes[node.id] = themes
		self.state.claim_themes(themes)
		self.state.active_count += 1
		self.state.touch()

	def _release_slot(self, node: Node) -> None:
		themes = self._claimed_themes.pop(node.id, None)
		if themes is None:
			logger.debug("Node %s holds no slot", node.id)
			return
		self.state.release_themes(themes)
		self.state.active_count -= 1
		self.state.touch()

	def _emit(self, event_type: str, node: Node | None = None, details: dict | None = None) -> None:
		if self._events is None:
			return
		try:
			self._events.emit(
				event_type,
				node_id=node.id if node else "",
				call_id=node.call_id if node else "",
				state=self.state,
				details=details,
			)
		except Exception:
			logger.warning("Failed to record %s event", event_type, exc_info=True)
