"""Frontier scheduler -- priority queue of follow-ups drained under a concurrency cap."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from call_discovery.constants import (
	ACTIVE_THEME_PENALTY,
	NEW_THEME_WEIGHT,
	PRIORITY_FLOOR,
	URGENCY_BONUS,
)
from call_discovery.errors import DispatchError, StructuralError
from call_discovery.models import DiscoveryState, FrontierTask
from call_discovery.novelty import extract_themes, has_urgency

logger = logging.getLogger(__name__)

Dispatch = Callable[[FrontierTask], Awaitable[str]]


def score_candidate(
	candidate: str,
	state: DiscoveryState,
	theme_keywords: dict[str, str] | None = None,
) -> int:
	"""Priority of a candidate given what has been explored and what is in flight."""
	themes = extract_themes(candidate, theme_keywords)
	score = NEW_THEME_WEIGHT * len(themes - state.explored_themes)
	if has_urgency(candidate):
		score += URGENCY_BONUS
	score -= ACTIVE_THEME_PENALTY * sum(1 for t in themes if state.active_themes.get(t, 0) > 0)
	return score


@dataclass
class DrainResult:
	"""Outcome of one drain cycle."""

	dispatched: list[tuple[FrontierTask, str]] = field(default_factory=list)
	requeued: list[FrontierTask] = field(default_factory=list)
	exhausted: list[FrontierTask] = field(default_factory=list)
	rejected: list[FrontierTask] = field(default_factory=list)

	@property
	def attempts(self) -> int:
		return len(self.dispatched) + len(self.requeued) + len(self.exhausted) + len(self.rejected)


class FrontierScheduler:
	"""Orders pending tasks by priority and feeds them to a dispatch coroutine.

	Ties are broken by insertion order; a re-enqueued task counts as a new
	insertion. Drains are serialized against each other.
	"""

	def __init__(self, interval: float = 0.5, priority_floor: int = PRIORITY_FLOOR) -> None:
		self.interval = interval
		self.priority_floor = priority_floor
		self._heap: list[tuple[int, int, FrontierTask]] = []
		self._seq = itertools.count()
		self._drain_lock = asyncio.Lock()

	def __len__(self) -> int:
		return len(self._heap)

	def enqueue(self, parent_id: str, prompt: str, priority: int) -> FrontierTask:
		task = FrontierTask(parent_id=parent_id, prompt=prompt, priority=priority)
		self._push(task)
		return task

	def _push(self, task: FrontierTask) -> None:
		task.seq = next(self._seq)
		heapq.heappush(self._heap, (-task.priority, task.seq, task))

	def _pop(self) -> FrontierTask:
		return heapq.heappop(self._heap)[2]

	def pending(self) -> list[FrontierTask]:
		"""Queued tasks in dispatch order (highest priority first)."""
		return [entry[2] for entry in sorted(self._heap)]

	async def drain(
		self,
		max_concurrent: int,
		in_flight: Callable[[], int],
		dispatch: Dispatch,
		is_running: Callable[[], bool] | None = None,
	) -> DrainResult:
		"""Dispatch the highest-priority tasks into the free concurrency slots.

		Failed dispatches are re-enqueued with priority - 1 once the cycle is
		over, so each cycle makes at most one attempt per free slot. When
		is_running is given the cycle stops early once it returns False.
		"""
		result = DrainResult()
		if not self._heap:
			return result

		async with self._drain_lock:
			slots = max_concurrent - in_flight()
			retry: list[FrontierTask] = []
			try:
				while self._heap and result.attempts < slots and in_flight() < max_concurrent:
					if is_running is not None and not is_running():
						break
					task = self._pop()
					try:
						call_id = await dispatch(task)
					except DispatchError as exc:
						task.priority -= 1
						if task.priority < self.priority_floor:
							logger.warning(
								"Dropping task after repeated dispatch failures: %.50s (%s)", task.prompt, exc,
							)
							result.exhausted.append(task)
						else:
							logger.info(
								"Dispatch failed, requeueing at priority %d: %.50s (%s)",
								task.priority, task.prompt, exc,
							)
							result.requeued.append(task)
							retry.append(task)
					except StructuralError as exc:
						logger.warning("Rejecting task for parent %s: %s", task.parent_id, exc)
						result.rejected.append(task)
					else:
						result.dispatched.append((task, call_id))
			finally:
				for task in retry:
					self._push(task)

		return result

	async def run(
		self,
		is_running: Callable[[], bool],
		max_concurrent: int,
		in_flight: Callable[[], int],
		dispatch: Dispatch,
		on_cycle: Callable[[DrainResult], None] | None = None,
	) -> None:
		"""Re-drain every `interval` seconds until is_running() goes false."""
		while is_running():
			result = await self.drain(max_concurrent, in_flight, dispatch, is_running)
			if on_cycle is not None:
				on_cycle(result)
			if not is_running():
				break
			await asyncio.sleep(self.interval)
