"""Data models for discovery state."""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


class NodeStatus(str, Enum):
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	FAILED = "failed"


@dataclass
class Node:
	"""One explored conversation state, tied to one outbound call attempt."""

	id: str = field(default_factory=_new_id)
	prompt: str = ""
	transcript: str = ""
	status: NodeStatus = NodeStatus.PENDING
	parent_id: str | None = None
	children: list[str] = field(default_factory=list)
	depth: int = 0
	retry_count: int = 0
	call_id: str = ""
	path_signature: str = ""
	themes: set[str] = field(default_factory=set)
	candidate_follow_ups: list[str] = field(default_factory=list)
	created_at: str = field(default_factory=_now_iso)
	completed_at: str | None = None

	@property
	def is_root(self) -> bool:
		return self.parent_id is None

	@property
	def attempts(self) -> int:
		return self.retry_count + 1

	def to_dict(self) -> dict[str, Any]:
		d = asdict(self)
		d["status"] = self.status.value
		d["themes"] = sorted(self.themes)
		return d


@dataclass
class FrontierTask:
	"""A pending exploration unit waiting in the scheduler queue."""

	parent_id: str = ""
	prompt: str = ""
	priority: int = 0
	seq: int = 0


@dataclass
class DiscoveryState:
	"""Process-wide counters, mutated only by the engine."""

	running: bool = False
	active_count: int = 0
	completed_count: int = 0
	failed_count: int = 0
	last_activity: str = field(default_factory=_now_iso)
	explored_themes: set[str] = field(default_factory=set)
	active_themes: Counter[str] = field(default_factory=Counter)
	last_call_time: float = 0.0

	def touch(self) -> None:
		self.last_activity = _now_iso()

	def claim_themes(self, themes: set[str]) -> None:
		self.active_themes.update(themes)

	def release_themes(self, themes: set[str]) -> None:
		self.active_themes.subtract(themes)
		# Drop zero and negative counts so membership tests stay accurate
		self.active_themes = +self.active_themes


@dataclass
class TreeSummary:
	total_nodes: int = 0
	completed_nodes: int = 0
	failed_nodes: int = 0
	max_depth_reached: int = 0
	distinct_themes: int = 0
	max_allowed_depth: int = 0

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


@dataclass
class DiscoverySnapshot:
	"""Read-only view returned by DiscoveryEngine.get_state()."""

	status: str = "idle"
	running: bool = False
	active_count: int = 0
	completed_count: int = 0
	failed_count: int = 0
	last_activity: str = ""
	explored_themes: list[str] = field(default_factory=list)
	active_themes: list[str] = field(default_factory=list)
	queue_length: int = 0
	next_prompt: str = ""
	expandable_nodes: int = 0
	stopped_reason: str = ""
	tree: TreeSummary = field(default_factory=TreeSummary)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)
