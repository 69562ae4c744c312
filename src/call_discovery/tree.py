"""Conversation tree -- the branching structure of explored call states.

Nodes are held in an id-indexed map; parent/child links are ids, never
object references. The tree enforces depth and fan-out limits and the
status state machine. Signature uniqueness is decided by the novelty filter,
which reads the signature registry kept here.
"""

from __future__ import annotations

import logging
import threading

from call_discovery.errors import (
	AlreadyInitialized,
	DepthLimitExceeded,
	FanOutLimitExceeded,
	InvalidTransition,
	NodeNotFound,
	ParentNotFound,
)
from call_discovery.models import Node, NodeStatus, TreeSummary, _now_iso
from call_discovery.novelty import NoveltyFilter, path_signature

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
	NodeStatus.PENDING: frozenset({NodeStatus.IN_PROGRESS}),
	NodeStatus.IN_PROGRESS: frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED}),
	NodeStatus.COMPLETED: frozenset(),
	NodeStatus.FAILED: frozenset({NodeStatus.IN_PROGRESS}),
}


class ConversationTree:
	"""Owns node lifetime and structure for one discovery run.

	Thread-safe: every public method runs under a reentrant lock.
	"""

	def __init__(
		self,
		max_depth: int = 5,
		max_children: int = 4,
		novelty: NoveltyFilter | None = None,
	) -> None:
		self.max_depth = max_depth
		self.max_children = max_children
		self.novelty = novelty or NoveltyFilter()
		self._nodes: dict[str, Node] = {}
		self._order: dict[str, int] = {}
		self._root_id: str | None = None
		self._by_call_id: dict[str, str] = {}
		self._signatures: set[str] = set()
		self._seen_themes: set[str] = set()
		self._lock = threading.RLock()

	# -- Construction --

	@property
	def root(self) -> Node | None:
		with self._lock:
			return self._nodes.get(self._root_id) if self._root_id else None

	def create_root(self, prompt: str, call_id: str) -> Node:
		with self._lock:
			if self._root_id is not None:
				raise AlreadyInitialized()
			node = self._insert(prompt, call_id, parent=None)
			self._root_id = node.id
			logger.info("Conversation tree initialized with root %s (call %s)", node.id, call_id)
			return node

	def check_can_add_child(self, parent_id: str) -> Node:
		"""Raise the structural error add_child would raise, without mutating."""
		with self._lock:
			parent = self._nodes.get(parent_id)
			if parent is None:
				raise ParentNotFound(parent_id)
			if parent.depth + 1 >= self.max_depth:
				raise DepthLimitExceeded(parent_id, self.max_depth)
			if len(parent.children) >= self.max_children:
				raise FanOutLimitExceeded(parent_id, self.max_children)
			return parent

	def add_child(self, parent_id: str, prompt: str, call_id: str) -> Node:
		with self._lock:
			parent = self.check_can_add_child(parent_id)
			node = self._insert(prompt, call_id, parent=parent)
			parent.children.append(node.id)
			if prompt in parent.candidate_follow_ups:
				parent.candidate_follow_ups.remove(prompt)
			logger.info(
				"Added node %s under %s at depth %d (call %s)",
				node.id, parent_id, node.depth, call_id,
			)
			return node

	def _insert(self, prompt: str, call_id: str, parent: Node | None) -> Node:
		node = Node(
			prompt=prompt,
			status=NodeStatus.IN_PROGRESS,
			parent_id=parent.id if parent else None,
			depth=parent.depth + 1 if parent else 0,
			call_id=call_id,
			path_signature=path_signature(prompt),
			themes=self.novelty.themes(prompt),
		)
		self._nodes[node.id] = node
		self._order[node.id] = len(self._order)
		self._by_call_id[call_id] = node.id
		self._signatures.add(node.path_signature)
		return node

	# -- Lifecycle --

	def _transition(self, node: Node, target: NodeStatus) -> None:
		if target not in _ALLOWED_TRANSITIONS[node.status]:
			raise InvalidTransition(node.id, node.status.value, target.value)
		node.status = target

	def _require(self, node_id: str) -> Node:
		node = self._nodes.get(node_id)
		if node is None:
			raise NodeNotFound(node_id)
		return node

	def record_completion(self, node_id: str, transcript: str, candidates: list[str]) -> set[str]:
		"""Store a reply, filter its follow-ups and return themes new to the tree."""
		with self._lock:
			node = self._require(node_id)
			self._transition(node, NodeStatus.COMPLETED)
			node.transcript = transcript
			node.completed_at = _now_iso()

			survivors: list[str] = []
			batch: set[str] = set()
			for candidate in candidates:
				verdict = self.novelty.evaluate(candidate, node, self)
				reason = verdict.reason if not verdict.keep else ""
				if verdict.keep and verdict.signature in batch:
					reason = "duplicate_signature"
				if reason:
					logger.debug("Dropped candidate for %s (%s): %.60s", node_id, reason, candidate)
					continue
				survivors.append(candidate)
				batch.add(verdict.signature)
			node.candidate_follow_ups = survivors
			# Only expandable nodes claim signatures tree-wide
			if node.depth + 1 < self.max_depth:
				self._signatures |= batch

			node.themes |= self.novelty.themes(transcript)
			new_themes = node.themes - self._seen_themes
			self._seen_themes |= node.themes

			logger.info(
				"Recorded completion for %s: %d/%d candidates kept, %d new themes",
				node_id, len(survivors), len(candidates), len(new_themes),
			)
			return new_themes

	def mark_failed(self, node_id: str) -> Node:
		with self._lock:
			node = self._require(node_id)
			self._transition(node, NodeStatus.FAILED)
			return node

	def redispatch(self, node_id: str, call_id: str) -> Node:
		"""Attach a new external call to a failed node and count the retry."""
		with self._lock:
			node = self._require(node_id)
			self._transition(node, NodeStatus.IN_PROGRESS)
			self._by_call_id.pop(node.call_id, None)
			node.call_id = call_id
			node.retry_count += 1
			self._by_call_id[call_id] = node.id
			return node

	def record_failed_attempt(self, node_id: str) -> Node:
		"""Count a redispatch attempt that never reached the remote side."""
		with self._lock:
			node = self._require(node_id)
			if node.status != NodeStatus.FAILED:
				raise InvalidTransition(node.id, node.status.value, NodeStatus.FAILED.value)
			node.retry_count += 1
			return node

	def discard_candidate(self, node_id: str, prompt: str) -> None:
		with self._lock:
			node = self._nodes.get(node_id)
			if node is not None and prompt in node.candidate_follow_ups:
				node.candidate_follow_ups.remove(prompt)

	# -- Queries --

	def get(self, node_id: str) -> Node | None:
		with self._lock:
			return self._nodes.get(node_id)

	def find_by_call_id(self, call_id: str) -> Node | None:
		with self._lock:
			node_id = self._by_call_id.get(call_id)
			return self._nodes.get(node_id) if node_id else None

	def children_of(self, node_id: str) -> list[Node]:
		with self._lock:
			node = self._require(node_id)
			return [self._nodes[cid] for cid in node.children]

	def signature_in_use(self, signature: str) -> bool:
		with self._lock:
			return signature in self._signatures

	def path_to(self, node_id: str) -> list[Node]:
		"""Nodes from the root down to node_id, inclusive."""
		with self._lock:
			path: list[Node] = []
			current = self._nodes.get(node_id)
			while current is not None:
				path.append(current)
				current = self._nodes.get(current.parent_id) if current.parent_id else None
			path.reverse()
			return path

	def nodes_at_depth(self, depth: int) -> list[Node]:
		with self._lock:
			return [n for n in self._nodes.values() if n.depth == depth]

	def nodes_ready_for_expansion(self) -> list[Node]:
		"""Completed nodes with unexplored candidates and room to grow.

		Fewest children first, then most distinct themes, then creation order.
		"""
		with self._lock:
			ready = [
				n for n in self._nodes.values()
				if n.status == NodeStatus.COMPLETED
				and n.candidate_follow_ups
				and n.depth + 1 < self.max_depth
				and len(n.children) < self.max_children
			]
			ready.sort(key=lambda n: (len(n.children), -len(n.themes), self._order[n.id]))
			return ready

	def summary(self) -> TreeSummary:
		with self._lock:
			nodes = self._nodes.values()
			return TreeSummary(
				total_nodes=len(self._nodes),
				completed_nodes=sum(1 for n in nodes if n.status == NodeStatus.COMPLETED),
				failed_nodes=sum(1 for n in nodes if n.status == NodeStatus.FAILED),
				max_depth_reached=max((n.depth for n in nodes), default=0),
				distinct_themes=len(self._seen_themes),
				max_allowed_depth=self.max_depth,
			)

	def __len__(self) -> int:
		with self._lock:
			return len(self._nodes)
