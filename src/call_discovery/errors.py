"""Exception taxonomy for the discovery engine.

Structural errors are returned to the caller of the mutating tree operation.
Dispatch and retrieval errors are transient and recovered by retry policy.
Unknown-call and exhausted-retry conditions are logged and counted by the
engine; they never escape an event handler.
"""

from __future__ import annotations


class DiscoveryError(Exception):
	"""Base class for all discovery errors."""


# -- Tree structure --


class StructuralError(DiscoveryError):
	"""A tree invariant would be violated by the requested mutation."""


class AlreadyInitialized(StructuralError):
	def __init__(self) -> None:
		super().__init__("Conversation tree already has a root node")


class ParentNotFound(StructuralError):
	def __init__(self, parent_id: str) -> None:
		super().__init__(f"Parent node {parent_id} not found")
		self.parent_id = parent_id


class NodeNotFound(StructuralError):
	def __init__(self, node_id: str) -> None:
		super().__init__(f"Node {node_id} not found")
		self.node_id = node_id


class DepthLimitExceeded(StructuralError):
	def __init__(self, parent_id: str, max_depth: int) -> None:
		super().__init__(f"Child of {parent_id} would reach maximum depth {max_depth}")
		self.parent_id = parent_id
		self.max_depth = max_depth


class FanOutLimitExceeded(StructuralError):
	def __init__(self, parent_id: str, max_children: int) -> None:
		super().__init__(f"Node {parent_id} already has {max_children} children")
		self.parent_id = parent_id
		self.max_children = max_children


class InvalidTransition(StructuralError):
	def __init__(self, node_id: str, current: str, target: str) -> None:
		super().__init__(f"Node {node_id} cannot move from {current} to {target}")
		self.node_id = node_id
		self.current = current
		self.target = target


# -- Call lifecycle --


class DispatchError(DiscoveryError):
	"""Placing an outbound call failed (network, timeout, remote 4xx/5xx)."""


class RetrievalError(DiscoveryError):
	"""Fetching a call recording failed."""


class UnknownCallError(DiscoveryError):
	"""A lifecycle event referenced a call id not present in the tree."""

	def __init__(self, call_id: str) -> None:
		super().__init__(f"No conversation node for call {call_id}")
		self.call_id = call_id


class ExhaustedRetryError(DiscoveryError):
	"""A branch used up its dispatch attempts and is permanently failed."""

	def __init__(self, node_id: str, attempts: int) -> None:
		super().__init__(f"Node {node_id} failed after {attempts} attempts")
		self.node_id = node_id
		self.attempts = attempts


# -- Engine lifecycle --


class AlreadyRunning(DiscoveryError):
	def __init__(self) -> None:
		super().__init__("Discovery process has already been started")


class DiscoveryConfigError(DiscoveryError):
	"""Required start parameters are missing or invalid."""
