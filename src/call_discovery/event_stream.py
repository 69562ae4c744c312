"""Discovery event log.

Every record is one JSON object per line, stamped with the engine counters
at the moment of the event so a run can be reconstructed from the log
alone. Only the event types in constants.EVENT_TYPES are accepted.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from call_discovery.constants import EVENT_TYPES

if TYPE_CHECKING:
	from call_discovery.config import EventsConfig
	from call_discovery.models import DiscoveryState

logger = logging.getLogger(__name__)


class EventStream:
	"""Append-only discovery log.

	Records written while the stream is closed are skipped. Write errors
	(full disk, revoked mount) are logged and counted in `write_errors`
	instead of propagating into the engine.
	"""

	def __init__(self, path: Path) -> None:
		self.path = path
		self.write_errors = 0
		self._handle: IO[str] | None = None

	@classmethod
	def from_config(cls, config: EventsConfig) -> EventStream | None:
		"""Stream for the configured path, or None when event logging is off."""
		if not config.path:
			return None
		return cls(Path(config.path))

	@property
	def is_open(self) -> bool:
		return self._handle is not None

	def open(self) -> None:
		if self._handle is not None:
			return
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self._handle = self.path.open("a", encoding="utf-8")
		logger.debug("Discovery events -> %s", self.path)

	def close(self) -> None:
		handle, self._handle = self._handle, None
		if handle is not None:
			handle.close()

	def __enter__(self) -> EventStream:
		self.open()
		return self

	def __exit__(self, *exc_info: object) -> None:
		self.close()

	def emit(
		self,
		event_type: str,
		*,
		node_id: str = "",
		call_id: str = "",
		state: DiscoveryState | None = None,
		details: dict[str, Any] | None = None,
	) -> bool:
		"""Append one event. Returns False when nothing was written."""
		if event_type not in EVENT_TYPES:
			raise ValueError(f"Unknown discovery event type: {event_type}")
		if self._handle is None:
			return False

		record: dict[str, Any] = {
			"ts": datetime.now(timezone.utc).isoformat(),
			"event": event_type,
			"node_id": node_id,
			"call_id": call_id,
		}
		if state is not None:
			record["active"] = state.active_count
			record["completed"] = state.completed_count
			record["failed"] = state.failed_count
		record["details"] = details or {}

		try:
			self._handle.write(json.dumps(record, separators=(",", ":"), default=str) + "\n")
			self._handle.flush()
		except OSError as exc:
			self.write_errors += 1
			logger.warning("Could not write %s event to %s: %s", event_type, self.path, exc)
			return False
		return True
