"""Assemble a runnable discovery session from a loaded config."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from call_discovery.call_client import HttpCallClient
from call_discovery.collaborators import CallClient, Transcriber, TranscriptSummarizer
from call_discovery.config import DiscoveryConfig, validate_config
from call_discovery.engine import DiscoveryEngine
from call_discovery.errors import DiscoveryConfigError
from call_discovery.event_stream import EventStream
from call_discovery.models import DiscoverySnapshot, Node
from call_discovery.webhook import WebhookRouter

logger = logging.getLogger(__name__)


@dataclass
class DiscoverySession:
	"""Everything a host process needs: feed webhooks to `router`, read `engine`."""

	engine: DiscoveryEngine
	router: WebhookRouter
	call_client: CallClient
	events: EventStream | None = None
	owns_client: bool = False

	async def start(self) -> Node:
		if self.events is not None:
			self.events.open()
		return await self.engine.start_discovery()

	async def close(self, reason: str = "stopped") -> DiscoverySnapshot:
		"""Stop discovery, wait for the frontier loop and release resources."""
		self.engine.stop_discovery(reason)
		try:
			await self.engine.wait_until_finished()
		finally:
			if self.events is not None:
				self.events.close()
			if self.owns_client and isinstance(self.call_client, HttpCallClient):
				await self.call_client.close()
		snapshot = self.engine.get_state()
		logger.info(
			"Session closed: %d nodes, %d completed, %d failed",
			snapshot.tree.total_nodes, snapshot.completed_count, snapshot.failed_count,
		)
		return snapshot


def build_session(
	config: DiscoveryConfig,
	summarizer: TranscriptSummarizer,
	transcriber: Transcriber,
	call_client: CallClient | None = None,
) -> DiscoverySession:
	"""Wire the call client, event log, engine and webhook router.

	Without an injected call_client the HTTP client is built from
	[call_api]. Raises DiscoveryConfigError when the config does not validate.
	"""
	issues = validate_config(config)
	if call_client is None and not config.call_api.base_url:
		issues.append("call_api.base_url is required")
	if issues:
		raise DiscoveryConfigError("; ".join(issues))

	owns_client = call_client is None
	client: CallClient = call_client or HttpCallClient.from_config(config.call_api)
	events = EventStream.from_config(config.events)
	engine = DiscoveryEngine(config, client, summarizer, event_stream=events)
	router = WebhookRouter(engine, client, transcriber)
	return DiscoverySession(
		engine=engine, router=router, call_client=client, events=events, owns_client=owns_client,
	)
