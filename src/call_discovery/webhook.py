"""Routes call-status notifications from the call API into engine events."""

from __future__ import annotations

import logging
from typing import Any, Literal

from pydantic import BaseModel

from call_discovery.collaborators import CallClient, Transcriber
from call_discovery.engine import DiscoveryEngine
from call_discovery.errors import RetrievalError

logger = logging.getLogger(__name__)


class CallStatusUpdate(BaseModel):
	"""Body of a call-status webhook."""

	id: str
	status: Literal["initiated", "in-progress", "completed", "failed"]
	recording_available: bool = False


class WebhookRouter:
	"""Validates webhook payloads and forwards terminal ones to the engine."""

	def __init__(self, engine: DiscoveryEngine, call_client: CallClient, transcriber: Transcriber) -> None:
		self._engine = engine
		self._calls = call_client
		self._transcriber = transcriber

	async def handle(self, payload: dict[str, Any]) -> str:
		"""Process one notification and return the action taken.

		Raises pydantic.ValidationError for malformed payloads.
		"""
		update = CallStatusUpdate.model_validate(payload)
		logger.info("Webhook for call %s: %s (recording=%s)", update.id, update.status, update.recording_available)

		if update.status == "failed":
			await self._engine.on_call_failed(update.id)
			return "failed"
		if update.status != "completed":
			return "ignored"
		if not update.recording_available:
			logger.info("Call %s completed without a recording yet", update.id)
			return "awaiting_recording"

		try:
			audio = await self._calls.retrieve_recording(update.id)
			transcript = await self._transcriber.transcribe(audio)
		except RetrievalError as exc:
			logger.warning("Recording retrieval failed for %s: %s", update.id, exc)
			await self._engine.on_call_failed(update.id)
			return "failed"
		except Exception as exc:
			logger.error("Transcription failed for %s: %s", update.id, exc, exc_info=True)
			await self._engine.on_call_failed(update.id)
			return "failed"

		await self._engine.on_call_completed(update.id, transcript)
		return "completed"
