"""Interfaces of the external services the engine depends on."""

from __future__ import annotations

from typing import Protocol


class CallClient(Protocol):
	async def start_call(self, target_address: str, prompt: str, callback_address: str) -> str:
		"""Place a call and return its external id. Raises DispatchError."""
		...

	async def retrieve_recording(self, call_id: str) -> bytes:
		"""Fetch the recorded audio of a finished call. Raises RetrievalError."""
		...


class TranscriptSummarizer(Protocol):
	async def suggest_follow_ups(self, transcript: str) -> list[str]:
		"""Candidate follow-up utterances, best first. Empty means no new branches."""
		...


class Transcriber(Protocol):
	async def transcribe(self, audio: bytes) -> str:
		...
