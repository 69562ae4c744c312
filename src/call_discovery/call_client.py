"""HTTP client for the outbound call-placement API.

Uses an async httpx client. Transport errors and 5xx responses are retried
with exponential delay; 4xx responses fail immediately.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from call_discovery.config import CallApiConfig
from call_discovery.errors import DispatchError, RetrievalError

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 0.5


def _is_retryable(exc: httpx.HTTPError) -> bool:
	if isinstance(exc, httpx.HTTPStatusError):
		return exc.response.status_code >= 500
	return isinstance(exc, httpx.TransportError)


class HttpCallClient:
	"""Places calls and fetches recordings through the call API."""

	def __init__(
		self,
		base_url: str,
		token: str,
		timeout: float = 10.0,
		recording_timeout: float = 15.0,
		max_retries: int = 3,
		client: httpx.AsyncClient | None = None,
	) -> None:
		if not base_url or not token:
			raise ValueError("base_url and token are required")
		self._base_url = base_url.rstrip("/")
		self._token = token
		self._timeout = timeout
		self._recording_timeout = recording_timeout
		self._max_retries = max_retries
		self._client = client
		self._owns_client = client is None

	@classmethod
	def from_config(cls, config: CallApiConfig) -> HttpCallClient:
		return cls(
			base_url=config.base_url,
			token=config.token,
			timeout=config.timeout,
			recording_timeout=config.recording_timeout,
			max_retries=config.max_retries,
		)

	async def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(timeout=self._timeout)
		return self._client

	async def close(self) -> None:
		if self._client is not None and self._owns_client:
			await self._client.aclose()
			self._client = None

	@property
	def _media_base(self) -> str:
		return self._base_url.replace("/rest/exercise", "")

	async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
		client = await self._ensure_client()
		headers = {"Authorization": f"Bearer {self._token}"}
		attempt = 0
		while True:
			try:
				resp = await client.request(method, url, headers=headers, **kwargs)
				resp.raise_for_status()
				return resp
			except httpx.HTTPError as exc:
				if attempt >= self._max_retries or not _is_retryable(exc):
					raise
				delay = RETRY_BASE_DELAY * (2 ** attempt)
				attempt += 1
				logger.info("%s %s failed (%s), retry %d in %.1fs", method, url, exc, attempt, delay)
				await asyncio.sleep(delay)

	async def start_call(self, target_address: str, prompt: str, callback_address: str) -> str:
		if not target_address or not prompt or not callback_address:
			raise DispatchError("target address, prompt and callback address are required")
		try:
			resp = await self._request(
				"POST",
				f"{self._base_url}/start-call",
				json={
					"phone_number": target_address,
					"prompt": prompt,
					"webhook_url": callback_address,
				},
				timeout=self._timeout,
			)
			call_id = resp.json().get("id")
		except (httpx.HTTPError, ValueError) as exc:
			logger.error("Failed to initiate call to %s: %s", target_address, exc)
			raise DispatchError(f"Failed to initiate call to {target_address}: {exc}") from exc
		if not call_id:
			raise DispatchError("Call API response did not include a call id")
		logger.info("Call %s initiated to %s", call_id, target_address)
		return str(call_id)

	async def retrieve_recording(self, call_id: str) -> bytes:
		try:
			resp = await self._request(
				"GET",
				f"{self._media_base}/media/exercise",
				params={"id": call_id},
				timeout=self._recording_timeout,
			)
		except httpx.HTTPError as exc:
			logger.error("Failed to retrieve recording for %s: %s", call_id, exc)
			raise RetrievalError(f"Failed to retrieve recording for {call_id}: {exc}") from exc
		logger.info("Retrieved recording for %s (%d bytes)", call_id, len(resp.content))
		return resp.content
