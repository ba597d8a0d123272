from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .config import MetadataConfig

logger = logging.getLogger(__name__)


class MetadataClient:
	"""Client for the TMDB v3 API (titles, artwork and external ids)."""

	def __init__(
		self,
		config: MetadataConfig,
		timeout: float = 10.0,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.config = config
		self.base_url = config.base_url.rstrip("/")
		self.timeout = timeout
		self._transport = transport

	async def _get(self, path: str) -> Dict[str, Any]:
		url = f"{self.base_url}{path}"
		params = {"api_key": self.config.api_key} if self.config.api_key else None

		async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
			resp = await client.get(url, params=params)
			resp.raise_for_status()
			return resp.json()

	async def get_movie(self, tmdb_id: int) -> Dict[str, Any]:
		return await self._get(f"/movie/{tmdb_id}")

	async def get_tv(self, tmdb_id: int) -> Dict[str, Any]:
		return await self._get(f"/tv/{tmdb_id}")

	async def get_tv_external_ids(self, tmdb_id: int) -> Dict[str, Any]:
		return await self._get(f"/tv/{tmdb_id}/external_ids")

	def image_url(self, path: Optional[str]) -> Optional[str]:
		if not path:
			return None
		return f"{self.config.image_base_url.rstrip('/')}/{path.lstrip('/')}"
