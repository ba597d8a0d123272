from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import ArrInstanceConfig
from .errors import (
	ProviderConflictError,
	ProviderError,
	ProviderNotFoundError,
	ProviderTimeoutError,
)
from .metrics import inc_provider_call

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

_ALREADY_EXISTS = re.compile(r"already|exists", re.IGNORECASE)


@dataclass
class ArrInstanceState:
	reachable: bool
	version: Optional[str]
	error: Optional[str]


def normalize_queue_records(response: Any) -> List[Dict[str, Any]]:
	"""Queue endpoints return either a bare list or a paged ``{records: [...]}``."""
	if not response:
		return []
	if isinstance(response, list):
		return response
	if isinstance(response, dict) and isinstance(response.get("records"), list):
		return response["records"]
	return []


def _slugify(title: str, tmdb_id: int) -> str:
	base = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
	base = re.sub(r"-{2,}", "-", base)
	return f"{base or 'movie'}-{tmdb_id}"


class ArrClient:
	"""Thin async client for a Sonarr/Radarr v3 API.

	Expects config.url to point at the API root, e.g. http://host:8989/api/v3
	and uses X-Api-Key header auth.
	"""

	label = "arr"

	def __init__(
		self,
		config: ArrInstanceConfig,
		timeout: float = DEFAULT_TIMEOUT,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.config = config
		self.base_url = config.url.rstrip("/")
		self.timeout = timeout
		self._transport = transport

	async def _request(
		self,
		method: str,
		path: str,
		params: Optional[Dict[str, Any]] = None,
		json: Any = None,
	) -> Any:
		url = f"{self.base_url}{path}"
		headers = {"X-Api-Key": self.config.api_key}

		try:
			async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
				resp = await client.request(method, url, headers=headers, params=params, json=json)
		except httpx.TimeoutException as exc:
			inc_provider_call(self.label, "timeout")
			raise ProviderTimeoutError(self.label, f"{method} {path} timed out") from exc
		except httpx.HTTPError as exc:
			inc_provider_call(self.label, "error")
			raise ProviderError(self.label, f"{method} {path} failed: {exc}") from exc

		if resp.status_code == 404:
			inc_provider_call(self.label, "not_found")
			raise ProviderNotFoundError(self.label, f"{path} not found", status_code=404)
		if resp.status_code >= 400:
			inc_provider_call(self.label, "error")
			detail = resp.text[:500]
			if resp.status_code in (400, 409) and _ALREADY_EXISTS.search(detail):
				raise ProviderConflictError(self.label, detail, status_code=resp.status_code)
			raise ProviderError(
				self.label,
				f"{method} {path} returned HTTP {resp.status_code}: {detail}",
				status_code=resp.status_code,
			)

		inc_provider_call(self.label, "ok")
		if not resp.content:
			return None
		return resp.json()

	async def status(self) -> Dict[str, Any]:
		return await self._request("GET", "/system/status")

	async def queue(self, page: int = 1, page_size: int = 50) -> List[Dict[str, Any]]:
		data = await self._request(
			"GET",
			"/queue",
			params={"page": page, "pageSize": page_size, **self._queue_includes()},
		)
		return normalize_queue_records(data)

	async def logs(self, page: int = 1, page_size: int = 50) -> List[Dict[str, Any]]:
		data = await self._request(
			"GET",
			"/log",
			params={
				"sortKey": "time",
				"sortDirection": "descending",
				"page": page,
				"pageSize": page_size,
			},
		)
		return normalize_queue_records(data)

	async def quality_profiles(self) -> List[Dict[str, Any]]:
		return await self._request("GET", "/qualityprofile") or []

	async def resolve_root_folder(self, override: Optional[str] = None) -> str:
		desired = override or self.config.root_folder
		roots = await self._request("GET", "/rootfolder")
		if not isinstance(roots, list) or not roots:
			raise ProviderError(self.label, "No root folders are configured")
		for root in roots:
			if root.get("path") == desired:
				return root["path"]
		return roots[0]["path"]

	def _queue_includes(self) -> Dict[str, Any]:
		return {}


class RadarrClient(ArrClient):
	label = "radarr"

	def _queue_includes(self) -> Dict[str, Any]:
		return {"includeMovie": "true"}

	async def add_movie(
		self,
		tmdb_id: int,
		metadata: Optional[Dict[str, Any]] = None,
		quality_profile_id: Optional[int] = None,
		root_folder: Optional[str] = None,
	) -> Dict[str, Any]:
		"""Add a movie by TMDB id, monitored and searched immediately."""

		metadata = metadata or {}
		title = metadata.get("title") or metadata.get("original_title") or f"TMDB {tmdb_id}"
		release = metadata.get("release_date")
		year = int(str(release)[:4]) if release and str(release)[:4].isdigit() else None
		images = []
		if metadata.get("poster_url"):
			images.append({"coverType": "poster", "url": metadata["poster_url"]})

		payload: Dict[str, Any] = {
			"title": title,
			"tmdbId": tmdb_id,
			"year": year,
			"titleSlug": _slugify(title, tmdb_id),
			"images": images,
			"rootFolderPath": await self.resolve_root_folder(root_folder),
			"qualityProfileId": quality_profile_id or self.config.quality_profile_id,
			"monitored": True,
			"minimumAvailability": self.config.minimum_availability,
			"addOptions": {"searchForMovie": True},
		}
		if self.config.tags:
			payload["tags"] = list(self.config.tags)

		movie = await self._request("POST", "/movie", json=payload)
		logger.info(
			"Added movie to radarr",
			extra={"tmdb_id": tmdb_id, "radarr_id": (movie or {}).get("id")},
		)
		return movie or {}

	async def get_movie(self, movie_id: int) -> Dict[str, Any]:
		return await self._request("GET", f"/movie/{movie_id}")

	async def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[Dict[str, Any]]:
		movies = await self._request("GET", "/movie", params={"tmdbId": tmdb_id})
		if isinstance(movies, list) and movies:
			return movies[0]
		return None

	async def list_movies(self) -> List[Dict[str, Any]]:
		return await self._request("GET", "/movie") or []

	async def delete_movie(self, movie_id: int, delete_files: bool = False, add_exclusion: bool = False) -> None:
		await self._request(
			"DELETE",
			f"/movie/{movie_id}",
			params={
				"deleteFiles": str(delete_files).lower(),
				"addImportExclusion": str(add_exclusion).lower(),
			},
		)


class SonarrClient(ArrClient):
	label = "sonarr"

	def _queue_includes(self) -> Dict[str, Any]:
		return {"includeSeries": "true", "includeEpisode": "true"}

	async def lookup_series_by_tvdb(self, tvdb_id: int) -> List[Dict[str, Any]]:
		result = await self._request("GET", "/series/lookup", params={"term": f"tvdb:{tvdb_id}"})
		return result if isinstance(result, list) else []

	async def list_series(self) -> List[Dict[str, Any]]:
		return await self._request("GET", "/series") or []

	async def get_series(self, series_id: int) -> Dict[str, Any]:
		return await self._request("GET", f"/series/{series_id}")

	async def find_series_by_tvdb(self, tvdb_id: int) -> Optional[Dict[str, Any]]:
		for series in await self.list_series():
			if series.get("tvdbId") == tvdb_id:
				return series
		return None

	async def add_series_from_lookup(
		self,
		candidate: Dict[str, Any],
		monitored: bool = False,
		quality_profile_id: Optional[int] = None,
	) -> Dict[str, Any]:
		payload: Dict[str, Any] = {
			**candidate,
			"rootFolderPath": await self.resolve_root_folder(),
			"qualityProfileId": quality_profile_id
			or candidate.get("qualityProfileId")
			or self.config.quality_profile_id,
			"languageProfileId": candidate.get("languageProfileId") or self.config.language_profile_id,
			"seriesType": self.config.series_type,
			"seasonFolder": self.config.season_folder,
			"monitored": monitored,
			"addOptions": {
				"searchForMissingEpisodes": False,
				"searchForCutoffUnmetEpisodes": False,
			},
		}
		if self.config.tags:
			payload["tags"] = list(self.config.tags)
		if not monitored and isinstance(payload.get("seasons"), list):
			payload["seasons"] = [{**s, "monitored": False} for s in payload["seasons"]]

		series = await self._request("POST", "/series", json=payload)
		logger.info(
			"Added series to sonarr",
			extra={"tvdb_id": candidate.get("tvdbId"), "sonarr_id": (series or {}).get("id")},
		)
		return series or {}

	async def find_or_create_series(
		self,
		tvdb_id: int,
		quality_profile_id: Optional[int] = None,
	) -> Dict[str, Any]:
		"""Return the series for ``tvdb_id``, adding it unmonitored only if absent.

		Callers must not assume the series was created.
		"""

		existing = await self.find_series_by_tvdb(tvdb_id)
		if existing:
			return existing

		candidates = await self.lookup_series_by_tvdb(tvdb_id)
		if not candidates:
			raise ProviderError(self.label, f"Lookup returned nothing for tvdb:{tvdb_id}")
		try:
			return await self.add_series_from_lookup(candidates[0], False, quality_profile_id)
		except ProviderConflictError:
			# Added concurrently by someone else.
			existing = await self.find_series_by_tvdb(tvdb_id)
			if existing:
				return existing
			raise

	async def get_episodes_for_series(self, series_id: int) -> List[Dict[str, Any]]:
		return await self._request("GET", "/episode", params={"seriesId": series_id}) or []

	async def set_episode_monitored(self, episode_ids: List[int], monitored: bool) -> None:
		await self._request(
			"PUT",
			"/episode/monitor",
			json={"episodeIds": episode_ids, "monitored": monitored},
		)

	async def episode_search(self, episode_ids: List[int]) -> Dict[str, Any]:
		return await self._request(
			"POST",
			"/command",
			json={"name": "EpisodeSearch", "episodeIds": episode_ids},
		)

	async def delete_series(self, series_id: int, delete_files: bool = False, add_exclusion: bool = False) -> None:
		await self._request(
			"DELETE",
			f"/series/{series_id}",
			params={
				"deleteFiles": str(delete_files).lower(),
				"addImportListExclusion": str(add_exclusion).lower(),
			},
		)

	async def delete_queue_item(self, queue_id: int) -> None:
		await self._request("DELETE", f"/queue/{queue_id}")


async def check_arr_instance(client: ArrClient) -> ArrInstanceState:
	"""Check connectivity to a Sonarr/Radarr instance."""

	try:
		data = await client.status()
		version = data.get("version") if isinstance(data, dict) else None
		return ArrInstanceState(reachable=True, version=version, error=None)
	except Exception as exc:  # noqa: BLE001
		return ArrInstanceState(reachable=False, version=None, error=str(exc))
