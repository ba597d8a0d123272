from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .arr_client import RadarrClient, SonarrClient
from .errors import (
	ApprovalFailedError,
	EpisodeMatchError,
	InvalidTransitionError,
	MissingExternalIdError,
	PermissionDeniedError,
	PreconditionError,
	ProviderConflictError,
	ProviderError,
	ProviderNotConfiguredError,
	RequestNotFoundError,
	SeasonSelectionError,
)
from .metadata import MetadataClient
from .metrics import inc_approval
from .notifications import NotificationDispatcher, RequestEvent
from .store import RecentRequestsCache, RequestStore, RequestWithItems, User

logger = logging.getLogger(__name__)


async def require_admin_user(store: RequestStore, user_id: Optional[int]) -> User:
	if user_id is None:
		raise PermissionDeniedError("An acting admin is required")
	user = await store.get_user(user_id)
	if user is None or not user.is_admin:
		raise PermissionDeniedError(f"User {user_id} is not allowed to manage requests")
	return user


@dataclass
class CleanupStep:
	name: str
	ok: bool
	error: Optional[str] = None


@dataclass
class EpisodePlan:
	season: int
	episodes: List[int]


class ApprovalWorkflow:
	"""
	Drive a request through approve / deny / mark-available / delete.

	Preconditions (wrong status, missing external ids, ambiguous seasons) are
	raised before anything is mutated. Once provider calls have started, any
	failure leaves the request and its items ``failed`` and raises
	``ApprovalFailedError``.
	"""

	def __init__(
		self,
		store: RequestStore,
		radarr: Optional[RadarrClient],
		sonarr: Optional[SonarrClient],
		metadata: Optional[MetadataClient] = None,
		notifier: Optional[NotificationDispatcher] = None,
		cache: Optional[RecentRequestsCache] = None,
	) -> None:
		self.store = store
		self.radarr = radarr
		self.sonarr = sonarr
		self.metadata = metadata
		self.notifier = notifier
		self.cache = cache

	async def _load(self, request_id: str) -> RequestWithItems:
		data = await self.store.get_request_with_items(request_id)
		if data is None:
			raise RequestNotFoundError(request_id)
		return data

	async def _emit(self, event: RequestEvent, request_id: str) -> None:
		if self.cache is not None:
			self.cache.invalidate()
		if self.notifier is None:
			return
		data = await self.store.get_request_with_items(request_id)
		if data is not None:
			await self.notifier.notify_request(event, data)

	# --- Approve ---

	async def approve(
		self,
		request_id: str,
		acting_user_id: Optional[int],
		quality_profile_id: Optional[int] = None,
	) -> RequestWithItems:
		admin = await require_admin_user(self.store, acting_user_id)
		data = await self._load(request_id)
		if data.request.status != "pending":
			inc_approval("approve", "rejected")
			raise InvalidTransitionError(request_id, data.request.status, "approve")

		plan = self._check_submittable(data)
		await self._submit(data, plan, quality_profile_id, admin.id)
		return await self._load(request_id)

	async def submit_deferred(self, request_id: str) -> Optional[RequestWithItems]:
		"""Perform the provider submission for a request approved in bulk.

		The request is already ``submitted``, so a precondition failure cannot
		leave it untouched: it is marked ``failed`` like any other submission error.
		"""

		data = await self._load(request_id)
		if data.request.status != "submitted" or any(i.provider_id for i in data.items):
			return None
		try:
			plan = self._check_submittable(data)
			await self._submit(data, plan, None, data.request.decided_by)
		except PreconditionError as exc:
			await self._fail(data, exc, data.request.decided_by)
		return await self._load(request_id)

	def _check_submittable(self, data: RequestWithItems) -> Optional[EpisodePlan]:
		request_type = data.request.request_type
		if request_type == "movie":
			if self.radarr is None:
				raise ProviderNotConfiguredError("Movie manager is not configured")
			return None
		if request_type != "episode":
			raise InvalidTransitionError(data.request.id, data.request.status, f"submit {request_type}")
		if self.sonarr is None:
			raise ProviderNotConfiguredError("Episode manager is not configured")

		seasons = {item.season for item in data.items if item.season is not None}
		if len(seasons) != 1:
			raise SeasonSelectionError("Request must contain exactly one season")
		episodes = sorted({item.episode for item in data.items if item.episode is not None})
		if not episodes:
			raise SeasonSelectionError("No episodes in request")
		return EpisodePlan(season=seasons.pop(), episodes=episodes)

	async def _submit(
		self,
		data: RequestWithItems,
		plan: Optional[EpisodePlan],
		quality_profile_id: Optional[int],
		acting_admin_id: Optional[int],
	) -> None:
		request_id = data.request.id
		try:
			if plan is None:
				provider_id = await self._submit_movie(data, quality_profile_id)
			else:
				provider_id = await self._submit_episodes(data, plan, quality_profile_id)
		except MissingExternalIdError:
			inc_approval("approve", "rejected")
			raise
		except ProviderConflictError as exc:
			await self.store.set_status(request_id, "already_exists", str(exc), acting_admin_id)
			inc_approval("approve", "already_exists")
			logger.info("Movie already exists in radarr", extra={"request_id": request_id})
			await self._emit(RequestEvent.ALREADY_EXISTS, request_id)
			return
		except Exception as exc:  # noqa: BLE001
			await self._fail(data, exc, acting_admin_id)

		await self.store.set_items_provider_id(request_id, provider_id)
		await self.store.set_status(request_id, "submitted", None, acting_admin_id)
		inc_approval("approve", "submitted")
		logger.info(
			"Request submitted",
			extra={"request_id": request_id, "provider_id": provider_id},
		)
		await self._emit(RequestEvent.SUBMITTED, request_id)

	async def _fail(self, data: RequestWithItems, exc: Exception, acting_admin_id: Optional[int]) -> None:
		request_id = data.request.id
		detail = str(exc) or exc.__class__.__name__
		logger.error(
			f"Failed to submit request: {detail}",
			extra={"request_id": request_id, "request_type": data.request.request_type},
		)
		await self.store.set_status(request_id, "failed", detail, acting_admin_id)
		inc_approval("approve", "failed")
		await self._emit(RequestEvent.FAILED, request_id)
		raise ApprovalFailedError(request_id, detail=detail) from exc

	async def _submit_movie(self, data: RequestWithItems, quality_profile_id: Optional[int]) -> Optional[int]:
		tmdb_id = data.request.tmdb_id
		if self.metadata is not None:
			details = await self.metadata.get_movie(tmdb_id)
			details = {**details, "poster_url": self.metadata.image_url(details.get("poster_path"))}
		else:
			details = {"title": data.request.title}

		movie = await self.radarr.add_movie(  # type: ignore[union-attr]
			tmdb_id,
			metadata=details,
			quality_profile_id=quality_profile_id,
		)
		return movie.get("id")

	async def _submit_episodes(
		self,
		data: RequestWithItems,
		plan: EpisodePlan,
		quality_profile_id: Optional[int],
	) -> int:
		if self.metadata is None:
			raise MissingExternalIdError("No metadata provider configured to resolve the TVDB id")
		external = await self.metadata.get_tv_external_ids(data.request.tmdb_id)
		tvdb_id = external.get("tvdb_id")
		if not tvdb_id:
			raise MissingExternalIdError("TMDB show has no tvdb_id; the episode manager needs TVDB")

		sonarr = self.sonarr
		series = await sonarr.find_or_create_series(int(tvdb_id), quality_profile_id)  # type: ignore[union-attr]
		series_id = series.get("id")
		if not series_id:
			raise ProviderError("sonarr", f"Series for tvdb:{tvdb_id} has no id")

		episodes = await sonarr.get_episodes_for_series(series_id)  # type: ignore[union-attr]
		wanted = [
			ep["id"]
			for ep in episodes
			if ep.get("seasonNumber") == plan.season and ep.get("episodeNumber") in plan.episodes
		]
		if not wanted:
			raise EpisodeMatchError("No matching episodes found (episodes not populated yet?)")

		await sonarr.set_episode_monitored(wanted, True)  # type: ignore[union-attr]
		await sonarr.episode_search(wanted)  # type: ignore[union-attr]
		return series_id

	# --- Deny / mark available ---

	async def deny(
		self,
		request_id: str,
		acting_user_id: Optional[int],
		reason: Optional[str] = None,
	) -> RequestWithItems:
		admin = await require_admin_user(self.store, acting_user_id)
		data = await self._load(request_id)
		if data.request.status != "pending":
			inc_approval("deny", "rejected")
			raise InvalidTransitionError(request_id, data.request.status, "deny")

		await self.store.set_status(request_id, "denied", reason, admin.id)
		inc_approval("deny", "denied")
		await self._emit(RequestEvent.DENIED, request_id)
		return await self._load(request_id)

	async def mark_available(self, request_id: str, acting_user_id: Optional[int]) -> RequestWithItems:
		admin = await require_admin_user(self.store, acting_user_id)
		await self._load(request_id)
		await self.store.set_status(request_id, "available", None, admin.id)
		inc_approval("mark_available", "available")
		await self._emit(RequestEvent.AVAILABLE, request_id)
		return await self._load(request_id)

	# --- Delete ---

	async def delete(self, request_id: str, acting_user_id: Optional[int]) -> List[CleanupStep]:
		"""Best-effort provider cleanup, then remove the request and its items.

		Cleanup failures are logged and reported but never stop the deletion.
		"""

		await require_admin_user(self.store, acting_user_id)
		data = await self._load(request_id)

		steps: List[CleanupStep] = []
		if data.request.request_type == "movie":
			steps = await self._cleanup_movie(data)
		elif data.request.request_type == "episode":
			steps = await self._cleanup_episodes(data)

		await self.store.delete_request(request_id)
		inc_approval("delete", "deleted")
		if self.cache is not None:
			self.cache.invalidate()
		logger.info(
			"Deleted request",
			extra={"request_id": request_id, "cleanup_failures": sum(1 for s in steps if not s.ok)},
		)
		return steps

	async def _run_step(self, name: str, action: Callable[[], Awaitable[Any]]) -> Tuple[CleanupStep, Any]:
		try:
			result = await action()
		except Exception as exc:  # noqa: BLE001
			logger.warning(f"Cleanup step {name} failed: {exc}")
			return CleanupStep(name=name, ok=False, error=str(exc)), None
		return CleanupStep(name=name, ok=True), result

	async def _cleanup_movie(self, data: RequestWithItems) -> List[CleanupStep]:
		if self.radarr is None:
			return []
		radarr = self.radarr
		steps: List[CleanupStep] = []
		for item in data.items:
			if item.provider != "radarr" or not item.provider_id:
				continue
			movie_id = item.provider_id
			step, _ = await self._run_step(
				f"delete_movie:{movie_id}",
				lambda: radarr.delete_movie(movie_id, delete_files=True, add_exclusion=True),
			)
			steps.append(step)
		return steps

	async def _cleanup_episodes(self, data: RequestWithItems) -> List[CleanupStep]:
		if self.sonarr is None:
			return []
		sonarr = self.sonarr
		series_id = next((i.provider_id for i in data.items if i.provider == "sonarr" and i.provider_id), None)
		if not series_id:
			return []

		steps: List[CleanupStep] = []
		step, episodes = await self._run_step("list_episodes", lambda: sonarr.get_episodes_for_series(series_id))
		steps.append(step)
		by_number: Dict[Tuple[Any, Any], Dict[str, Any]] = {
			(ep.get("seasonNumber"), ep.get("episodeNumber")): ep for ep in episodes or []
		}
		episode_ids = [
			by_number[(item.season, item.episode)]["id"]
			for item in data.items
			if item.provider == "sonarr"
			and item.season is not None
			and item.episode is not None
			and (item.season, item.episode) in by_number
		]

		if episode_ids:
			step, _ = await self._run_step("unmonitor_episodes", lambda: sonarr.set_episode_monitored(episode_ids, False))
			steps.append(step)

			step, queue = await self._run_step("list_queue", lambda: sonarr.queue(1, 200))
			steps.append(step)
			wanted = set(episode_ids)
			for entry in queue or []:
				if isinstance(entry.get("episodeIds"), list):
					entry_ids = entry["episodeIds"]
				elif isinstance(entry.get("episodeId"), int):
					entry_ids = [entry["episodeId"]]
				else:
					continue
				if wanted.intersection(entry_ids) and entry.get("id") is not None:
					queue_id = entry["id"]
					step, _ = await self._run_step(
						f"delete_queue_item:{queue_id}",
						lambda: sonarr.delete_queue_item(queue_id),
					)
					steps.append(step)

		# Removes the whole series, even when only some episodes were requested.
		step, _ = await self._run_step(
			f"delete_series:{series_id}",
			lambda: sonarr.delete_series(series_id, delete_files=True, add_exclusion=True),
		)
		steps.append(step)
		return steps
