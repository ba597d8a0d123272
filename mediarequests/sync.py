from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .arr_client import RadarrClient, SonarrClient
from .config import SyncSettings
from .errors import ProviderError, ProviderNotFoundError
from .metadata import MetadataClient
from .metrics import inc_sync_result
from .models import SyncSummary
from .notifications import NotificationDispatcher, event_for_status
from .statuses import TERMINAL_STATUSES, aggregate_request_status
from .store import ItemUpdate, RecentRequestsCache, RequestItem, RequestStore, RequestWithItems

logger = logging.getLogger(__name__)

EPISODE_TITLE_PATTERN = re.compile(r"S(\d+)E(\d+)", re.IGNORECASE)

NOTIFY_ON_SYNC = frozenset({"available", "partially_available", "downloading", "removed", "failed"})

DeferredSubmitter = Callable[[str], Awaitable[Any]]

QueueEntry = Dict[str, Any]


def queue_entry_state(entry: Optional[QueueEntry]) -> Optional[str]:
	"""Map a queue record to ``downloading``/``failed``, or None when it is not active."""
	if not entry:
		return None
	status = str(entry.get("status") or "").lower()
	if not status or status == "completed":
		return None
	if status == "failed":
		return "failed"
	return "downloading"


def parse_episode_from_title(title: Optional[str]) -> Optional[Tuple[int, int]]:
	if not title:
		return None
	match = EPISODE_TITLE_PATTERN.search(title)
	if not match:
		return None
	return int(match.group(1)), int(match.group(2))


def _series_id_of(entry: QueueEntry) -> Optional[int]:
	series_id = entry.get("seriesId")
	if isinstance(series_id, int):
		return series_id
	series = entry.get("series")
	if isinstance(series, dict) and isinstance(series.get("id"), int):
		return series["id"]
	return None


@dataclass
class QueueSnapshot:
	"""Download queues of both managers, indexed once per sync batch."""

	movies: Dict[int, QueueEntry] = field(default_factory=dict)
	episodes: Dict[int, QueueEntry] = field(default_factory=dict)
	series_episodes: Dict[Tuple[int, int, int], QueueEntry] = field(default_factory=dict)

	@classmethod
	def build(cls, movie_records: List[QueueEntry], episode_records: List[QueueEntry]) -> "QueueSnapshot":
		snapshot = cls()
		for entry in movie_records:
			if isinstance(entry.get("movieId"), int):
				snapshot.movies[entry["movieId"]] = entry

		for entry in episode_records:
			if isinstance(entry.get("episodeIds"), list):
				for episode_id in entry["episodeIds"]:
					if isinstance(episode_id, int):
						snapshot.episodes[episode_id] = entry
			elif isinstance(entry.get("episodeId"), int):
				snapshot.episodes[entry["episodeId"]] = entry

			series_id = _series_id_of(entry)
			if series_id is None:
				continue
			episode = entry.get("episode")
			if isinstance(episode, dict) and "seasonNumber" in episode and "episodeNumber" in episode:
				key = (series_id, int(episode["seasonNumber"]), int(episode["episodeNumber"]))
			else:
				# Some records only carry a release title.
				parsed = parse_episode_from_title(entry.get("title"))
				if parsed is None:
					continue
				key = (series_id, parsed[0], parsed[1])
			snapshot.series_episodes[key] = entry
		return snapshot

	def episode_entry(self, series_id: int, episode: Dict[str, Any]) -> Optional[QueueEntry]:
		entry = self.episodes.get(episode.get("id"))
		if entry is not None:
			return entry
		key = (series_id, episode.get("seasonNumber"), episode.get("episodeNumber"))
		return self.series_episodes.get(key)  # type: ignore[arg-type]

	def series_active(self, series_id: int) -> bool:
		for (sid, _, _), entry in self.series_episodes.items():
			if sid == series_id and queue_entry_state(entry) == "downloading":
				return True
		return False


@dataclass
class SyncOutcome:
	request_status: str
	item_updates: Dict[int, ItemUpdate]


def format_sync_message(summary: SyncSummary) -> str:
	message = f"Synced {summary.processed} request(s)"
	details = []
	if summary.available:
		details.append(f"available {summary.available}")
	if summary.downloading:
		details.append(f"downloading {summary.downloading}")
	if summary.removed:
		details.append(f"removed {summary.removed}")
	if details:
		message += f" ({', '.join(details)})"
	if summary.errors:
		message += f" [{summary.errors} errors]"
	return message


class RequestSyncEngine:
	"""
	Reconcile stored request status with what the movie and episode managers report.

	Requests are processed concurrently up to ``settings.concurrency``; every
	provider call is bounded by ``settings.timeout_seconds``. A provider failure
	only affects the request it belongs to: its stored state is left untouched
	and the batch summary counts one error.
	"""

	def __init__(
		self,
		store: RequestStore,
		radarr: Optional[RadarrClient],
		sonarr: Optional[SonarrClient],
		settings: SyncSettings,
		notifier: Optional[NotificationDispatcher] = None,
		cache: Optional[RecentRequestsCache] = None,
		metadata: Optional[MetadataClient] = None,
		deferred_submitter: Optional[DeferredSubmitter] = None,
		deferred_delay_seconds: float = 0.0,
	) -> None:
		self.store = store
		self.radarr = radarr
		self.sonarr = sonarr
		self.settings = settings
		self.notifier = notifier
		self.cache = cache
		self.metadata = metadata
		self.deferred_submitter = deferred_submitter
		self.deferred_delay = timedelta(seconds=max(0.0, deferred_delay_seconds))

	async def _call(self, awaitable: Awaitable[Any]) -> Any:
		return await asyncio.wait_for(awaitable, timeout=self.settings.timeout_seconds)

	async def _load_queue(self, client: Optional[Any]) -> List[QueueEntry]:
		if client is None:
			return []
		try:
			return await self._call(client.queue(1, self.settings.queue_page_size))
		except Exception as exc:  # noqa: BLE001
			logger.warning(f"Failed to load {client.label} queue, continuing without it: {exc}")
			return []

	async def load_queues(self) -> QueueSnapshot:
		movie_records, episode_records = await asyncio.gather(
			self._load_queue(self.radarr),
			self._load_queue(self.sonarr),
		)
		return QueueSnapshot.build(movie_records, episode_records)

	async def sync_request_by_id(self, request_id: str, force: bool = False) -> SyncSummary:
		"""Re-evaluate a single request, including terminal ones when ``force`` is set."""

		summary = SyncSummary()
		data = await self.store.get_request_with_items(request_id)
		if data is None:
			return summary

		queues = await self.load_queues()
		await self._sync_one(data, queues, summary, force=force)
		self._invalidate_cache()
		return summary

	async def sync_pending_requests(self) -> SyncSummary:
		summary = SyncSummary()
		requests = await self.store.list_requests_for_sync(self.settings.batch_limit)
		if not requests:
			return summary

		queues = await self.load_queues()
		semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))

		async def run(data: RequestWithItems) -> None:
			async with semaphore:
				if data.is_terminal:
					return
				if self._needs_deferred_submission(data):
					await self._submit_deferred(data, summary)
					return
				await self._sync_one(data, queues, summary, force=False)

		await asyncio.gather(*(run(data) for data in requests))
		self._invalidate_cache()

		if summary.processed:
			logger.info(
				format_sync_message(summary),
				extra={"errors": summary.errors, "partially_available": summary.partiallyAvailable},
			)
		return summary

	def _invalidate_cache(self) -> None:
		if self.cache is not None:
			self.cache.invalidate()

	def _needs_deferred_submission(self, data: RequestWithItems) -> bool:
		return (
			self.deferred_submitter is not None
			and data.request.status == "submitted"
			and all(item.provider_id is None for item in data.items)
		)

	async def _submit_deferred(self, data: RequestWithItems, summary: SyncSummary) -> None:
		due = data.request.updated_at + self.deferred_delay
		if datetime.now(timezone.utc) < due:
			return
		summary.processed += 1
		try:
			await self.deferred_submitter(data.request.id)  # type: ignore[misc]
		except Exception as exc:  # noqa: BLE001
			summary.errors += 1
			inc_sync_result("error")
			logger.warning(
				f"Deferred submission failed: {exc}",
				extra={"request_id": data.request.id},
			)

	async def _sync_one(
		self,
		data: RequestWithItems,
		queues: QueueSnapshot,
		summary: SyncSummary,
		force: bool,
	) -> None:
		summary.processed += 1
		items = data.items if force else [i for i in data.items if i.status not in TERMINAL_STATUSES]
		if not items:
			return

		try:
			if data.request.request_type == "movie":
				outcome = await self._evaluate_movie(data, items, queues)
			else:
				outcome = await self._evaluate_episodes(data, items, queues)
		except Exception as exc:  # noqa: BLE001
			summary.errors += 1
			inc_sync_result("error")
			logger.warning(
				f"Sync failed for request: {exc}",
				extra={"request_id": data.request.id, "request_type": data.request.request_type},
			)
			return

		if outcome is None:
			inc_sync_result("unchanged")
			return

		summary.count_result(outcome.request_status)
		inc_sync_result(outcome.request_status)
		previous = data.request.status
		await self.store.apply_sync_result(data.request.id, outcome.request_status, outcome.item_updates)

		if outcome.request_status != previous:
			logger.info(
				f"Request status changed {previous} -> {outcome.request_status}",
				extra={"request_id": data.request.id},
			)
			await self._notify(data.request.id, outcome.request_status)

	async def _notify(self, request_id: str, status: str) -> None:
		if self.notifier is None or status not in NOTIFY_ON_SYNC:
			return
		event = event_for_status(status)
		fresh = await self.store.get_request_with_items(request_id)
		if event is None or fresh is None:
			return
		await self.notifier.notify_request(event, fresh)

	def _aggregate(
		self,
		data: RequestWithItems,
		updates: Dict[int, ItemUpdate],
	) -> str:
		statuses = []
		for item in data.items:
			update = updates.get(item.id)
			statuses.append(update.status if update and update.status else item.status)
		return aggregate_request_status(statuses, data.request.status)

	def _removed(self, data: RequestWithItems) -> SyncOutcome:
		return SyncOutcome(
			request_status="removed",
			item_updates={item.id: ItemUpdate(status="removed") for item in data.items},
		)

	async def _evaluate_movie(
		self,
		data: RequestWithItems,
		items: List[RequestItem],
		queues: QueueSnapshot,
	) -> Optional[SyncOutcome]:
		if self.radarr is None:
			raise ProviderError("radarr", "Movie manager is not configured")

		movie_items = [i for i in items if i.provider == "radarr"]
		if not movie_items:
			return None

		provider_id = next((i.provider_id for i in movie_items if i.provider_id), None)
		found_provider_id: Optional[int] = None
		if provider_id is None:
			movie = await self._call(self.radarr.get_movie_by_tmdb_id(data.request.tmdb_id))
			if not movie:
				return None
			found_provider_id = movie.get("id")
			provider_id = found_provider_id
		else:
			try:
				movie = await self._call(self.radarr.get_movie(provider_id))
			except ProviderNotFoundError:
				return self._removed(data)

		if movie.get("hasFile"):
			status = "available"
		else:
			status = queue_entry_state(queues.movies.get(provider_id))  # type: ignore[arg-type]
			if status is None:
				if found_provider_id is None:
					return None
				status = movie_items[0].status

		updates = {
			item.id: ItemUpdate(status=status, provider_id=found_provider_id)
			for item in movie_items
		}
		return SyncOutcome(request_status=self._aggregate(data, updates), item_updates=updates)

	async def _resolve_series_id(self, data: RequestWithItems, items: List[RequestItem]) -> Optional[int]:
		series_id = next((i.provider_id for i in data.items if i.provider == "sonarr" and i.provider_id), None)
		if series_id is not None:
			return series_id
		if self.metadata is None:
			return None
		external = await self._call(self.metadata.get_tv_external_ids(data.request.tmdb_id))
		tvdb_id = external.get("tvdb_id")
		if not tvdb_id:
			return None
		series = await self._call(self.sonarr.find_series_by_tvdb(int(tvdb_id)))  # type: ignore[union-attr]
		return series.get("id") if series else None

	async def _evaluate_episodes(
		self,
		data: RequestWithItems,
		items: List[RequestItem],
		queues: QueueSnapshot,
	) -> Optional[SyncOutcome]:
		if self.sonarr is None:
			raise ProviderError("sonarr", "Episode manager is not configured")

		episode_items = [i for i in items if i.provider == "sonarr"]
		if not episode_items:
			return None

		had_provider_id = any(i.provider_id for i in data.items)
		series_id = await self._resolve_series_id(data, episode_items)
		if series_id is None:
			return None

		try:
			series = await self._call(self.sonarr.get_series(series_id))
		except ProviderNotFoundError:
			if had_provider_id:
				return self._removed(data)
			return None
		if not series or not series.get("id"):
			return self._removed(data) if had_provider_id else None

		episodes = await self._call(self.sonarr.get_episodes_for_series(series_id))
		by_number = {
			(ep.get("seasonNumber"), ep.get("episodeNumber")): ep
			for ep in episodes
			if isinstance(ep, dict)
		}

		updates: Dict[int, ItemUpdate] = {}
		filled_id = None if had_provider_id else series_id
		for item in episode_items:
			status: Optional[str] = None
			if item.season is None or item.episode is None:
				status = self._whole_series_status(series, series_id, queues)
			else:
				episode = by_number.get((item.season, item.episode))
				if episode is not None:
					# An active queue entry wins over file flags until import finishes.
					status = queue_entry_state(queues.episode_entry(series_id, episode))
					if status is None and episode.get("hasFile"):
						status = "available"
			if status is None and filled_id is None:
				continue
			updates[item.id] = ItemUpdate(status=status, provider_id=filled_id)

		if not updates:
			return SyncOutcome(request_status=data.request.status, item_updates={})
		return SyncOutcome(request_status=self._aggregate(data, updates), item_updates=updates)

	def _whole_series_status(self, series: Dict[str, Any], series_id: int, queues: QueueSnapshot) -> Optional[str]:
		if queues.series_active(series_id):
			return "downloading"
		stats = series.get("statistics") or {}
		episode_count = int(stats.get("episodeCount") or 0)
		file_count = int(stats.get("episodeFileCount") or 0)
		if episode_count and file_count >= episode_count:
			return "available"
		return None


class RequestSyncJob:
	"""Periodic background reconciliation.

	Overlapping passes are skipped rather than queued.
	"""

	def __init__(self, engine: RequestSyncEngine, interval_minutes: float, enabled: bool = True) -> None:
		self.engine = engine
		self.interval_seconds = interval_minutes * 60.0
		self.enabled = enabled
		self.last_summary: Optional[SyncSummary] = None
		self._lock = asyncio.Lock()
		self._task: Optional[asyncio.Task] = None
		self._pending: Set[asyncio.Task] = set()

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	async def run_once(self) -> Optional[SyncSummary]:
		if self._lock.locked():
			logger.info("Request sync already running, skipping this pass")
			return None
		async with self._lock:
			try:
				self.last_summary = await self.engine.sync_pending_requests()
			except Exception:  # noqa: BLE001
				logger.exception("Background request sync failed")
				return None
			return self.last_summary

	async def _loop(self) -> None:
		while True:
			await self.run_once()
			await asyncio.sleep(self.interval_seconds)

	def start(self) -> None:
		if not self.enabled or self.running:
			return
		if self.engine.radarr is None and self.engine.sonarr is None:
			logger.info("No movie or episode manager configured, request sync disabled")
			return
		self._task = asyncio.create_task(self._loop())
		logger.info("Started request sync job", extra={"interval_seconds": self.interval_seconds})

	def trigger_after(self, delay_seconds: float) -> None:
		"""Schedule one extra pass ``delay_seconds`` from now."""

		async def delayed() -> None:
			await asyncio.sleep(max(0.0, delay_seconds))
			await self.run_once()

		task = asyncio.create_task(delayed())
		self._pending.add(task)
		task.add_done_callback(self._pending.discard)

	async def stop(self) -> None:
		tasks = list(self._pending)
		if self._task is not None:
			tasks.append(self._task)
		for task in tasks:
			task.cancel()
		for task in tasks:
			try:
				await task
			except asyncio.CancelledError:
				pass
		self._task = None
		self._pending.clear()
