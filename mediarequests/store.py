from __future__ import annotations

import abc
import asyncio
import copy
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .statuses import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

SYNCABLE_STATUSES = ("submitted", "downloading", "partially_available")


def _utcnow() -> datetime:
	return datetime.now(timezone.utc)


@dataclass
class User:
	id: int
	username: str
	email: Optional[str] = None
	is_admin: bool = False
	discord_user_id: Optional[str] = None
	telegram_chat_id: Optional[str] = None


@dataclass
class RequestItem:
	id: int
	request_id: str
	provider: str  # radarr or sonarr
	provider_id: Optional[int] = None
	season: Optional[int] = None
	episode: Optional[int] = None
	status: str = "pending"
	created_at: datetime = field(default_factory=_utcnow)


@dataclass
class MediaRequest:
	id: str
	request_type: str  # movie or episode
	tmdb_id: int
	title: str
	requested_by: int
	status: str = "pending"
	status_reason: Optional[str] = None
	decided_by: Optional[int] = None
	created_at: datetime = field(default_factory=_utcnow)
	updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class RequestWithItems:
	request: MediaRequest
	items: List[RequestItem]
	username: Optional[str] = None

	@property
	def is_terminal(self) -> bool:
		return self.request.status in TERMINAL_STATUSES


@dataclass
class ItemSpec:
	provider: str
	season: Optional[int] = None
	episode: Optional[int] = None
	provider_id: Optional[int] = None


@dataclass
class ItemUpdate:
	status: Optional[str] = None
	provider_id: Optional[int] = None


class RequestStore(abc.ABC):
	"""Persistence contract for requests, their items and the users behind them.

	Implementations must apply every method atomically: a request and its
	items are always observed in a consistent state.
	"""

	@abc.abstractmethod
	async def create_request(
		self,
		request_type: str,
		tmdb_id: int,
		title: str,
		requested_by: int,
		items: Sequence[ItemSpec],
		status: str = "pending",
	) -> RequestWithItems: ...

	@abc.abstractmethod
	async def get_request_with_items(self, request_id: str) -> Optional[RequestWithItems]: ...

	@abc.abstractmethod
	async def list_requests_for_sync(self, limit: int = 100) -> List[RequestWithItems]: ...

	@abc.abstractmethod
	async def list_recent_requests(self, limit: int = 20) -> List[RequestWithItems]: ...

	@abc.abstractmethod
	async def set_status(
		self,
		request_id: str,
		status: str,
		reason: Optional[str] = None,
		acting_admin_id: Optional[int] = None,
	) -> None:
		"""Set the request and all of its items to ``status``."""

	@abc.abstractmethod
	async def set_items_provider_id(self, request_id: str, provider_id: Optional[int]) -> None: ...

	@abc.abstractmethod
	async def apply_sync_result(
		self,
		request_id: str,
		request_status: str,
		item_updates: Dict[int, ItemUpdate],
	) -> None: ...

	@abc.abstractmethod
	async def delete_request(self, request_id: str) -> bool: ...

	@abc.abstractmethod
	async def bulk_update_status(
		self,
		request_ids: Sequence[str],
		status: str,
		reason: Optional[str] = None,
		acting_admin_id: Optional[int] = None,
		only_from: Optional[Iterable[str]] = None,
	) -> List[str]:
		"""Update matching rows and return the ids that changed."""

	@abc.abstractmethod
	async def get_user(self, user_id: int) -> Optional[User]: ...


class InMemoryRequestStore(RequestStore):
	"""
	Store keeping requests and users in process memory.
	A single asyncio lock serialises every mutation so a request and its
	items are always updated as one unit.
	"""

	def __init__(self) -> None:
		self._requests: Dict[str, MediaRequest] = {}
		self._items: Dict[str, List[RequestItem]] = {}
		self._users: Dict[int, User] = {}
		self._item_ids = itertools.count(1)
		self._lock = asyncio.Lock()

	def add_user(self, user: User) -> User:
		self._users[user.id] = user
		return user

	async def get_user(self, user_id: int) -> Optional[User]:
		user = self._users.get(user_id)
		return copy.deepcopy(user) if user else None

	async def create_request(
		self,
		request_type: str,
		tmdb_id: int,
		title: str,
		requested_by: int,
		items: Sequence[ItemSpec],
		status: str = "pending",
	) -> RequestWithItems:
		if not items:
			raise ValueError("A request needs at least one item")

		seen = set()
		for entry in items:
			key = (entry.season, entry.episode)
			if entry.season is not None and entry.episode is not None:
				if key in seen:
					raise ValueError(f"Duplicate episode S{entry.season}E{entry.episode} in request")
				seen.add(key)

		async with self._lock:
			request_id = str(uuid.uuid4())
			request = MediaRequest(
				id=request_id,
				request_type=request_type,
				tmdb_id=tmdb_id,
				title=title,
				requested_by=requested_by,
				status=status,
			)
			self._requests[request_id] = request
			self._items[request_id] = [
				RequestItem(
					id=next(self._item_ids),
					request_id=request_id,
					provider=entry.provider,
					provider_id=entry.provider_id,
					season=entry.season,
					episode=entry.episode,
					status=status,
				)
				for entry in items
			]

			logger.info(
				"Created request",
				extra={"request_id": request_id, "title": title, "request_type": request_type},
			)
			return self._snapshot(request_id)

	async def get_request_with_items(self, request_id: str) -> Optional[RequestWithItems]:
		if request_id not in self._requests:
			return None
		return self._snapshot(request_id)

	async def list_requests_for_sync(self, limit: int = 100) -> List[RequestWithItems]:
		rows = [r for r in self._requests.values() if r.status in SYNCABLE_STATUSES]
		rows.sort(key=lambda r: r.created_at)
		return [self._snapshot(r.id) for r in rows[:limit]]

	async def list_recent_requests(self, limit: int = 20) -> List[RequestWithItems]:
		rows = sorted(self._requests.values(), key=lambda r: r.created_at, reverse=True)
		return [self._snapshot(r.id) for r in rows[:limit]]

	async def set_status(
		self,
		request_id: str,
		status: str,
		reason: Optional[str] = None,
		acting_admin_id: Optional[int] = None,
	) -> None:
		async with self._lock:
			request = self._requests.get(request_id)
			if request is None:
				return
			request.status = status
			request.status_reason = reason
			if acting_admin_id is not None:
				request.decided_by = acting_admin_id
			request.updated_at = _utcnow()
			for item in self._items.get(request_id, []):
				item.status = status

	async def set_items_provider_id(self, request_id: str, provider_id: Optional[int]) -> None:
		async with self._lock:
			for item in self._items.get(request_id, []):
				item.provider_id = provider_id

	async def apply_sync_result(
		self,
		request_id: str,
		request_status: str,
		item_updates: Dict[int, ItemUpdate],
	) -> None:
		async with self._lock:
			request = self._requests.get(request_id)
			if request is None:
				return
			for item in self._items.get(request_id, []):
				update = item_updates.get(item.id)
				if update is None:
					continue
				if update.status is not None:
					item.status = update.status
				if update.provider_id is not None:
					item.provider_id = update.provider_id
			if request.status != request_status:
				request.status = request_status
				request.updated_at = _utcnow()

	async def delete_request(self, request_id: str) -> bool:
		async with self._lock:
			if request_id not in self._requests:
				return False
			del self._requests[request_id]
			self._items.pop(request_id, None)
			logger.info("Deleted request", extra={"request_id": request_id})
			return True

	async def bulk_update_status(
		self,
		request_ids: Sequence[str],
		status: str,
		reason: Optional[str] = None,
		acting_admin_id: Optional[int] = None,
		only_from: Optional[Iterable[str]] = None,
	) -> List[str]:
		allowed = set(only_from) if only_from is not None else None
		updated: List[str] = []
		async with self._lock:
			for request_id in request_ids:
				request = self._requests.get(request_id)
				if request is None:
					continue
				if allowed is not None and request.status not in allowed:
					continue
				request.status = status
				request.status_reason = reason
				request.decided_by = acting_admin_id
				request.updated_at = _utcnow()
				for item in self._items.get(request_id, []):
					item.status = status
				updated.append(request_id)
		return updated

	def _snapshot(self, request_id: str) -> RequestWithItems:
		request = self._requests[request_id]
		user = self._users.get(request.requested_by)
		return RequestWithItems(
			request=copy.deepcopy(request),
			items=[copy.deepcopy(i) for i in self._items.get(request_id, [])],
			username=user.username if user else None,
		)


class RecentRequestsCache:
	"""Short-lived cache for "recent requests" listings."""

	def __init__(self, loader: Callable[[int], Any], ttl_seconds: float = 30.0) -> None:
		self._loader = loader
		self._ttl = ttl_seconds
		self._entries: Dict[int, tuple[float, Any]] = {}

	async def get(self, limit: int = 20) -> Any:
		now = time.monotonic()
		entry = self._entries.get(limit)
		if entry and entry[0] > now:
			return entry[1]
		value = await self._loader(limit)
		self._entries[limit] = (now + self._ttl, value)
		return value

	def invalidate(self) -> None:
		if self._entries:
			logger.debug("Invalidated recent requests cache")
		self._entries.clear()
