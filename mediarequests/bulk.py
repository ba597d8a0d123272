from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from .config import BulkSettings
from .errors import BulkLimitError
from .metrics import inc_approval
from .models import BulkResult
from .notifications import NotificationDispatcher, RequestEvent
from .store import RecentRequestsCache, RequestStore
from .workflow import require_admin_user

logger = logging.getLogger(__name__)

BULK_APPROVED_NOTE = "bulk approved"


class BulkOperations:
	"""Batched approve/deny with admin attribution.

	Bulk approval only flips rows to ``submitted``; the provider submission
	happens on a later sync pass, ``deferred_submit_delay_seconds`` after the
	approval at the earliest.
	"""

	def __init__(
		self,
		store: RequestStore,
		settings: BulkSettings,
		notifier: Optional[NotificationDispatcher] = None,
		cache: Optional[RecentRequestsCache] = None,
		schedule_sync: Optional[Callable[[float], None]] = None,
	) -> None:
		self.store = store
		self.settings = settings
		self.notifier = notifier
		self.cache = cache
		self.schedule_sync = schedule_sync

	def _normalize_ids(self, ids: Sequence[str]) -> List[str]:
		unique = list(dict.fromkeys(str(i).strip() for i in ids if str(i).strip()))
		if not unique:
			raise BulkLimitError("No request ids given")
		if len(unique) > self.settings.max_ids:
			raise BulkLimitError(f"At most {self.settings.max_ids} requests can be updated at once")
		return unique

	async def bulk_approve(self, ids: Sequence[str], acting_user_id: Optional[int]) -> BulkResult:
		admin = await require_admin_user(self.store, acting_user_id)
		request_ids = self._normalize_ids(ids)

		updated = await self.store.bulk_update_status(
			request_ids,
			"submitted",
			reason=BULK_APPROVED_NOTE,
			acting_admin_id=admin.id,
			only_from=("pending",),
		)
		inc_approval("bulk_approve", "submitted")
		logger.info(
			f"Bulk approved {len(updated)} of {len(request_ids)} request(s)",
			extra={"admin_id": admin.id},
		)
		if self.cache is not None:
			self.cache.invalidate()
		delay = self.settings.deferred_submit_delay_seconds
		# A zero delay leaves submission to the next scheduled pass.
		if updated and delay > 0 and self.schedule_sync is not None:
			self.schedule_sync(delay)
		return BulkResult(updated=len(updated), total=len(request_ids))

	async def bulk_deny(
		self,
		ids: Sequence[str],
		acting_user_id: Optional[int],
		reason: Optional[str] = None,
	) -> BulkResult:
		admin = await require_admin_user(self.store, acting_user_id)
		request_ids = self._normalize_ids(ids)

		updated = await self.store.bulk_update_status(
			request_ids,
			"denied",
			reason=reason,
			acting_admin_id=admin.id,
			only_from=("pending",),
		)
		inc_approval("bulk_deny", "denied")
		logger.info(
			f"Bulk denied {len(updated)} of {len(request_ids)} request(s)",
			extra={"admin_id": admin.id},
		)
		if self.cache is not None:
			self.cache.invalidate()

		if self.notifier is not None:
			for request_id in updated:
				data = await self.store.get_request_with_items(request_id)
				if data is not None:
					await self.notifier.notify_request(RequestEvent.DENIED, data)
		return BulkResult(updated=len(updated), total=len(request_ids))

	async def run(
		self,
		action: str,
		ids: Sequence[str],
		acting_user_id: Optional[int],
		reason: Optional[str] = None,
	) -> BulkResult:
		if action == "approve":
			return await self.bulk_approve(ids, acting_user_id)
		if action == "deny":
			return await self.bulk_deny(ids, acting_user_id, reason)
		raise ValueError(f"Unsupported bulk action: {action}")
