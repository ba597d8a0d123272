from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from .config import NotificationSettings
from .errors import DeliverySkipError
from .metrics import inc_delivery
from .models import DeliveryRecord, DeliveryResult

logger = logging.getLogger(__name__)

MAX_BACKOFF_MS = 5000


@dataclass
class DeliveryDescriptor:
	endpoint_id: int
	endpoint_type: str
	event_type: str
	request_id: Optional[str] = None
	target_user_id: Optional[int] = None
	metadata: Dict[str, Any] = field(default_factory=dict)

	@property
	def idempotency_key(self) -> Tuple[int, str, Optional[str]]:
		return (self.endpoint_id, self.event_type, self.request_id)


class ReliableDelivery:
	"""
	Retry wrapper around a single channel delivery.

	Every attempt is recorded in a bounded in-memory log. A DeliverySkipError
	ends the delivery as skipped without retrying; any other exception is
	retried with exponential backoff. Successful deliveries are remembered by
	idempotency key so a repeated event does not send twice within the
	dedup window.
	"""

	def __init__(
		self,
		settings: NotificationSettings,
		sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
		history_size: int = 500,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.max_retries = max(0, settings.max_retries)
		self.base_backoff_ms = max(100, settings.retry_backoff_ms)
		self.dedup_window = settings.dedup_window_seconds
		self._sleep = sleep
		self._clock = clock
		self._history: Deque[DeliveryRecord] = deque(maxlen=history_size)
		self._delivered: Dict[Tuple[int, str, Optional[str]], float] = {}

	def backoff_seconds(self, attempt: int) -> float:
		return min(MAX_BACKOFF_MS, self.base_backoff_ms * (2 ** (attempt - 1))) / 1000.0

	def is_duplicate(self, descriptor: DeliveryDescriptor) -> bool:
		sent_at = self._delivered.get(descriptor.idempotency_key)
		if sent_at is None:
			return False
		return self._clock() - sent_at < self.dedup_window

	async def deliver(
		self,
		descriptor: DeliveryDescriptor,
		send: Callable[[], Awaitable[None]],
	) -> DeliveryResult:
		if self.is_duplicate(descriptor):
			logger.info(
				"Skipping duplicate notification delivery",
				extra={"endpoint_id": descriptor.endpoint_id, "event": descriptor.event_type},
			)
			inc_delivery(descriptor.endpoint_type, "duplicate")
			return DeliveryResult(status="duplicate", attempts=0, retries=0)

		total_attempts = self.max_retries + 1
		last_error: Optional[str] = None

		for attempt in range(1, total_attempts + 1):
			started = time.monotonic()
			try:
				await send()
			except DeliverySkipError as exc:
				last_error = str(exc)
				self._record(descriptor, "skipped", attempt, started, last_error)
				logger.info(
					f"Notification delivery skipped: {last_error}",
					extra={"endpoint_id": descriptor.endpoint_id, "event": descriptor.event_type},
				)
				inc_delivery(descriptor.endpoint_type, "skipped")
				return DeliveryResult(status="skipped", attempts=attempt, retries=attempt - 1, error=last_error)
			except Exception as exc:  # noqa: BLE001
				last_error = str(exc) or exc.__class__.__name__
				self._record(descriptor, "failure", attempt, started, last_error)
				if attempt >= total_attempts:
					logger.error(
						f"Notification delivery failed endpoint={descriptor.endpoint_id} "
						f"type={descriptor.endpoint_type} event={descriptor.event_type}",
						extra={"error": last_error, "attempts": attempt},
					)
					inc_delivery(descriptor.endpoint_type, "failure")
					return DeliveryResult(status="failure", attempts=attempt, retries=attempt - 1, error=last_error)
				await self._sleep(self.backoff_seconds(attempt))
				continue

			self._record(descriptor, "success", attempt, started, None)
			self._remember(descriptor)
			inc_delivery(descriptor.endpoint_type, "success")
			return DeliveryResult(status="success", attempts=attempt, retries=attempt - 1)

		return DeliveryResult(status="failure", attempts=total_attempts, retries=self.max_retries, error=last_error)

	def _remember(self, descriptor: DeliveryDescriptor) -> None:
		now = self._clock()
		expired = [key for key, sent_at in self._delivered.items() if now - sent_at >= self.dedup_window]
		for key in expired:
			del self._delivered[key]
		if self.dedup_window > 0:
			self._delivered[descriptor.idempotency_key] = now

	def _record(
		self,
		descriptor: DeliveryDescriptor,
		status: str,
		attempt: int,
		started: float,
		error: Optional[str],
	) -> None:
		self._history.append(
			DeliveryRecord(
				timestamp=time.time(),
				endpoint_id=descriptor.endpoint_id,
				endpoint_type=descriptor.endpoint_type,
				event_type=descriptor.event_type,
				status=status,
				attempt_number=attempt,
				duration_ms=int((time.monotonic() - started) * 1000),
				target_user_id=descriptor.target_user_id,
				error_message=error,
			)
		)

	def get_history(self, limit: int = 50) -> List[DeliveryRecord]:
		"""Return the most recent delivery attempts, newest last."""

		if limit <= 0:
			return []
		items = list(self._history)
		return items[-limit:]
