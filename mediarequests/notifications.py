from __future__ import annotations

import asyncio
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .config import NotificationEndpointConfig, NotificationSettings
from .errors import DeliverySkipError
from .messaging import CHANNEL_SENDERS, ChannelSender, RenderedNotification, send_telegram_message
from .metadata import MetadataClient
from .models import DeliveryResult
from .reliability import DeliveryDescriptor, ReliableDelivery
from .store import RequestStore, RequestWithItems, User

logger = logging.getLogger(__name__)


class RequestEvent(str, Enum):
	PENDING = "request_pending"
	SUBMITTED = "request_submitted"
	DENIED = "request_denied"
	FAILED = "request_failed"
	ALREADY_EXISTS = "request_already_exists"
	PARTIALLY_AVAILABLE = "request_partially_available"
	DOWNLOADING = "request_downloading"
	AVAILABLE = "request_available"
	REMOVED = "request_removed"


# Endpoint "types" bitmask values.
BIT_PENDING = 2
BIT_SUBMITTED = 4
BIT_AVAILABLE = 8
BIT_FAILED = 16
BIT_DENIED = 64
BIT_PARTIALLY_AVAILABLE = 1024
BIT_DOWNLOADING = 2048

EVENT_TYPE_BITS: Dict[RequestEvent, int] = {
	RequestEvent.PENDING: BIT_PENDING,
	RequestEvent.SUBMITTED: BIT_SUBMITTED,
	RequestEvent.AVAILABLE: BIT_AVAILABLE,
	RequestEvent.DENIED: BIT_DENIED,
	RequestEvent.FAILED: BIT_FAILED,
	RequestEvent.ALREADY_EXISTS: BIT_PENDING,
	RequestEvent.PARTIALLY_AVAILABLE: BIT_PARTIALLY_AVAILABLE,
	RequestEvent.DOWNLOADING: BIT_DOWNLOADING,
	RequestEvent.REMOVED: BIT_FAILED,
}

BOT_DM_EVENTS = frozenset({
	RequestEvent.AVAILABLE,
	RequestEvent.DENIED,
	RequestEvent.DOWNLOADING,
	RequestEvent.PARTIALLY_AVAILABLE,
	RequestEvent.FAILED,
})

HUMAN_EVENT: Dict[RequestEvent, str] = {
	RequestEvent.PENDING: "Pending approval",
	RequestEvent.SUBMITTED: "Approved / submitted",
	RequestEvent.DENIED: "Denied",
	RequestEvent.FAILED: "Failed",
	RequestEvent.ALREADY_EXISTS: "Already exists",
	RequestEvent.PARTIALLY_AVAILABLE: "Partially available",
	RequestEvent.DOWNLOADING: "Downloading",
	RequestEvent.AVAILABLE: "Available",
	RequestEvent.REMOVED: "Removed",
}

ORANGE = 15105570
PURPLE = 10181046
GREEN = 3066993
RED = 15158332
GREY = 9807270

EVENT_COLORS: Dict[RequestEvent, int] = {
	RequestEvent.PENDING: ORANGE,
	RequestEvent.SUBMITTED: PURPLE,
	RequestEvent.PARTIALLY_AVAILABLE: PURPLE,
	RequestEvent.DOWNLOADING: ORANGE,
	RequestEvent.AVAILABLE: GREEN,
	RequestEvent.DENIED: RED,
	RequestEvent.FAILED: RED,
	RequestEvent.REMOVED: GREY,
	RequestEvent.ALREADY_EXISTS: GREY,
}

BOT_DM_ICONS: Dict[RequestEvent, str] = {
	RequestEvent.AVAILABLE: "✅",
	RequestEvent.DENIED: "❌",
	RequestEvent.DOWNLOADING: "⬇️",
	RequestEvent.PARTIALLY_AVAILABLE: "📺",
}

PushSender = Callable[[int, Dict[str, Any]], Awaitable[None]]


def event_for_status(status: str) -> Optional[RequestEvent]:
	try:
		return RequestEvent(f"request_{status}")
	except ValueError:
		return None


@dataclass
class NotificationContext:
	request_id: str
	request_type: str
	tmdb_id: int
	title: str
	username: str
	user_id: Optional[int] = None
	image_url: Optional[str] = None
	rating: Optional[float] = None
	year: Optional[int] = None
	overview: Optional[str] = None
	series_id: Optional[int] = None
	tvdb_id: Optional[int] = None


@dataclass
class DispatchReport:
	event: str
	deliveries: Dict[int, DeliveryResult] = field(default_factory=dict)
	push_sent: bool = False
	dm_sent: bool = False


def context_from_request(data: RequestWithItems) -> NotificationContext:
	series_id = None
	if data.request.request_type == "episode":
		series_id = next((i.provider_id for i in data.items if i.provider_id), None)
	return NotificationContext(
		request_id=data.request.id,
		request_type=data.request.request_type,
		tmdb_id=data.request.tmdb_id,
		title=data.request.title,
		username=data.username or "Unknown",
		user_id=data.request.requested_by,
		series_id=series_id,
	)


def should_send(endpoint: NotificationEndpointConfig, event: RequestEvent) -> bool:
	"""An endpoint with neither a type mask nor an event list receives everything."""
	if not endpoint.enabled:
		return False
	mask = EVENT_TYPE_BITS.get(event, 0)
	if endpoint.types > 0:
		if mask == 0:
			return True
		return (endpoint.types & mask) == mask
	if not endpoint.events:
		return True
	return event.value in endpoint.events


def dedupe_endpoints(endpoints: Sequence[NotificationEndpointConfig]) -> List[NotificationEndpointConfig]:
	seen = set()
	out: List[NotificationEndpointConfig] = []
	for endpoint in endpoints:
		if endpoint.id in seen:
			continue
		seen.add(endpoint.id)
		out.append(endpoint)
	return out


def clamp_text(value: Optional[str], limit: int = 2000) -> str:
	if not value:
		return ""
	if len(value) <= limit:
		return value
	return f"{value[:limit - 3]}..."


def build_discord_embed(event: RequestEvent, ctx: NotificationContext, href: str) -> Dict[str, Any]:
	status = HUMAN_EVENT[event]
	fields = [
		{"name": "Requested By", "value": ctx.username, "inline": True},
		{"name": "Request Status", "value": status, "inline": True},
	]
	if ctx.year:
		fields.append({"name": "Year", "value": str(ctx.year), "inline": True})
	if ctx.rating:
		fields.append({"name": "Rating", "value": f"⭐ {ctx.rating:.1f}/10", "inline": True})

	embed: Dict[str, Any] = {
		"title": ctx.title or status,
		"description": clamp_text(ctx.overview),
		"url": href,
		"color": EVENT_COLORS[event],
		"timestamp": datetime.now(timezone.utc).isoformat(),
		"author": {"name": status},
		"fields": fields,
	}
	if ctx.image_url:
		embed["thumbnail"] = {"url": ctx.image_url}
	return embed


def build_webhook_payload(event: RequestEvent, ctx: NotificationContext, title: str, href: str) -> Dict[str, Any]:
	return {
		"type": "mediarequests.request_event",
		"event": event.value,
		"status": HUMAN_EVENT[event],
		"title": title,
		"tmdb_id": ctx.tmdb_id,
		"request_type": ctx.request_type,
		"request_id": ctx.request_id,
		"requested_by": {"username": ctx.username, "user_id": ctx.user_id},
		"image_url": ctx.image_url,
		"rating": ctx.rating,
		"year": ctx.year,
		"overview": ctx.overview,
		"series_id": ctx.series_id,
		"tvdb_id": ctx.tvdb_id,
		"url": href,
		"sent_at": datetime.now(timezone.utc).isoformat(),
	}


def render_plain(event: RequestEvent, ctx: NotificationContext, title: str, href: str) -> str:
	meta = []
	if ctx.year:
		meta.append(str(ctx.year))
	if ctx.rating:
		meta.append(f"⭐ {ctx.rating:.1f}/10")
	lines = [
		f"{HUMAN_EVENT[event]}: {title}",
		" • ".join(meta),
		f"Overview: {ctx.overview}" if ctx.overview else "",
		f"![{title}]({ctx.image_url})" if ctx.image_url else "",
		f"Requested by: {ctx.username}",
		href,
	]
	return "\n".join(line for line in lines if line)


class NotificationDispatcher:
	"""
	Fan a request lifecycle event out to three independent subscriber groups:
	configured channel endpoints, web push, and the requester's bot DM.

	notify() never raises; failures are logged and reflected in the report.
	"""

	def __init__(
		self,
		settings: NotificationSettings,
		store: RequestStore,
		metadata: Optional[MetadataClient] = None,
		delivery: Optional[ReliableDelivery] = None,
		push_sender: Optional[PushSender] = None,
		senders: Optional[Dict[str, ChannelSender]] = None,
	) -> None:
		self.settings = settings
		self.store = store
		self.metadata = metadata
		self.delivery = delivery or ReliableDelivery(settings)
		self.push_sender = push_sender
		self.senders = senders if senders is not None else dict(CHANNEL_SENDERS)

	def request_href(self, ctx: NotificationContext) -> str:
		path = f"/movie/{ctx.tmdb_id}" if ctx.request_type == "movie" else f"/tv/{ctx.tmdb_id}"
		base = (self.settings.app_base_url or "").strip().rstrip("/")
		return f"{base}{path}" if base else path

	async def notify(self, event: RequestEvent, ctx: NotificationContext) -> Optional[DispatchReport]:
		if not self.settings.enabled:
			return None
		try:
			return await self._dispatch(event, ctx)
		except Exception:  # noqa: BLE001
			logger.exception(
				"Notification dispatch failed",
				extra={"event": event.value, "request_id": ctx.request_id},
			)
			return None

	async def notify_request(self, event: RequestEvent, data: RequestWithItems) -> Optional[DispatchReport]:
		return await self.notify(event, context_from_request(data))

	async def enrich(self, ctx: NotificationContext) -> None:
		"""Fill missing artwork/overview/year/rating; failures are logged only."""
		if self.metadata is None:
			return
		if ctx.image_url and ctx.overview and ctx.year and ctx.rating:
			return
		try:
			if ctx.request_type == "movie":
				details = await self.metadata.get_movie(ctx.tmdb_id)
				date = details.get("release_date")
			else:
				details = await self.metadata.get_tv(ctx.tmdb_id)
				date = details.get("first_air_date")
		except Exception as exc:  # noqa: BLE001
			logger.warning(
				f"Failed to enrich notification metadata: {exc}",
				extra={"tmdb_id": ctx.tmdb_id},
			)
			return

		if not ctx.image_url:
			ctx.image_url = self.metadata.image_url(details.get("poster_path"))
		if not ctx.overview and details.get("overview"):
			ctx.overview = details["overview"]
		if not ctx.year and date and str(date)[:4].isdigit():
			ctx.year = int(str(date)[:4])
		if not ctx.rating and isinstance(details.get("vote_average"), (int, float)):
			ctx.rating = float(details["vote_average"])

	def select_endpoints(self, event: RequestEvent, user_id: Optional[int]) -> List[NotificationEndpointConfig]:
		global_endpoints = [e for e in self.settings.endpoints if e.is_global]
		user_endpoints = (
			[e for e in self.settings.endpoints if e.owner_user_id == user_id]
			if user_id is not None
			else []
		)
		return [e for e in dedupe_endpoints(global_endpoints + user_endpoints) if should_send(e, event)]

	def render(self, event: RequestEvent, ctx: NotificationContext, user: Optional[User]) -> RenderedNotification:
		href = self.request_href(ctx)
		title = ctx.title or f"{ctx.request_type.upper()} {ctx.tmdb_id}"
		status = HUMAN_EVENT[event]
		discord_user_id = user.discord_user_id if user else None
		if discord_user_id:
			discord_content = f"<@{discord_user_id}> {status}: {title} - {href}"
		else:
			discord_content = f"{status}: {title} - {href}"

		return RenderedNotification(
			event=event.value,
			status=status,
			title=title,
			plain=render_plain(event, ctx, title, href),
			subject=f"[MediaRequests] {status}: {title}",
			href=href,
			discord_content=discord_content,
			discord_embed=build_discord_embed(event, ctx, href),
			color=EVENT_COLORS[event],
			webhook_payload=build_webhook_payload(event, ctx, title, href),
			discord_user_id=discord_user_id,
			user_email=user.email if user else None,
		)

	async def _dispatch(self, event: RequestEvent, ctx: NotificationContext) -> DispatchReport:
		await self.enrich(ctx)

		user = await self.store.get_user(ctx.user_id) if ctx.user_id is not None else None
		rendered = self.render(event, ctx, user)
		report = DispatchReport(event=event.value)

		subscribers = (
			self._deliver_to_endpoints(event, ctx, rendered, report),
			self._send_web_push(event, ctx, rendered, report),
			self._send_bot_dm(event, ctx, rendered, user, report),
		)
		results = await asyncio.gather(*subscribers, return_exceptions=True)
		for result in results:
			if isinstance(result, Exception):
				logger.error(
					f"Notification subscriber failed: {result}",
					extra={"event": event.value, "request_id": ctx.request_id},
				)
		return report

	async def _deliver_to_endpoints(
		self,
		event: RequestEvent,
		ctx: NotificationContext,
		rendered: RenderedNotification,
		report: DispatchReport,
	) -> None:
		endpoints = self.select_endpoints(event, ctx.user_id)
		if not endpoints:
			return

		async def deliver(endpoint: NotificationEndpointConfig) -> None:
			sender = self.senders.get(endpoint.type)

			async def send() -> None:
				if sender is None:
					raise DeliverySkipError(f"Unsupported endpoint type for request events: {endpoint.type}")
				await sender(endpoint.config, rendered)

			descriptor = DeliveryDescriptor(
				endpoint_id=endpoint.id,
				endpoint_type=endpoint.type,
				event_type=event.value,
				request_id=ctx.request_id,
				target_user_id=ctx.user_id,
				metadata={"tmdb_id": ctx.tmdb_id, "request_type": ctx.request_type},
			)
			report.deliveries[endpoint.id] = await self.delivery.deliver(descriptor, send)

		results = await asyncio.gather(*(deliver(e) for e in endpoints), return_exceptions=True)
		for endpoint, result in zip(endpoints, results):
			if isinstance(result, Exception):
				logger.error(
					f"Delivery wrapper raised for endpoint {endpoint.id}: {result}",
					extra={"event": event.value},
				)

	async def _send_web_push(
		self,
		event: RequestEvent,
		ctx: NotificationContext,
		rendered: RenderedNotification,
		report: DispatchReport,
	) -> None:
		if self.push_sender is None or ctx.user_id is None:
			return
		try:
			await self.push_sender(
				ctx.user_id,
				{
					"title": rendered.subject,
					"body": f"{rendered.status} - {rendered.title}",
					"icon": ctx.image_url,
					"url": rendered.href,
					"tag": f"request-{ctx.request_id}",
				},
			)
			report.push_sent = True
		except Exception as exc:  # noqa: BLE001
			logger.error(
				f"Web push notification failed for user {ctx.user_id}: {exc}",
				extra={"event": event.value},
			)

	async def _send_bot_dm(
		self,
		event: RequestEvent,
		ctx: NotificationContext,
		rendered: RenderedNotification,
		user: Optional[User],
		report: DispatchReport,
	) -> None:
		if event not in BOT_DM_EVENTS:
			return
		bot_token = self.settings.telegram_bot_token
		if not bot_token or user is None or not user.telegram_chat_id:
			return

		icon = BOT_DM_ICONS.get(event, "⚠️")
		link = f'\n<a href="{html.escape(rendered.href)}">View request →</a>' if rendered.href else ""
		text = f"{icon} <b>{html.escape(rendered.title)}</b>\n<i>{html.escape(rendered.status)}</i>{link}"
		try:
			await send_telegram_message(bot_token, user.telegram_chat_id, text, parse_mode="HTML")
			report.dm_sent = True
		except Exception as exc:  # noqa: BLE001
			logger.warning(
				f"Bot DM failed: {exc}",
				extra={"user_id": ctx.user_id, "event": event.value},
			)
