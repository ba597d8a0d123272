from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from anyio import to_thread

from .errors import DeliverySkipError

logger = logging.getLogger(__name__)

SEND_TIMEOUT = 10.0


@dataclass
class RenderedNotification:
	"""Everything a channel sender needs, rendered once per event."""

	event: str
	status: str
	title: str
	plain: str
	subject: str
	href: str
	discord_content: str
	discord_embed: Dict[str, Any]
	color: int
	webhook_payload: Dict[str, Any]
	discord_user_id: Optional[str] = None
	user_email: Optional[str] = None
	extra: Dict[str, Any] = field(default_factory=dict)


ChannelSender = Callable[[Dict[str, Any], RenderedNotification], Awaitable[None]]


async def _post_json(url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
	async with httpx.AsyncClient(timeout=SEND_TIMEOUT) as client:
		resp = await client.post(url, json=payload, headers=headers or {})
		resp.raise_for_status()


async def send_discord(config: Dict[str, Any], rendered: RenderedNotification) -> None:
	"""Send notification to Discord via webhook."""
	webhook_url = str(config.get("webhook_url") or "")
	if not webhook_url:
		raise DeliverySkipError("Discord webhook URL is not configured")

	payload: Dict[str, Any] = {
		"content": rendered.discord_content,
		"embeds": [rendered.discord_embed],
	}
	if config.get("username"):
		payload["username"] = config["username"]
	if rendered.discord_user_id:
		payload["allowed_mentions"] = {"users": [rendered.discord_user_id], "parse": []}

	await _post_json(webhook_url, payload)
	logger.info("Sent notification to Discord", extra={"event": rendered.event})


async def send_slack(config: Dict[str, Any], rendered: RenderedNotification) -> None:
	"""Send notification to Slack via webhook."""
	webhook_url = str(config.get("webhook_url") or "")
	if not webhook_url:
		raise DeliverySkipError("Slack webhook URL is not configured")

	payload = {
		"attachments": [
			{
				"color": f"#{rendered.color:06X}",
				"title": rendered.title,
				"title_link": rendered.href,
				"text": rendered.plain,
			}
		]
	}

	await _post_json(webhook_url, payload)
	logger.info("Sent notification to Slack", extra={"event": rendered.event})


async def send_telegram_message(
	bot_token: str,
	chat_id: str,
	text: str,
	parse_mode: Optional[str] = None,
) -> None:
	url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
	payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
	if parse_mode:
		payload["parse_mode"] = parse_mode
	await _post_json(url, payload)


async def send_telegram(config: Dict[str, Any], rendered: RenderedNotification) -> None:
	"""Send notification to a Telegram chat via bot API."""
	bot_token = str(config.get("bot_token") or "")
	chat_id = str(config.get("chat_id") or "")
	if not bot_token or not chat_id:
		raise DeliverySkipError("Telegram bot token or chat ID missing")

	await send_telegram_message(bot_token, chat_id, rendered.plain)
	logger.info("Sent notification to Telegram", extra={"event": rendered.event})


def _smtp_send(config: Dict[str, Any], message: EmailMessage) -> None:
	host = str(config.get("smtp_host") or "")
	port = int(config.get("smtp_port") or 587)
	security = str(config.get("security") or "starttls").lower()

	smtp_cls = smtplib.SMTP_SSL if security == "ssl" else smtplib.SMTP
	with smtp_cls(host, port, timeout=SEND_TIMEOUT) as smtp:
		if security == "starttls":
			smtp.starttls()
		if config.get("username"):
			smtp.login(str(config["username"]), str(config.get("password") or ""))
		smtp.send_message(message)


async def send_email(config: Dict[str, Any], rendered: RenderedNotification) -> None:
	"""Send notification by email; falls back to the requester's address."""
	if not config.get("smtp_host"):
		raise DeliverySkipError("SMTP host is not configured")

	configured_to = str(config.get("to") or "").strip()
	if not configured_to and config.get("user_email_required") and not rendered.user_email:
		raise DeliverySkipError("Endpoint requires user email, but user has no email")
	to = configured_to or str(rendered.user_email or "").strip()
	if not to:
		raise DeliverySkipError("No recipient email configured")

	message = EmailMessage()
	message["Subject"] = rendered.subject
	message["From"] = str(config.get("from") or config.get("username") or "mediarequests@localhost")
	message["To"] = to
	message.set_content(rendered.plain)

	# smtplib blocks, so it runs in a worker thread
	await to_thread.run_sync(_smtp_send, config, message)
	logger.info("Sent notification by email", extra={"event": rendered.event})


async def send_webhook(config: Dict[str, Any], rendered: RenderedNotification) -> None:
	"""POST the structured event payload to a generic HTTP receiver."""
	url = str(config.get("url") or "")
	if not url:
		raise DeliverySkipError("Webhook URL is not configured")

	headers: Dict[str, str] = {}
	if config.get("auth_header"):
		headers["Authorization"] = str(config["auth_header"])

	await _post_json(url, rendered.webhook_payload, headers=headers)
	logger.info("Sent generic webhook", extra={"event": rendered.event})


CHANNEL_SENDERS: Dict[str, ChannelSender] = {
	"discord": send_discord,
	"slack": send_slack,
	"telegram": send_telegram,
	"email": send_email,
	"webhook": send_webhook,
}
