from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


DEFAULT_CONFIG_PATH = Path("config.yaml")

DEFAULT_SYNC_INTERVAL_MINUTES = 5.0
MIN_SYNC_INTERVAL_MINUTES = 1.0

ENDPOINT_TYPES = ("discord", "slack", "telegram", "email", "webhook")


@dataclass
class ArrInstanceConfig:
	name: str
	type: str  # "radarr" or "sonarr"
	url: str   # Base URL pointing at the *arr API root (e.g. http://host:8989/api/v3)
	api_key: str
	quality_profile_id: Optional[int] = None
	root_folder: Optional[str] = None
	tags: List[int] = field(default_factory=list)
	# radarr only
	minimum_availability: str = "released"
	# sonarr only
	language_profile_id: Optional[int] = None
	series_type: str = "standard"
	season_folder: bool = True


@dataclass
class MetadataConfig:
	api_key: str = ""
	base_url: str = "https://api.themoviedb.org/3"
	image_base_url: str = "https://image.tmdb.org/t/p/w500"


@dataclass
class SyncSettings:
	enabled: bool = True
	interval_minutes: float = DEFAULT_SYNC_INTERVAL_MINUTES
	batch_limit: int = 100
	concurrency: int = 4
	timeout_seconds: float = 10.0
	queue_page_size: int = 200


@dataclass
class BulkSettings:
	max_ids: int = 100
	deferred_submit_delay_seconds: float = 30.0


@dataclass
class NotificationEndpointConfig:
	id: int
	name: str
	type: str
	enabled: bool = True
	owner_user_id: Optional[int] = None  # None means global
	types: int = 0
	events: List[str] = field(default_factory=list)
	config: Dict[str, Any] = field(default_factory=dict)

	@property
	def is_global(self) -> bool:
		return self.owner_user_id is None


@dataclass
class NotificationSettings:
	enabled: bool = True
	app_base_url: Optional[str] = None
	max_retries: int = 1
	retry_backoff_ms: int = 600
	dedup_window_seconds: float = 300.0
	telegram_bot_token: Optional[str] = None
	endpoints: List[NotificationEndpointConfig] = field(default_factory=list)


@dataclass
class AppConfig:
	movie_manager: Optional[ArrInstanceConfig] = None
	episode_manager: Optional[ArrInstanceConfig] = None
	metadata: MetadataConfig = field(default_factory=MetadataConfig)
	sync: SyncSettings = field(default_factory=SyncSettings)
	bulk: BulkSettings = field(default_factory=BulkSettings)
	notifications: NotificationSettings = field(default_factory=NotificationSettings)
	admin_api_key: Optional[str] = None


def _parse_interval(value: Any) -> float:
	"""Fall back to the default for missing or non-positive intervals."""
	if value is None:
		return DEFAULT_SYNC_INTERVAL_MINUTES
	try:
		parsed = float(value)
	except (TypeError, ValueError):
		return DEFAULT_SYNC_INTERVAL_MINUTES
	if parsed <= 0:
		return DEFAULT_SYNC_INTERVAL_MINUTES
	return max(parsed, MIN_SYNC_INTERVAL_MINUTES)


def _optional_int(value: Any) -> Optional[int]:
	if value is None or value == "":
		return None
	return int(value)


def _parse_arr(raw: Optional[dict], default_type: str) -> Optional[ArrInstanceConfig]:
	if not raw:
		return None
	for key in ("url", "api_key"):
		if not raw.get(key):
			raise ValueError(f"{default_type} instance is missing '{key}'")
	return ArrInstanceConfig(
		name=str(raw.get("name", default_type)),
		type=str(raw.get("type", default_type)),
		url=str(raw["url"]),
		api_key=str(raw["api_key"]),
		quality_profile_id=_optional_int(raw.get("quality_profile_id")),
		root_folder=raw.get("root_folder"),
		tags=[int(t) for t in raw.get("tags", []) or []],
		minimum_availability=str(raw.get("minimum_availability", "released")),
		language_profile_id=_optional_int(raw.get("language_profile_id")),
		series_type=str(raw.get("series_type", "standard")),
		season_folder=bool(raw.get("season_folder", True)),
	)


def _parse_endpoint(raw: dict) -> NotificationEndpointConfig:
	endpoint_type = str(raw.get("type", "")).lower()
	if endpoint_type not in ENDPOINT_TYPES:
		raise ValueError(f"Unsupported notification endpoint type: {endpoint_type!r}")
	return NotificationEndpointConfig(
		id=int(raw["id"]),
		name=str(raw.get("name", f"{endpoint_type}-{raw['id']}")),
		type=endpoint_type,
		enabled=bool(raw.get("enabled", True)),
		owner_user_id=_optional_int(raw.get("owner_user_id")),
		types=int(raw.get("types", 0) or 0),
		events=[str(e) for e in raw.get("events", []) or []],
		config=dict(raw.get("config", {}) or {}),
	)


def parse_config(raw: dict) -> AppConfig:
	metadata_raw = raw.get("metadata", {}) or {}
	sync_raw = raw.get("sync", {}) or {}
	bulk_raw = raw.get("bulk", {}) or {}
	notif_raw = raw.get("notifications", {}) or {}

	metadata = MetadataConfig(
		api_key=str(metadata_raw.get("api_key", "")),
		base_url=str(metadata_raw.get("base_url", MetadataConfig.base_url)),
		image_base_url=str(metadata_raw.get("image_base_url", MetadataConfig.image_base_url)),
	)

	sync = SyncSettings(
		enabled=bool(sync_raw.get("enabled", True)),
		interval_minutes=_parse_interval(sync_raw.get("interval_minutes")),
		batch_limit=int(sync_raw.get("batch_limit", 100)),
		concurrency=max(1, int(sync_raw.get("concurrency", 4))),
		timeout_seconds=float(sync_raw.get("timeout_seconds", 10.0)),
		queue_page_size=int(sync_raw.get("queue_page_size", 200)),
	)

	bulk = BulkSettings(
		max_ids=int(bulk_raw.get("max_ids", 100)),
		deferred_submit_delay_seconds=float(bulk_raw.get("deferred_submit_delay_seconds", 30.0)),
	)

	endpoints: List[NotificationEndpointConfig] = []
	seen_ids = set()
	for endpoint_raw in notif_raw.get("endpoints", []) or []:
		endpoint = _parse_endpoint(endpoint_raw)
		if endpoint.id in seen_ids:
			raise ValueError(f"Duplicate notification endpoint id: {endpoint.id}")
		seen_ids.add(endpoint.id)
		endpoints.append(endpoint)

	notifications = NotificationSettings(
		enabled=bool(notif_raw.get("enabled", True)),
		app_base_url=notif_raw.get("app_base_url"),
		max_retries=max(0, int(notif_raw.get("max_retries", 1))),
		retry_backoff_ms=max(100, int(notif_raw.get("retry_backoff_ms", 600))),
		dedup_window_seconds=float(notif_raw.get("dedup_window_seconds", 300.0)),
		telegram_bot_token=notif_raw.get("telegram_bot_token"),
		endpoints=endpoints,
	)

	if sync.batch_limit <= 0:
		raise ValueError("sync.batch_limit must be positive")
	if bulk.max_ids <= 0:
		raise ValueError("bulk.max_ids must be positive")

	return AppConfig(
		movie_manager=_parse_arr(raw.get("movie_manager"), "radarr"),
		episode_manager=_parse_arr(raw.get("episode_manager"), "sonarr"),
		metadata=metadata,
		sync=sync,
		bulk=bulk,
		notifications=notifications,
		admin_api_key=raw.get("admin_api_key"),
	)


def load_config(path: Path | str) -> AppConfig:
	path = Path(path)
	with path.open("r", encoding="utf-8") as f:
		raw = yaml.safe_load(f) or {}
	return parse_config(raw)
