from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .arr_client import ArrClient, RadarrClient, SonarrClient, check_arr_instance
from .bulk import BulkOperations
from .config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from .errors import (
	ApprovalFailedError,
	InvalidTransitionError,
	PermissionDeniedError,
	PreconditionError,
	ProviderNotConfiguredError,
	RequestNotFoundError,
	RequestWorkflowError,
)
from .metadata import MetadataClient
from .metrics import update_arr_metrics
from .models import (
	ActionResult,
	ApprovePayload,
	ArrStatus,
	BulkActionPayload,
	BulkResult,
	DeliveryRecord,
	DenyPayload,
	MergedRequestView,
	SyncResponse,
)
from .notifications import NotificationDispatcher, PushSender
from .reliability import ReliableDelivery
from .store import InMemoryRequestStore, RecentRequestsCache, RequestStore
from .sync import RequestSyncEngine, RequestSyncJob, format_sync_message
from .views import merge_request_rows
from .workflow import ApprovalWorkflow

logger = logging.getLogger(__name__)

CONFIG_ENV = "MEDIAREQUESTS_CONFIG"


def configure_logging() -> None:
	logging.basicConfig(
		level=logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s %(message)s",
	)


def load_app_config() -> AppConfig:
	config_path = Path(os.environ.get(CONFIG_ENV, DEFAULT_CONFIG_PATH))
	if not config_path.exists():
		logger.warning(f"Configuration file not found at {config_path}, using defaults")
		return AppConfig()
	return load_config(config_path)


@dataclass
class Services:
	config: AppConfig
	store: RequestStore
	radarr: Optional[RadarrClient]
	sonarr: Optional[SonarrClient]
	metadata: MetadataClient
	cache: RecentRequestsCache
	delivery: ReliableDelivery
	notifier: NotificationDispatcher
	workflow: ApprovalWorkflow
	engine: RequestSyncEngine
	job: RequestSyncJob
	bulk: BulkOperations


def build_services(
	config: AppConfig,
	store: Optional[RequestStore] = None,
	push_sender: Optional[PushSender] = None,
) -> Services:
	store = store or InMemoryRequestStore()
	timeout = config.sync.timeout_seconds
	radarr = RadarrClient(config.movie_manager, timeout=timeout) if config.movie_manager else None
	sonarr = SonarrClient(config.episode_manager, timeout=timeout) if config.episode_manager else None
	metadata = MetadataClient(config.metadata, timeout=timeout)
	cache = RecentRequestsCache(store.list_recent_requests)

	delivery = ReliableDelivery(config.notifications)
	notifier = NotificationDispatcher(
		config.notifications,
		store,
		metadata=metadata,
		delivery=delivery,
		push_sender=push_sender,
	)
	workflow = ApprovalWorkflow(store, radarr, sonarr, metadata=metadata, notifier=notifier, cache=cache)
	engine = RequestSyncEngine(
		store,
		radarr,
		sonarr,
		config.sync,
		notifier=notifier,
		cache=cache,
		metadata=metadata,
		deferred_submitter=workflow.submit_deferred,
		deferred_delay_seconds=config.bulk.deferred_submit_delay_seconds,
	)
	job = RequestSyncJob(engine, config.sync.interval_minutes, enabled=config.sync.enabled)
	bulk = BulkOperations(store, config.bulk, notifier=notifier, cache=cache, schedule_sync=job.trigger_after)

	return Services(
		config=config,
		store=store,
		radarr=radarr,
		sonarr=sonarr,
		metadata=metadata,
		cache=cache,
		delivery=delivery,
		notifier=notifier,
		workflow=workflow,
		engine=engine,
		job=job,
		bulk=bulk,
	)


def http_error(exc: RequestWorkflowError) -> HTTPException:
	"""Map a workflow error onto the HTTP status the admin UI expects."""

	if isinstance(exc, RequestNotFoundError):
		return HTTPException(status_code=404, detail=str(exc))
	if isinstance(exc, PermissionDeniedError):
		return HTTPException(status_code=403, detail=str(exc))
	if isinstance(exc, InvalidTransitionError):
		return HTTPException(status_code=409, detail=str(exc))
	if isinstance(exc, ProviderNotConfiguredError):
		return HTTPException(status_code=503, detail=str(exc))
	if isinstance(exc, PreconditionError):
		return HTTPException(status_code=400, detail=str(exc))
	if isinstance(exc, ApprovalFailedError):
		return HTTPException(status_code=502, detail=str(exc))
	return HTTPException(status_code=500, detail=str(exc))


def create_app(
	config: Optional[AppConfig] = None,
	store: Optional[RequestStore] = None,
	push_sender: Optional[PushSender] = None,
) -> FastAPI:
	configure_logging()

	if config is None:
		config = load_app_config()

	services = build_services(config, store=store, push_sender=push_sender)

	@asynccontextmanager
	async def lifespan(_: FastAPI) -> AsyncIterator[None]:
		services.job.start()
		try:
			yield
		finally:
			await services.job.stop()

	app = FastAPI(title="Media Request Lifecycle Service", lifespan=lifespan)
	app.state.services = services

	async def require_admin(request: Request) -> None:
		"""Optional admin API key check for management endpoints.

		If admin_api_key is set, require header X-API-Key to match it.
		"""

		key = config.admin_api_key
		if not key:
			return
		req_key = request.headers.get("x-api-key")
		if req_key != key:
			raise HTTPException(status_code=401, detail="Missing or invalid X-API-Key")

	async def acting_user(request: Request) -> Optional[int]:
		raw = request.headers.get("x-user-id")
		if not raw:
			return None
		try:
			return int(raw)
		except ValueError as exc:
			raise HTTPException(status_code=400, detail="X-User-Id must be an integer") from exc

	@app.get("/health")
	async def health() -> dict[str, str]:
		return {"status": "ok"}

	@app.get("/metrics")
	async def metrics_endpoint() -> Response:
		"""Expose Prometheus metrics for scraping."""

		data = generate_latest()
		return Response(content=data, media_type=CONTENT_TYPE_LATEST)

	@app.get("/arr", response_model=list[ArrStatus])
	async def arr_status(_: None = Depends(require_admin)) -> list[ArrStatus]:
		"""Return connectivity status for the configured movie and episode managers."""

		clients: List[ArrClient] = [c for c in (services.radarr, services.sonarr) if c is not None]
		if not clients:
			return []

		results = await asyncio.gather(*(check_arr_instance(client) for client in clients))
		out: list[ArrStatus] = []
		for client, state in zip(clients, results):
			inst = client.config
			update_arr_metrics(inst.name, inst.type, state.reachable)
			out.append(
				ArrStatus(
					name=inst.name,
					type=inst.type,
					url=inst.url,
					reachable=state.reachable,
					version=state.version,
					error=state.error,
				),
			)
		return out

	@app.get("/requests/recent", response_model=list[MergedRequestView])
	async def recent_requests(limit: int = 20, _: None = Depends(require_admin)) -> list[MergedRequestView]:
		rows = await services.cache.get(max(1, min(limit, 100)))
		views = [merge_request_rows([row]) for row in rows]
		return [v for v in views if v is not None]

	@app.get("/requests/{request_id}", response_model=MergedRequestView)
	async def get_request(
		request_id: str,
		ids: Optional[str] = None,
		_: None = Depends(require_admin),
	) -> MergedRequestView:
		"""Merged view of a request plus any related ids (same title, other seasons)."""

		wanted = [request_id] + [i.strip() for i in (ids or "").split(",") if i.strip()]
		rows = []
		for rid in dict.fromkeys(wanted):
			row = await services.store.get_request_with_items(rid)
			if row is not None:
				rows.append(row)
		view = merge_request_rows(rows)
		if view is None:
			raise HTTPException(status_code=404, detail=f"Request not found: {request_id}")
		return view

	@app.post("/requests/{request_id}/approve", response_model=ActionResult)
	async def approve_request(
		request_id: str,
		payload: Optional[ApprovePayload] = None,
		user_id: Optional[int] = Depends(acting_user),
		_: None = Depends(require_admin),
	) -> ActionResult:
		quality = payload.quality_profile_id if payload else None
		try:
			data = await services.workflow.approve(request_id, user_id, quality_profile_id=quality)
		except RequestWorkflowError as exc:
			raise http_error(exc) from exc
		if data.request.status == "already_exists":
			message = "Request approved - title already exists in the manager"
		else:
			manager = "Radarr" if data.request.request_type == "movie" else "Sonarr"
			message = f"Request approved and submitted to {manager}"
		return ActionResult(request_id=request_id, status=data.request.status, message=message)

	@app.post("/requests/{request_id}/deny", response_model=ActionResult)
	async def deny_request(
		request_id: str,
		payload: Optional[DenyPayload] = None,
		user_id: Optional[int] = Depends(acting_user),
		_: None = Depends(require_admin),
	) -> ActionResult:
		try:
			data = await services.workflow.deny(request_id, user_id, reason=payload.reason if payload else None)
		except RequestWorkflowError as exc:
			raise http_error(exc) from exc
		return ActionResult(request_id=request_id, status=data.request.status, message="Request denied")

	@app.post("/requests/{request_id}/available", response_model=ActionResult)
	async def mark_available(
		request_id: str,
		user_id: Optional[int] = Depends(acting_user),
		_: None = Depends(require_admin),
	) -> ActionResult:
		try:
			data = await services.workflow.mark_available(request_id, user_id)
		except RequestWorkflowError as exc:
			raise http_error(exc) from exc
		return ActionResult(request_id=request_id, status=data.request.status, message="Marked as available")

	@app.post("/requests/{request_id}/sync", response_model=SyncResponse)
	async def sync_request(request_id: str, force: bool = False, _: None = Depends(require_admin)) -> SyncResponse:
		if await services.store.get_request_with_items(request_id) is None:
			raise HTTPException(status_code=404, detail=f"Request not found: {request_id}")
		summary = await services.engine.sync_request_by_id(request_id, force=force)
		return SyncResponse(summary=summary, message=format_sync_message(summary))

	@app.delete("/requests/{request_id}", response_model=ActionResult)
	async def delete_request(
		request_id: str,
		user_id: Optional[int] = Depends(acting_user),
		_: None = Depends(require_admin),
	) -> ActionResult:
		try:
			steps = await services.workflow.delete(request_id, user_id)
		except RequestWorkflowError as exc:
			raise http_error(exc) from exc
		failed = [s.name for s in steps if not s.ok]
		message = "Request deleted"
		if failed:
			message += f" (cleanup failed: {', '.join(failed)})"
		return ActionResult(request_id=request_id, status="deleted", message=message)

	@app.post("/sync", response_model=SyncResponse)
	async def sync_all(_: None = Depends(require_admin)) -> SyncResponse:
		summary = await services.engine.sync_pending_requests()
		return SyncResponse(summary=summary, message=format_sync_message(summary))

	@app.post("/bulk/requests", response_model=BulkResult)
	async def bulk_requests(
		payload: BulkActionPayload,
		user_id: Optional[int] = Depends(acting_user),
		_: None = Depends(require_admin),
	) -> BulkResult:
		try:
			return await services.bulk.run(payload.action, payload.ids, user_id, reason=payload.reason)
		except RequestWorkflowError as exc:
			raise http_error(exc) from exc

	@app.get("/notifications/deliveries", response_model=list[DeliveryRecord])
	async def list_deliveries(limit: int = 50, _: None = Depends(require_admin)) -> list[DeliveryRecord]:
		"""Return recent notification delivery attempts from the in-memory log."""

		return services.delivery.get_history(limit=limit)

	return app


app = create_app()
