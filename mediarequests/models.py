from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SyncSummary(BaseModel):
	processed: int = 0
	available: int = 0
	partiallyAvailable: int = 0
	downloading: int = 0
	removed: int = 0
	errors: int = 0

	def count_result(self, status: Optional[str]) -> None:
		if status == "available":
			self.available += 1
		elif status == "partially_available":
			self.partiallyAvailable += 1
		elif status == "downloading":
			self.downloading += 1
		elif status == "removed":
			self.removed += 1


class SyncResponse(BaseModel):
	summary: SyncSummary
	message: str


class BulkActionPayload(BaseModel):
	action: Literal["approve", "deny"]
	ids: List[str] = Field(..., min_length=1)
	reason: Optional[str] = None


class BulkResult(BaseModel):
	updated: int
	total: int


class ActionResult(BaseModel):
	request_id: str
	status: str
	message: str


class DenyPayload(BaseModel):
	reason: Optional[str] = None


class ApprovePayload(BaseModel):
	quality_profile_id: Optional[int] = None


class MergedItem(BaseModel):
	id: int
	provider: str
	providerId: Optional[int] = None
	season: Optional[int] = None
	episode: Optional[int] = None
	status: str
	createdAt: str


class MergedRequest(BaseModel):
	id: str
	title: str
	requestType: str
	status: str
	statusReason: Optional[str] = None
	tmdbId: int
	createdAt: str
	requestedBy: Optional[str] = None


class ItemStatusCounts(BaseModel):
	total: int = 0
	pending: int = 0
	submitted: int = 0
	downloading: int = 0
	available: int = 0
	denied: int = 0
	failed: int = 0


class MergedRequestView(BaseModel):
	"""Admin view of one or more requests targeting the same title."""

	request: MergedRequest
	summary: ItemStatusCounts
	items: List[MergedItem]


class ArrStatus(BaseModel):
	name: str
	type: str
	url: str
	reachable: bool
	version: Optional[str] = None
	error: Optional[str] = None


class DeliveryResult(BaseModel):
	status: Literal["success", "failure", "skipped", "duplicate"]
	attempts: int
	retries: int
	error: Optional[str] = None


class DeliveryRecord(BaseModel):
	"""A single recorded notification delivery attempt."""

	timestamp: float
	endpoint_id: int
	endpoint_type: str
	event_type: str
	status: str
	attempt_number: int
	duration_ms: int
	target_user_id: Optional[int] = None
	error_message: Optional[str] = None
