from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from .models import ItemStatusCounts, MergedItem, MergedRequest, MergedRequestView
from .statuses import ITEM_STATUS_PRIORITY, REQUEST_STATUS_PRIORITY, merge_statuses, pick_status
from .store import RequestItem, RequestWithItems


def _merge_items(rows: Sequence[RequestWithItems]) -> List[MergedItem]:
	by_episode: Dict[Tuple[int, int], MergedItem] = {}
	whole_title: List[MergedItem] = []

	for row in rows:
		for item in row.items:
			merged = _to_merged(item)
			if item.season is None or item.episode is None:
				whole_title.append(merged)
				continue
			key = (item.season, item.episode)
			existing = by_episode.get(key)
			if existing is None:
				by_episode[key] = merged
				continue
			existing.status = pick_status(existing.status, item.status, ITEM_STATUS_PRIORITY) or existing.status
			if existing.providerId is None and item.provider_id is not None:
				existing.providerId = item.provider_id

	items = whole_title + list(by_episode.values())
	items.sort(key=lambda i: (i.season if i.season is not None else -1, i.episode if i.episode is not None else -1))
	return items


def _to_merged(item: RequestItem) -> MergedItem:
	return MergedItem(
		id=item.id,
		provider=item.provider,
		providerId=item.provider_id,
		season=item.season,
		episode=item.episode,
		status=item.status,
		createdAt=item.created_at.isoformat(),
	)


def _count(items: Sequence[MergedItem]) -> ItemStatusCounts:
	counts = ItemStatusCounts(total=len(items))
	for item in items:
		if item.status in ItemStatusCounts.model_fields and item.status != "total":
			setattr(counts, item.status, getattr(counts, item.status) + 1)
	return counts


def merge_request_rows(rows: Sequence[RequestWithItems]) -> Optional[MergedRequestView]:
	"""Combine several requests for the same title into one admin view.

	Request status merges with the request priority, duplicated (season, episode)
	items merge with the item priority.
	"""
	if not rows:
		return None

	ordered = sorted(rows, key=lambda r: r.request.created_at)
	base = ordered[0]
	status = merge_statuses((r.request.status for r in ordered), REQUEST_STATUS_PRIORITY) or base.request.status
	reason = next((r.request.status_reason for r in ordered if r.request.status_reason), None)

	items = _merge_items(ordered)
	return MergedRequestView(
		request=MergedRequest(
			id=base.request.id,
			title=base.request.title,
			requestType=base.request.request_type,
			status=status,
			statusReason=reason,
			tmdbId=base.request.tmdb_id,
			createdAt=base.request.created_at.isoformat(),
			requestedBy=base.username,
		),
		summary=_count(items),
		items=items,
	)
