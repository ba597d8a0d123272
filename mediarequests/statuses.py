"""Request and item status values plus the fixed-priority merge rules.

The request-level and item-level orderings are deliberately different and
must not be unified:

- Request priority lets ``pending``/``submitted`` precede terminal states
  when several requests for the same title are merged into one view.
- Item priority lets ``available`` dominate ``downloading``/``pending`` so a
  partially imported season never regresses once an episode is on disk.

In both cases the status with the smaller index wins.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Sequence


class RequestStatus(str, Enum):
	PENDING = "pending"
	SUBMITTED = "submitted"
	DOWNLOADING = "downloading"
	PARTIALLY_AVAILABLE = "partially_available"
	AVAILABLE = "available"
	DENIED = "denied"
	FAILED = "failed"
	REMOVED = "removed"
	ALREADY_EXISTS = "already_exists"


REQUEST_STATUS_PRIORITY: tuple[str, ...] = (
	"pending",
	"submitted",
	"downloading",
	"partially_available",
	"available",
	"denied",
	"failed",
	"removed",
	"already_exists",
)

ITEM_STATUS_PRIORITY: tuple[str, ...] = (
	"available",
	"downloading",
	"submitted",
	"pending",
	"denied",
	"failed",
)

TERMINAL_STATUSES = frozenset({"available", "denied", "removed"})


def _value(status: Optional[str | Enum]) -> Optional[str]:
	if isinstance(status, Enum):
		return str(status.value)
	return status


def pick_status(current: Optional[str], incoming: Optional[str], priority: Sequence[str]) -> Optional[str]:
	"""Return whichever of ``current``/``incoming`` sits earlier in ``priority``.

	A status missing from the list always loses to the other one.
	"""
	current = _value(current)
	incoming = _value(incoming)
	try:
		a = priority.index(current)  # type: ignore[arg-type]
	except ValueError:
		return incoming
	try:
		b = priority.index(incoming)  # type: ignore[arg-type]
	except ValueError:
		return current
	return incoming if b < a else current


def merge_statuses(statuses: Iterable[str], priority: Sequence[str]) -> Optional[str]:
	merged: Optional[str] = None
	for status in statuses:
		merged = status if merged is None else pick_status(merged, status, priority)
	return merged


def is_terminal(status: Optional[str]) -> bool:
	return _value(status) in TERMINAL_STATUSES


def aggregate_request_status(item_statuses: Sequence[str], current: str) -> str:
	"""Derive a request's status from freshly computed item statuses."""

	statuses = [_value(s) for s in item_statuses if s]
	if not statuses:
		return current

	if "downloading" in statuses and "failed" not in statuses:
		return RequestStatus.DOWNLOADING.value

	available = statuses.count("available")
	if available == len(statuses):
		return RequestStatus.AVAILABLE.value
	if available > 0:
		return RequestStatus.PARTIALLY_AVAILABLE.value

	merged = merge_statuses(statuses, REQUEST_STATUS_PRIORITY)
	return merged or current
