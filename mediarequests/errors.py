from __future__ import annotations

from typing import Optional


class RequestWorkflowError(Exception):
	"""Base class for errors surfaced by request lifecycle operations."""


class RequestNotFoundError(RequestWorkflowError):
	def __init__(self, request_id: str) -> None:
		super().__init__(f"Request not found: {request_id}")
		self.request_id = request_id


class PermissionDeniedError(RequestWorkflowError):
	pass


class PreconditionError(RequestWorkflowError):
	"""The requested transition cannot run; nothing was mutated."""


class InvalidTransitionError(PreconditionError):
	def __init__(self, request_id: str, current: str, action: str) -> None:
		super().__init__(f"Cannot {action} request {request_id} in status '{current}'")
		self.request_id = request_id
		self.current = current
		self.action = action


class MissingExternalIdError(PreconditionError):
	pass


class SeasonSelectionError(PreconditionError):
	pass


class EpisodeMatchError(PreconditionError):
	pass


class BulkLimitError(PreconditionError):
	pass


class ProviderNotConfiguredError(PreconditionError):
	pass


class ApprovalFailedError(RequestWorkflowError):
	"""Raised after a failed approval has already flipped the request to failed."""

	def __init__(self, request_id: str, detail: Optional[str] = None) -> None:
		super().__init__(
			"Failed to submit request. Check movie/episode manager connectivity."
		)
		self.request_id = request_id
		self.detail = detail


class ProviderError(Exception):
	"""A call to an external movie/episode manager failed."""

	def __init__(self, provider: str, message: str, status_code: Optional[int] = None) -> None:
		super().__init__(f"{provider}: {message}")
		self.provider = provider
		self.status_code = status_code


class ProviderNotFoundError(ProviderError):
	pass


class ProviderTimeoutError(ProviderError):
	pass


class ProviderConflictError(ProviderError):
	"""The provider rejected an add because the title already exists."""


class DeliverySkipError(Exception):
	"""Raised by a channel sender to mark a delivery as skipped, not failed."""
