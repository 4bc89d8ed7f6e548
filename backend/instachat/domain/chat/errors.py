"""Domain-level exceptions for the chat engine."""

from __future__ import annotations


class ChatError(Exception):
	"""Base class for chat errors surfaced to callers."""

	reason: str = "chat_error"
	status_code: int = 400

	def __init__(self, reason: str | None = None, *, detail: str | None = None) -> None:
		super().__init__(detail or reason or self.reason)
		if reason:
			self.reason = reason
		self.detail = detail or self.reason


class InvalidMessage(ChatError):
	reason = "invalid_message"
	status_code = 400


class UnsupportedMedia(InvalidMessage):
	reason = "unsupported_media"
	status_code = 415


class TooLarge(ChatError):
	reason = "too_large"
	status_code = 413


class Forbidden(ChatError):
	reason = "forbidden"
	status_code = 403


class NotFound(ChatError):
	reason = "not_found"
	status_code = 404


class AlreadyMember(ChatError):
	reason = "already_member"
	status_code = 409


class UploadInFlight(ChatError):
	"""Raised when a send is attempted while another one is still running."""

	reason = "upload_in_flight"
	status_code = 409


class TransferFailed(ChatError):
	reason = "transfer_failed"
	status_code = 502


class Unavailable(ChatError):
	reason = "unavailable"
	status_code = 503
