"""Media upload pipeline: validation, chunked transfer and progress events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, ClassVar, Dict, Mapping, Optional, Tuple, Union

import ulid

from instachat.domain.chat.errors import InvalidMessage, TooLarge, TransferFailed, UnsupportedMedia
from instachat.infra.storage import LocalObjectStorage, ObjectStorage
from instachat.obs import metrics as obs_metrics
from instachat.settings import settings

logger = logging.getLogger(__name__)

SURFACE_CHAT = "chat"
SURFACE_POST = "post"
SURFACE_PROFILE = "profile"

_AREAS = {
	SURFACE_CHAT: "chats",
	SURFACE_POST: "posts",
	SURFACE_PROFILE: "profiles",
}

STATUS_PENDING = "pending"
STATUS_UPLOADING = "uploading"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

Ceilings = Mapping[str, Mapping[str, Optional[int]]]


def default_ceilings() -> Dict[str, Dict[str, Optional[int]]]:
	"""Per-surface byte ceilings; a kind missing from a surface is not accepted there."""
	return {
		SURFACE_CHAT: {
			"image": settings.chat_image_max_bytes,
			"video": settings.chat_video_max_bytes,
			"audio": settings.chat_audio_max_bytes,
		},
		SURFACE_POST: {
			"image": settings.post_image_max_bytes,
			"video": settings.post_video_max_bytes,
			"audio": None,
		},
		SURFACE_PROFILE: {
			"image": settings.profile_image_max_bytes,
		},
	}


def classify_mime(mime_type: Optional[str]) -> str:
	major = (mime_type or "").split("/", 1)[0].strip().lower()
	if major in ("image", "video", "audio"):
		return major
	raise UnsupportedMedia()


@dataclass(slots=True, frozen=True)
class MediaFile:
	filename: str
	content_type: str
	data: bytes = field(repr=False)

	@property
	def size(self) -> int:
		return len(self.data)


@dataclass(slots=True, frozen=True)
class UploadProgress:
	percent: int
	bytes_sent: int

	terminal: ClassVar[bool] = False


@dataclass(slots=True, frozen=True)
class UploadSucceeded:
	url: str

	terminal: ClassVar[bool] = True


@dataclass(slots=True, frozen=True)
class UploadFailed:
	reason: str

	terminal: ClassVar[bool] = True


UploadEvent = Union[UploadProgress, UploadSucceeded, UploadFailed]
ProgressCallback = Callable[[UploadProgress], object]


@dataclass(slots=True)
class UploadJob:
	file: MediaFile
	kind: str
	surface: str
	key: str
	status: str = STATUS_PENDING
	progress_percent: int = 0
	url: Optional[str] = None
	error: Optional[str] = None
	cancel_requested: bool = False

	@property
	def mime_type(self) -> str:
		return self.file.content_type

	@property
	def terminal(self) -> bool:
		return self.status in (STATUS_SUCCEEDED, STATUS_FAILED)

	def cancel(self) -> None:
		if not self.terminal:
			self.cancel_requested = True


class UploadPipeline:
	"""Validates media against surface ceilings and streams it to object storage."""

	def __init__(self, storage: ObjectStorage | None = None, *, ceilings: Ceilings | None = None) -> None:
		self._storage = storage or LocalObjectStorage()
		self._ceilings = ceilings or default_ceilings()

	def ceiling_for(self, content_type: Optional[str], *, surface: str) -> Tuple[str, Optional[int]]:
		"""Media kind and byte ceiling (None when unbounded) for a surface."""
		limits = self._ceilings.get(surface)
		if limits is None:
			raise InvalidMessage("unknown_surface")
		kind = classify_mime(content_type)
		if kind not in limits:
			raise UnsupportedMedia()
		return kind, limits[kind]

	def check_size(self, kind: str, ceiling: Optional[int], size: int) -> None:
		if ceiling is not None and size > ceiling:
			obs_metrics.inc_upload(kind, "too_large")
			raise TooLarge(detail=f"{kind} exceeds {ceiling} bytes")

	def prepare(self, file: MediaFile, *, surface: str, username: str) -> UploadJob:
		kind, ceiling = self.ceiling_for(file.content_type, surface=surface)
		self.check_size(kind, ceiling, file.size)
		key = f"{_AREAS[surface]}/{kind}/{username}-{ulid.new()}"
		return UploadJob(file=file, kind=kind, surface=surface, key=key)

	async def _fail(self, job: UploadJob, reason: str) -> UploadFailed:
		try:
			await self._storage.discard(job.key)
		except OSError:
			logger.warning("upload_discard_failed", extra={"key": job.key})
		job.status = STATUS_FAILED
		job.error = reason
		job.progress_percent = 0
		obs_metrics.inc_upload(job.kind, reason)
		logger.info("upload_failed", extra={"kind": job.kind, "reason": reason})
		return UploadFailed(reason=reason)

	async def start(self, job: UploadJob) -> AsyncIterator[UploadEvent]:
		"""Transfer ``job``; progress events end in exactly one terminal event."""
		if job.status != STATUS_PENDING:
			raise RuntimeError("upload job already started")
		if job.cancel_requested:
			job.status = STATUS_FAILED
			job.error = "cancelled"
			yield UploadFailed(reason="cancelled")
			return
		job.status = STATUS_UPLOADING
		size = job.file.size
		last_percent = -1
		reason: Optional[str] = None
		try:
			async with aclosing(self._storage.put(job.key, job.file.data, job.file.content_type)) as chunks:
				async for written in chunks:
					if job.cancel_requested:
						reason = "cancelled"
						break
					percent = 100 if size == 0 else min(100, written * 100 // size)
					job.progress_percent = percent
					if percent != last_percent:
						last_percent = percent
						yield UploadProgress(percent=percent, bytes_sent=written)
		except (OSError, ValueError):
			logger.warning("upload_transfer_error", extra={"kind": job.kind}, exc_info=True)
			reason = "storage_error"
		except asyncio.CancelledError:
			await self._fail(job, "cancelled")
			raise
		if reason is None and job.cancel_requested:
			reason = "cancelled"
		if reason is not None:
			yield await self._fail(job, reason)
			return
		url = self._storage.url_for(job.key)
		job.status = STATUS_SUCCEEDED
		job.url = url
		obs_metrics.inc_upload(job.kind, "succeeded")
		obs_metrics.add_upload_bytes(job.kind, size)
		yield UploadSucceeded(url=url)

	async def upload(self, job: UploadJob, on_progress: ProgressCallback | None = None) -> str:
		async with aclosing(self.start(job)) as events:
			async for event in events:
				if isinstance(event, UploadProgress):
					if on_progress is not None:
						result = on_progress(event)
						if inspect.isawaitable(result):
							await result
				elif isinstance(event, UploadSucceeded):
					return event.url
				else:
					raise TransferFailed(event.reason)
		raise TransferFailed("upload_incomplete")
