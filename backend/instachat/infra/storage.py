"""Object storage for chat media.

Keys follow ``<area>/<kind>/<username>-<suffix>``. The local backend writes
chunk by chunk under ``settings.upload_dir`` and reports the running byte
count after each chunk so callers can derive progress; the files are served
from ``settings.upload_base_url``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from typing import AsyncGenerator, Optional, Protocol

from instachat.settings import settings


class ObjectStorage(Protocol):
	def put(self, key: str, data: bytes, content_type: str) -> AsyncGenerator[int, None]:
		...

	def url_for(self, key: str) -> str:
		...

	async def discard(self, key: str) -> None:
		...


class InvalidKeyError(ValueError):
	"""Raised for keys that would escape the storage root."""


def _validate_key(key: str) -> PurePosixPath:
	path = PurePosixPath(key)
	if not key or path.is_absolute() or ".." in path.parts:
		raise InvalidKeyError(key)
	return path


class LocalObjectStorage:
	"""Filesystem-backed storage used in development and tests."""

	def __init__(
		self,
		root: Optional[Path] = None,
		*,
		base_url: Optional[str] = None,
		chunk_bytes: Optional[int] = None,
	) -> None:
		self.root = Path(root or settings.upload_dir)
		self.base_url = (base_url or settings.upload_base_url).rstrip("/")
		self.chunk_bytes = max(1, int(chunk_bytes or settings.upload_chunk_bytes))

	def _path_for(self, key: str) -> Path:
		return self.root.joinpath(*_validate_key(key).parts)

	async def put(self, key: str, data: bytes, content_type: str) -> AsyncGenerator[int, None]:
		path = self._path_for(key)
		path.parent.mkdir(parents=True, exist_ok=True)
		written = 0
		with path.open("wb") as handle:
			if not data:
				yield 0
			for offset in range(0, len(data), self.chunk_bytes):
				chunk = data[offset : offset + self.chunk_bytes]
				handle.write(chunk)
				written += len(chunk)
				yield written
				# Give other tasks a turn between chunks
				await asyncio.sleep(0)

	def url_for(self, key: str) -> str:
		_validate_key(key)
		return f"{self.base_url}/{key}"

	async def discard(self, key: str) -> None:
		self._path_for(key).unlink(missing_ok=True)
