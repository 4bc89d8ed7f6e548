"""Directory records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(slots=True, frozen=True)
class User:
	uid: str
	username: str
	fullname: str = ""
	bio: str = ""
	avatar_url: Optional[str] = None
	active: bool = False
	last_seen: Optional[datetime] = None

	@property
	def display_name(self) -> str:
		return self.fullname or self.username

	def to_dict(self) -> dict:
		return {
			"uid": self.uid,
			"username": self.username,
			"fullname": self.fullname,
			"bio": self.bio,
			"avatar_url": self.avatar_url,
			"active": self.active,
			"last_seen": self.last_seen.isoformat() if self.last_seen else None,
		}
