"""Read-only user directory consumed by the chat engine."""

from .models import User
from .repo import Directory, DirectoryRepository

__all__ = ["Directory", "DirectoryRepository", "User"]
