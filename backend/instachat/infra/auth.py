"""Authentication helpers for FastAPI endpoints and socket handshakes.

Identity is issued elsewhere; this module only verifies the access JWT (or,
in development, trusts the X-User-Id/X-Username headers) and hands the chat
engine the caller's uid and username.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from instachat.infra import jwt as jwt_helper
from instachat.settings import settings


@dataclass(slots=True, frozen=True)
class AuthenticatedUser:
	id: str
	username: str
	display_name: Optional[str] = None


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser."""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		# Normalise all decode failures to invalid_token for the API surface
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None
	display_name = payload.get("name") or payload.get("display_name")
	return AuthenticatedUser(
		id=str(payload["sub"]).strip(),
		username=str(payload["username"]).strip(),
		display_name=str(display_name) if display_name is not None else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_username: Optional[str] = Header(default=None, alias="X-Username"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)
	if settings.is_dev() and x_user_id and x_username:
		return AuthenticatedUser(id=x_user_id, username=x_username)
	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def user_from_handshake(auth_payload: Mapping[str, object], headers: Mapping[str, str]) -> AuthenticatedUser:
	"""Resolve identity for a Socket.IO connection.

	Raises ValueError when no acceptable credentials are present.
	"""
	token = auth_payload.get("token")
	if not token:
		auth_header = headers.get("authorization") or ""
		if auth_header.lower().startswith("bearer "):
			token = auth_header.split(" ", 1)[1]
	if token:
		try:
			payload = jwt_helper.decode_access(str(token))
		except Exception:
			raise ValueError("invalid_token") from None
		return AuthenticatedUser(id=str(payload["sub"]), username=str(payload["username"]))
	if settings.is_dev():
		user_id = auth_payload.get("userId") or headers.get("x-user-id")
		username = auth_payload.get("username") or headers.get("x-username")
		if user_id and username:
			return AuthenticatedUser(id=str(user_id), username=str(username))
	raise ValueError("missing_token")
