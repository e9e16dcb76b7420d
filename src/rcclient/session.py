"""Session gate: authenticated principal, bearer token and permission checks."""

import asyncio
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import bcrypt as bcrypt_lib
import structlog

from . import audit
from .errors import ForbiddenError, RateLimitedError, UnauthenticatedError
from .events import ROUTE_CHANGED, SIGNED_IN, SIGNED_OUT, EventBus
from .models import ADMIN_ROLE, to_epoch_ms
from .remote import RemoteApi

logger = structlog.get_logger(__name__)

SESSION_KEY = "rc_auth_token"

# Grants every permission regardless of role
SUPERUSER_PERMISSION = "system.admin"


def hash_password(plain_password: str) -> str:
    """Hash a password for storage."""
    return bcrypt_lib.hashpw(
        plain_password.encode("utf-8"),
        bcrypt_lib.gensalt(),
    ).decode("utf-8")


@dataclass(frozen=True)
class Principal:
    """The signed-in user as described by the server."""

    id: int | None
    username: str
    role: str
    permissions: frozenset[str]

    def has(self, permission: str) -> bool:
        if self.role == ADMIN_ROLE or SUPERUSER_PERMISSION in self.permissions:
            return True
        return permission in self.permissions


@dataclass
class Session:
    principal: Principal
    token: str
    expires_at: int  # epoch ms

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "expiresAt": self.expires_at,
            "principal": {
                "id": self.principal.id,
                "username": self.principal.username,
                "role": self.principal.role,
                "permissions": sorted(self.principal.permissions),
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        p = data["principal"]
        return cls(
            principal=Principal(
                id=p.get("id"),
                username=p.get("username", ""),
                role=p.get("role", "user"),
                permissions=frozenset(p.get("permissions") or ()),
            ),
            token=data["token"],
            expires_at=int(data["expiresAt"]),
        )


class SessionStorage:
    """Session-scoped key/value storage.

    Backed by a JSON file that is removed when the session is cleared, or
    by memory alone when no path is given.
    """

    def __init__(self, path: Path | None = None):
        self._path = path
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            return json.loads(self._path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("session_storage_unreadable", path=str(self._path), error=str(exc))
            return {}

    def _flush(self) -> None:
        if self._path is None:
            return
        if not self._data:
            self._path.unlink(missing_ok=True)
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._data))
        os.replace(tmp, self._path)

    def get(self, key: str) -> Any:
        return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def clear(self) -> None:
        self._data = {}
        self._flush()


class SessionGate:
    """Holds the session and answers "who is signed in, and may they do this"."""

    def __init__(
        self,
        remote: RemoteApi,
        storage: SessionStorage,
        bus: EventBus | None = None,
        *,
        storage_key: str = SESSION_KEY,
        lifetime_minutes: int = 30,
        clock: Callable[[], float] = time.time,
    ):
        self._remote = remote
        self._storage = storage
        self._bus = bus
        self._key = storage_key
        self._lifetime = lifetime_minutes * 60
        self._clock = clock
        self._session: Session | None = None
        self._throttled_until: float | None = None
        # Bumped on every sign-in and sign-out; in-flight work compares it
        self.generation = 0

    @property
    def principal(self) -> Principal | None:
        return self._session.principal if self.is_authenticated() else None

    @property
    def throttled_until(self) -> float | None:
        """Epoch seconds until which sign-in attempts are refused locally."""
        if self._throttled_until is not None and self._clock() >= self._throttled_until:
            self._throttled_until = None
        return self._throttled_until

    def _publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.publish(topic, payload)

    def restore(self) -> bool:
        """Pick up an unexpired session left in session storage."""
        raw = self._storage.get(self._key)
        if not raw:
            return False
        try:
            session = Session.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_restore_failed", error=str(exc))
            self._storage.remove(self._key)
            return False

        if session.expires_at <= self._clock() * 1000:
            self._storage.remove(self._key)
            return False

        self._session = session
        self.generation += 1
        logger.info("session_restored", user=session.principal.username)
        return True

    async def sign_in(self, username: str, password: str) -> Principal:
        """Authenticate against the server and start a session.

        Raises:
            UnauthenticatedError: Invalid credentials.
            RateLimitedError: Too many attempts; also raised locally until
                the server's Retry-After has elapsed.
            TransientRemoteError: Server unreachable.
        """
        throttled = self.throttled_until
        if throttled is not None:
            raise RateLimitedError(throttled - self._clock())

        try:
            result = await asyncio.to_thread(self._remote.login, username, password)
        except UnauthenticatedError:
            audit.log_sign_in(username, False, "invalid_credentials")
            raise
        except RateLimitedError as exc:
            self._throttled_until = self._clock() + exc.retry_after
            audit.log_sign_in(username, False, "rate_limited")
            raise

        p = result.principal
        principal = Principal(
            id=p.get("id"),
            username=p.get("username") or username,
            role=p.get("role") or "user",
            permissions=frozenset(p.get("permissions") or ()),
        )
        expires_at = to_epoch_ms(result.expires_at) if result.expires_at is not None else None
        if not isinstance(expires_at, int):
            expires_at = int((self._clock() + self._lifetime) * 1000)

        self._session = Session(principal, result.token, expires_at)
        self._storage.set(self._key, self._session.to_dict())
        self._throttled_until = None
        self.generation += 1

        audit.log_sign_in(principal.username, True)
        self._publish(SIGNED_IN, {"username": principal.username, "role": principal.role})
        self._publish(ROUTE_CHANGED, {"route": "dashboard"})
        return principal

    def sign_out(self) -> None:
        """End the session. The sync journal is kept and resumes at next sign-in."""
        self._end("explicit")

    def expire(self, reason: str = "expired") -> None:
        """Drop a session the server no longer accepts."""
        self._end(reason)

    def _end(self, reason: str) -> None:
        session = self._session
        self._session = None
        self._storage.clear()
        self.generation += 1
        if session is None:
            return

        audit.log_sign_out(session.principal.username, reason)
        self._publish(SIGNED_OUT, {"username": session.principal.username, "reason": reason})
        self._publish(ROUTE_CHANGED, {"route": "login", "reason": reason})

    def is_authenticated(self) -> bool:
        if self._session is None:
            return False
        if self._session.expires_at <= self._clock() * 1000:
            self.expire("expired")
            return False
        return True

    def has_permission(self, permission: str) -> bool:
        return self.is_authenticated() and self._session.principal.has(permission)

    def require_permission(self, permission: str) -> None:
        """Raise unless the current principal holds ``permission``."""
        if not self.is_authenticated():
            raise UnauthenticatedError("Sign in required")
        if not self._session.principal.has(permission):
            raise ForbiddenError(permission)

    def auth_header(self) -> dict[str, str]:
        if not self.is_authenticated():
            raise UnauthenticatedError("Sign in required")
        return {"Authorization": f"Bearer {self._session.token}"}
