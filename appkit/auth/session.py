"""
Persisted authentication session.

One SessionState record per app installation, stored under
"Authentication-<app_slug>" in a key-value backend. The backend only needs
get/set/save; two are provided:

- InMemoryKeyValueStore: set() is buffered until save(), like a real store
- JsonFileKeyValueStore: one JSON document on disk, atomic write, chmod 600

SessionStore keeps the live state in memory and writes it through to the
backend on every mutation, so reads always return the last persisted value.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError

from appkit.crypto_utils import generate_secret

logger = logging.getLogger(__name__)


class SessionState(BaseModel):
    model_config = {"extra": "ignore"}

    user_login: str = ""
    secret: str = ""
    public_key: str = ""
    is_authenticated: bool = False
    permissions: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Key-value backends
# =============================================================================

@runtime_checkable
class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[dict]: ...
    def set(self, key: str, record: dict) -> None: ...
    def save(self) -> None: ...


class InMemoryKeyValueStore:
    """
    Process-local store. Records written with set() become visible to get()
    only after save().
    """
    def __init__(self):
        self._saved: dict[str, dict] = {}
        self._pending: dict[str, dict] = {}
        self.save_count = 0

    def get(self, key: str) -> Optional[dict]:
        rec = self._saved.get(key)
        return json.loads(json.dumps(rec)) if rec is not None else None

    def set(self, key: str, record: dict) -> None:
        self._pending[key] = json.loads(json.dumps(record))

    def save(self) -> None:
        self._saved.update(self._pending)
        self._pending.clear()
        self.save_count += 1


def _atomic_write_json(path: str, doc: dict, *, mode: int = 0o600) -> None:
    d = os.path.dirname(os.path.abspath(path)) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp.", dir=d)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(doc, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        try:
            os.chmod(tmp, mode)
        except OSError:
            pass  # best-effort on filesystems without POSIX modes
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


class JsonFileKeyValueStore:
    """
    All records in one JSON object on disk: {"<key>": {...record...}, ...}.
    The file is read once at construction; save() rewrites it atomically.
    """
    def __init__(self, path: str):
        self.path = path
        self._doc: dict[str, dict] = {}
        if os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            if not isinstance(doc, dict):
                raise ValueError(f"session file {path} does not contain a JSON object")
            self._doc = doc

    def get(self, key: str) -> Optional[dict]:
        rec = self._doc.get(key)
        return dict(rec) if isinstance(rec, dict) else None

    def set(self, key: str, record: dict) -> None:
        self._doc[key] = dict(record)

    def save(self) -> None:
        _atomic_write_json(self.path, self._doc)


# =============================================================================
# Session store
# =============================================================================

class SessionStore:
    """
    Owner of the current SessionState.

    Create one per app installation and pass it to the HandshakeClient; call
    clear() to tear the session down. `lock` serializes handshakes that mutate
    the session.

    While a secret is staged, every mutator except commit_authentication()
    raises RuntimeError, so the staged value never reaches the backend and
    the rollback leaves memory equal to the persisted record.
    """
    def __init__(
        self,
        backend: KeyValueStore,
        *,
        app_slug: str = "default",
        secret_generator: Callable[[], str] = generate_secret,
    ):
        self.backend = backend
        self.key = f"Authentication-{app_slug}"
        self._generate = secret_generator
        self._state = self._load()
        self._staged_from: Optional[str] = None
        self.lock = asyncio.Lock()

    def _load(self) -> SessionState:
        rec = self.backend.get(self.key)
        if rec is None:
            return SessionState()
        try:
            return SessionState.model_validate(rec)
        except ValidationError as e:
            logger.warning("Discarding unreadable session record %s: %s", self.key, e)
            return SessionState()

    def _persist(self) -> None:
        self.backend.set(self.key, self._state.model_dump())
        self.backend.save()

    def _ensure_not_staged(self, op: str) -> None:
        if self._staged_from is not None:
            raise RuntimeError(f"cannot {op} while an authentication handshake is in flight")

    @property
    def state(self) -> SessionState:
        return self._state.model_copy(deep=True)

    # --- secret ---

    def get_secret(self) -> str:
        return self._state.secret

    def set_secret(self, token: str) -> None:
        self._ensure_not_staged("set the secret")
        self._state.secret = token
        self._persist()

    def reset_secret(self) -> str:
        self._ensure_not_staged("reset the secret")
        token = self._generate()
        self.set_secret(token)
        return token

    @contextmanager
    def staged_secret(self, token: str) -> Iterator[str]:
        """
        Make `token` the current secret without persisting it.

        Unless commit_authentication() runs inside the block, the previous
        secret is restored on exit.
        """
        self._ensure_not_staged("stage a secret")
        previous = self._state.secret
        self._state.secret = token
        self._staged_from = previous
        try:
            yield token
        finally:
            if self._staged_from is not None:
                self._state.secret = self._staged_from
                self._staged_from = None

    # --- public key ---

    def get_public_key(self) -> str:
        return self._state.public_key

    def set_public_key(self, public_key: str) -> None:
        self._ensure_not_staged("set the public key")
        self._state.public_key = public_key
        self._persist()

    # --- user ---

    def get_current_user(self) -> Optional[str]:
        if not self._state.is_authenticated or not self._state.user_login:
            return None
        return self._state.user_login

    def is_authenticated(self) -> bool:
        return self._state.is_authenticated

    def get_permissions(self) -> dict[str, Any]:
        if not self._state.is_authenticated:
            return {}
        return dict(self._state.permissions)

    def has_permission(self, capability: str) -> bool:
        return bool(self.get_permissions().get(capability))

    def commit_authentication(self, user: str, secret: str, permissions: dict[str, Any]) -> None:
        self._staged_from = None
        self._state.user_login = user
        self._state.secret = secret
        self._state.is_authenticated = True
        self._state.permissions = dict(permissions)
        self._persist()

    def logout(self) -> None:
        self._ensure_not_staged("log out")
        # Public key stays cached for the next handshake.
        self._state.user_login = ""
        self._state.secret = ""
        self._state.is_authenticated = False
        self._state.permissions = {}
        self._persist()

    def clear(self) -> None:
        self._ensure_not_staged("clear the session")
        self._state = SessionState()
        self._persist()
