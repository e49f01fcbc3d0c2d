"""
Two-round authentication handshake.

1) get_public_key: ask the server for its RSA public key. The query is signed
   with a one-shot control key that travels with it; the server answers with
   control = sha256(public_key + user + "|" + control_key), proving the answer
   was produced for this query.

2) send_auth_data: generate a new session secret, encrypt {user, pass, secret}
   with the public key and send it signed with that secret (the secret itself
   only travels inside the ciphertext). The server answers with
   control = sha256("authenticated" + user + "|" + secret).

The session secret is staged in memory during step 2 and persisted only after
the server's control code verifies. Every public call holds the session lock,
so concurrent handshakes on one SessionStore run one after the other.
"""

from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar, Union

import httpx
from pydantic import BaseModel, ValidationError

from appkit.crypto_utils import (
    encrypt_with_public_key,
    generate_secret,
    verify_control,
)

from .config import AuthConfig
from .errors import (
    AJAX_FAILED,
    ENCRYPT_FAILED,
    NO_PUBLIC_KEY,
    NO_RESULT,
    RESULT_ERROR,
    WRONG_DATA,
    WRONG_HMAC,
    ErrorEvent,
    ErrorReporter,
    HandshakeError,
    LoggingErrorReporter,
    TransportError,
)
from .hooks import FilterPipeline
from .session import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore, SessionStore
from .signer import AuthAction, HandshakeRequest, RequestSigner
from .transport import HttpTransport, Transport

logger = logging.getLogger(__name__)

Encryptor = Callable[[str, str], str]


class HandshakeState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_PUBLIC_KEY = "awaiting_public_key"
    AWAITING_AUTH_RESULT = "awaiting_auth_result"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_TRANSITIONS: dict[HandshakeState, frozenset[HandshakeState]] = {
    HandshakeState.IDLE: frozenset({
        HandshakeState.AWAITING_PUBLIC_KEY,
        HandshakeState.AWAITING_AUTH_RESULT,
        HandshakeState.FAILED,
    }),
    HandshakeState.AWAITING_PUBLIC_KEY: frozenset({
        HandshakeState.AWAITING_AUTH_RESULT,
        HandshakeState.FAILED,
    }),
    HandshakeState.AWAITING_AUTH_RESULT: frozenset({
        HandshakeState.AUTHENTICATED,
        HandshakeState.FAILED,
    }),
    HandshakeState.AUTHENTICATED: frozenset(),
    HandshakeState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class HandshakeResult:
    ok: bool
    state: HandshakeState
    error: Optional[str] = None
    message: Optional[str] = None
    public_key: Optional[str] = None
    user: Optional[str] = None
    permissions: dict[str, Any] = field(default_factory=dict)


# ----------------------------
# Server answers
# ----------------------------

class AnswerResult(BaseModel):
    model_config = {"extra": "allow"}

    status: Any
    message: Any = None

    @property
    def ok(self) -> bool:
        return self.status == 1 or self.status == "1"

    @property
    def text(self) -> Optional[str]:
        return None if self.message in (None, "") else str(self.message)


class PublicKeyAnswer(BaseModel):
    public_key: str
    control: str


class AuthenticationAnswer(BaseModel):
    authenticated: Any
    permissions: Union[dict[str, Any], list[Any]]
    control: Any = None


AnswerT = TypeVar("AnswerT", bound=BaseModel)


def _parse_answer(data: Any, model: type[AnswerT]) -> AnswerT:
    """
    Check the result envelope, then validate only the fields `model` declares.
    Anything else in the answer is left alone.
    """
    if not isinstance(data, dict):
        raise HandshakeError(NO_RESULT, "answer is not a JSON object")
    raw_result = data.get("result")
    if not isinstance(raw_result, dict) or "status" not in raw_result:
        raise HandshakeError(NO_RESULT, "answer has no result status")

    result = AnswerResult.model_validate(raw_result)
    if not result.ok:
        raise HandshakeError(RESULT_ERROR, result.text)

    fields = {name: data[name] for name in model.model_fields if name in data}
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise HandshakeError(WRONG_DATA, str(e)) from e


def _normalize_permissions(raw: Union[dict[str, Any], list[Any]]) -> dict[str, Any]:
    # PHP encodes an empty array as [] and a list of caps as ["edit", ...]
    if isinstance(raw, dict):
        return dict(raw)
    return {str(cap): True for cap in raw}


# ----------------------------
# Client
# ----------------------------

class HandshakeClient:
    """
    Runs the handshake against one SessionStore.

    Server, network and encryption failures come back as a HandshakeResult with
    ok=False; they never raise. Caller mistakes do raise: a web-service-params
    filter that returns None raises ValueError, and an encryptor raising
    anything other than ValueError propagates unchanged. In both cases the
    staged secret is rolled back first.
    """
    def __init__(
        self,
        session: SessionStore,
        transport: Transport,
        *,
        signer: Optional[RequestSigner] = None,
        reporter: Optional[ErrorReporter] = None,
        encryptor: Encryptor = encrypt_with_public_key,
        secret_generator: Callable[[], str] = generate_secret,
    ):
        self.session = session
        self.transport = transport
        self.signer = signer or RequestSigner(session, secret_generator=secret_generator)
        self.reporter = reporter or LoggingErrorReporter()
        self._encrypt = encryptor
        self._generate = secret_generator
        self._state = HandshakeState.IDLE

    @classmethod
    def from_config(
        cls,
        config: AuthConfig,
        *,
        backend: Optional[KeyValueStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        hooks: Optional[FilterPipeline] = None,
        reporter: Optional[ErrorReporter] = None,
    ) -> "HandshakeClient":
        if backend is None:
            if config.session_path:
                backend = JsonFileKeyValueStore(config.session_path)
            else:
                backend = InMemoryKeyValueStore()
        hooks = hooks or FilterPipeline()
        session = SessionStore(backend, app_slug=config.app_slug)
        signer = RequestSigner(session, default_user=config.default_user, hooks=hooks)
        transport = HttpTransport(
            config.endpoint_url,
            timeout_s=config.timeout_s,
            hooks=hooks,
            client=client,
        )
        return cls(session, transport, signer=signer, reporter=reporter)

    @property
    def state(self) -> HandshakeState:
        return self._state

    def _transition(self, new: HandshakeState) -> None:
        if new not in _TRANSITIONS[self._state]:
            raise RuntimeError(f"illegal handshake transition {self._state.value} -> {new.value}")
        logger.debug("Handshake %s -> %s", self._state.value, new.value)
        self._state = new

    def _failed(self, err: HandshakeError) -> HandshakeResult:
        self._transition(HandshakeState.FAILED)
        logger.info("Handshake failed: %s%s", err.code, f" ({err.message})" if err.message else "")
        return HandshakeResult(ok=False, state=self._state, error=err.code, message=err.message)

    async def _dispatch(self, request: HandshakeRequest, origin: str) -> Any:
        try:
            return await self.transport.get(request.to_params())
        except TransportError as e:
            self.reporter.report(ErrorEvent(
                category="synchro:ajax",
                origin=origin,
                message=str(e),
                context={
                    "url": e.url,
                    "kind": e.kind,
                    "status_code": e.status_code,
                    "auth_action": request.auth_action.value,
                },
            ))
            raise HandshakeError(AJAX_FAILED, str(e)) from e

    # --- steps ---

    async def _get_public_key(self, user: Optional[str]) -> str:
        request = self.signer.build_params(AuthAction.GET_PUBLIC_KEY, user)
        self._transition(HandshakeState.AWAITING_PUBLIC_KEY)

        data = await self._dispatch(request, "authentication::get_public_key")
        answer = _parse_answer(data, PublicKeyAnswer)
        if not answer.public_key or not answer.control:
            raise HandshakeError(WRONG_DATA, "public_key and control are required")

        if not verify_control(answer.public_key + request.user, request.control_key, answer.control):
            logger.warning("Public key answer for %s failed control check", request.user)
            raise HandshakeError(WRONG_HMAC)

        self.session.set_public_key(answer.public_key)
        return answer.public_key

    async def _send_auth_data(self, user: str, password: str) -> dict[str, Any]:
        public_key = self.session.get_public_key()
        if not public_key:
            raise HandshakeError(NO_PUBLIC_KEY)

        user_secret = self._generate()
        with self.session.staged_secret(user_secret):
            to_encrypt = json.dumps(
                {"user": user, "pass": password, "secret": user_secret},
                separators=(",", ":"),
            )
            try:
                encrypted = self._encrypt(to_encrypt, public_key)
            except ValueError as e:
                # EncryptionError included
                raise HandshakeError(ENCRYPT_FAILED, str(e)) from e

            request = self.signer.build_params(
                AuthAction.CONNECT_USER,
                user,
                use_session_secret=True,
                extra_fields=["encrypted"],
                extra_data={"encrypted": encrypted},
            )
            self._transition(HandshakeState.AWAITING_AUTH_RESULT)

            data = await self._dispatch(request, "authentication::send_auth_data")
            answer = _parse_answer(data, AuthenticationAnswer)
            if answer.authenticated != 1:
                raise HandshakeError(WRONG_DATA, "authenticated must be 1")

            if not verify_control("authenticated" + user, user_secret, answer.control):
                logger.warning("Authentication answer for %s failed control check", user)
                raise HandshakeError(WRONG_HMAC)

            permissions = _normalize_permissions(answer.permissions)
            self.session.commit_authentication(user, user_secret, permissions)

        self._transition(HandshakeState.AUTHENTICATED)
        return permissions

    # --- public API ---

    async def get_public_key(self, user: Optional[str] = None) -> HandshakeResult:
        async with self.session.lock:
            self._state = HandshakeState.IDLE
            try:
                public_key = await self._get_public_key(user)
            except HandshakeError as e:
                return self._failed(e)
            return HandshakeResult(ok=True, state=self._state, public_key=public_key)

    async def send_auth_data(self, user: str, password: str) -> HandshakeResult:
        async with self.session.lock:
            self._state = HandshakeState.IDLE
            try:
                permissions = await self._send_auth_data(user, password)
            except HandshakeError as e:
                return self._failed(e)
            return HandshakeResult(ok=True, state=self._state, user=user, permissions=permissions)

    async def connect_user(self, login: str, password: str) -> HandshakeResult:
        async with self.session.lock:
            self._state = HandshakeState.IDLE
            try:
                await self._get_public_key(login)
                permissions = await self._send_auth_data(login, password)
            except HandshakeError as e:
                return self._failed(e)
            logger.info("User %s authenticated", login)
            return HandshakeResult(ok=True, state=self._state, user=login, permissions=permissions)

    # --- session passthrough ---

    def get_current_secret(self) -> str:
        return self.session.get_secret()

    def reset_secret(self) -> str:
        return self.session.reset_secret()

    def get_current_user(self) -> Optional[str]:
        return self.session.get_current_user()

    def current_user_is_authenticated(self) -> bool:
        return self.session.is_authenticated()
